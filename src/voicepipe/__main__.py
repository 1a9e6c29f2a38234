from voicepipe.app import main

main()
