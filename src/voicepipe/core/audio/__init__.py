from .recorder import AudioDevice, AudioRecorder

__all__ = ["AudioDevice", "AudioRecorder"]
