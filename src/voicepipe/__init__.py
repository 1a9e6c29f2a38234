# VoicePipe - Dictation pipeline core

"""
Capture -> local transcription -> optional AI enhancement -> delivery.
The orchestration core sequences the stages and owns the engine lifecycle.
"""

__version__ = "0.1.0"
__app_name__ = "VoicePipe"
