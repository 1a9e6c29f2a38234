"""
Error taxonomy for the pipeline core.

Engine and capture errors are fatal for a session. Enhancement failures are
not exceptions at all: they are reported as ``EnhancementErrorKind`` values on
an ``EnhancementResult``. Cancellation is ``asyncio.CancelledError``.
"""

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    ENGINE_LOAD = "engine_load"
    TRANSCRIPTION = "transcription"
    CAPTURE = "capture"
    INTERNAL = "internal"


class VoicePipeError(Exception):
    """Base class for all errors raised by voicepipe."""


class SessionFailure(VoicePipeError):
    """An error that ends the current session in the FAILED stage."""

    kind: FailureKind = FailureKind.INTERNAL


class EngineLoadError(SessionFailure):
    """Model missing, corrupt, or incompatible with the engine."""

    kind = FailureKind.ENGINE_LOAD

    def __init__(self, model_id: str, reason: str):
        self.model_id = model_id
        self.reason = reason
        super().__init__(f"Failed to load model '{model_id}': {reason}")


class TranscriptionError(SessionFailure):
    kind = FailureKind.TRANSCRIPTION


class CaptureError(SessionFailure):
    kind = FailureKind.CAPTURE


class EngineBusyError(VoicePipeError):
    """The engine handle is already held by another caller."""


class PipelineError(VoicePipeError):
    pass


class InvalidStateError(PipelineError):
    def __init__(self, operation: str, stage: "Optional[object]" = None):
        self.operation = operation
        self.stage = stage
        message = f"{operation}() is not valid now"
        if stage is not None:
            message += f" (stage: {getattr(stage, 'value', stage)})"
        super().__init__(message)


class AlreadyActiveError(InvalidStateError):
    def __init__(self, stage: "Optional[object]" = None):
        super().__init__("start", stage)


class InvalidTransitionError(PipelineError):
    def __init__(self, from_stage, to_stage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(
            f"Invalid stage transition {from_stage.value} -> {to_stage.value}"
        )
