import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

import numpy as np

from ..context.resolver import ConfigProfile
from ..enhancement.client import EnhancementResult
from ..errors import FailureKind, InvalidTransitionError


class Stage(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    ENHANCING = "enhancing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES: FrozenSet[Stage] = frozenset(
    {Stage.COMPLETED, Stage.CANCELLED, Stage.FAILED}
)

_ABORT = {Stage.CANCELLED, Stage.FAILED}

# Forward-only. Every non-terminal stage may also abort.
_VALID_TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.IDLE: frozenset({Stage.RECORDING, *_ABORT}),
    Stage.RECORDING: frozenset({Stage.TRANSCRIBING, *_ABORT}),
    Stage.TRANSCRIBING: frozenset({Stage.ENHANCING, Stage.COMPLETED, *_ABORT}),
    Stage.ENHANCING: frozenset({Stage.COMPLETED, *_ABORT}),
    Stage.COMPLETED: frozenset(),
    Stage.CANCELLED: frozenset(),
    Stage.FAILED: frozenset(),
}


@dataclass(frozen=True)
class AppContext:
    """What was frontmost when recording started."""

    app_id: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class LifecycleEvent:
    session_id: str
    old_stage: Stage
    new_stage: Stage
    error_kind: Optional[FailureKind] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(eq=False)
class Session:
    context: AppContext = field(default_factory=AppContext)
    sample_rate: int = 16000
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stage: Stage = Stage.IDLE
    audio: Optional[np.ndarray] = field(default=None, repr=False)
    profile: Optional[ConfigProfile] = None
    raw_text: Optional[str] = None
    processed_text: Optional[str] = None
    enhanced_text: Optional[str] = None
    enhancement_name: Optional[str] = None
    enhancement: Optional[EnhancementResult] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    error: Optional[FailureKind] = None
    error_message: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def final_text(self) -> Optional[str]:
        """Enhanced text when enhancement succeeded, the transcript otherwise."""
        if self.enhanced_text is not None:
            return self.enhanced_text
        if self.processed_text is not None:
            return self.processed_text
        return self.raw_text

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def advance(self, stage: Stage) -> Stage:
        """Move to ``stage`` and return the previous stage."""
        if stage not in _VALID_TRANSITIONS[self.stage]:
            raise InvalidTransitionError(self.stage, stage)
        old, self.stage = self.stage, stage
        return old
