"""
Boundaries between the pipeline core and the outside world.

The core starts and stops recordings, asks what is frontmost, hands
finished text over and archives sessions through these protocols.
"""

from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from .session import AppContext, Session


@runtime_checkable
class AudioCapture(Protocol):
    def start(self) -> None:
        """Begin capturing. Raises CaptureError on device failure."""

    def stop(self) -> Optional[np.ndarray]:
        """Stop capturing and return the finalized buffer."""

    def cancel(self) -> None:
        """Stop capturing and discard the buffer."""


@runtime_checkable
class ContextSource(Protocol):
    def current(self) -> "AppContext":
        """Frontmost application id and, for browsers, the current URL."""


@runtime_checkable
class TextDelivery(Protocol):
    def deliver(self, text: str) -> None:
        """Insert the finished text where the user is working."""


@runtime_checkable
class HistorySink(Protocol):
    def record(self, session: "Session") -> None:
        """Persist a completed or failed session."""
