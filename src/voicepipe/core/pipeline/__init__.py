from .events import LifecycleEvents
from .orchestrator import PipelineOrchestrator
from .ports import AudioCapture, ContextSource, HistorySink, TextDelivery
from .session import AppContext, LifecycleEvent, Session, Stage

__all__ = [
    "AppContext",
    "AudioCapture",
    "ContextSource",
    "HistorySink",
    "LifecycleEvent",
    "LifecycleEvents",
    "PipelineOrchestrator",
    "Session",
    "Stage",
    "TextDelivery",
]
