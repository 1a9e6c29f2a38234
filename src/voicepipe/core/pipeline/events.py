import asyncio
from typing import Callable, List

from ...utils.logger import get_logger
from .session import LifecycleEvent

logger = get_logger(__name__)

EventCallback = Callable[[LifecycleEvent], None]


class LifecycleEvents:
    """
    Fan-out of stage changes to callbacks and queue channels.

    Subscriber errors are logged and never reach the publisher. A full
    channel drops the event rather than blocking the pipeline.
    """

    def __init__(self):
        self._callbacks: List[EventCallback] = []
        self._channels: List[asyncio.Queue] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def open_channel(self, maxsize: int = 0) -> "asyncio.Queue[LifecycleEvent]":
        channel: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._channels.append(channel)
        return channel

    def close_channel(self, channel: asyncio.Queue) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def publish(self, event: LifecycleEvent) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Lifecycle subscriber {callback!r} failed")

        for channel in list(self._channels):
            try:
                channel.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Lifecycle channel full, dropping {event.new_stage.value} event"
                )
