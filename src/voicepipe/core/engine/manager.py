"""
Lifecycle management for the local inference engine.

At most one model is resident at a time. A released handle stays loaded
and an idle timer is armed, so back-to-back sessions reuse a warm engine.
When the timer fires with nobody holding the handle, the model is unloaded
to give the memory back.
"""

import gc
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np

from ...utils.logger import get_logger
from ..errors import EngineBusyError, EngineLoadError, TranscriptionError
from .backends import InferenceEngine
from .file_utils import resolve_model_path

logger = get_logger(__name__)

TimerFactory = Callable[..., Any]


@dataclass(eq=False)
class EngineHandle:
    model_id: str
    native: Any = field(repr=False)
    in_use: bool = False
    busy: bool = False

    @property
    def is_loaded(self) -> bool:
        return self.native is not None


class EngineResourceManager:
    """
    Owns the single loaded engine instance.

    Example:
        manager = EngineResourceManager(SherpaOnnxEngine(), idle_timeout=300)
        handle = manager.acquire("sherpa-onnx-whisper-base.en")
        try:
            text = manager.run_transcription(handle, audio)
        finally:
            manager.release(handle)
    """

    def __init__(
        self,
        engine: InferenceEngine,
        idle_timeout: Optional[float] = 300.0,
        resolve_path: Callable[[str], str] = resolve_model_path,
        timer_factory: TimerFactory = threading.Timer,
    ):
        """
        Args:
            engine: Black-box engine used to load, run and unload models
            idle_timeout: Seconds a released engine stays loaded. ``None``
                keeps it loaded until ``unload()`` is called.
            resolve_path: Maps a model id to the path handed to ``engine.load``
            timer_factory: ``threading.Timer`` compatible constructor
        """
        self._engine = engine
        self.idle_timeout = idle_timeout
        self._resolve_path = resolve_path
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._handle: Optional[EngineHandle] = None
        self._timer = None
        self._timer_generation = 0

    @property
    def loaded_model(self) -> Optional[str]:
        with self._lock:
            return self._handle.model_id if self._handle is not None else None

    @property
    def is_loaded(self) -> bool:
        return self.loaded_model is not None

    def acquire(self, model_id: str) -> EngineHandle:
        """
        Return a handle for ``model_id``, loading it if needed.

        Raises:
            EngineBusyError: The loaded handle is held by another caller.
            EngineLoadError: The model could not be loaded.
        """
        with self._lock:
            self._cancel_idle_timer()

            handle = self._handle
            if handle is not None and handle.in_use:
                raise EngineBusyError(
                    f"Engine is in use (model '{handle.model_id}'), cannot acquire '{model_id}'"
                )

            if handle is not None and handle.model_id == model_id:
                logger.debug(f"Reusing loaded engine for model '{model_id}'")
                handle.in_use = True
                return handle

            if handle is not None:
                logger.info(
                    f"Switching model: unloading '{handle.model_id}' before loading '{model_id}'"
                )
                self._unload_locked()

            model_path = self._resolve_path(model_id)
            start_time = time.time()
            try:
                native = self._engine.load(model_path)
            except Exception as e:
                logger.error(f"Failed to load model '{model_id}': {e}")
                raise EngineLoadError(model_id, str(e)) from e

            logger.info(
                f"Model '{model_id}' loaded in {time.time() - start_time:.2f}s"
            )
            self._handle = EngineHandle(model_id=model_id, native=native, in_use=True)
            return self._handle

    def release(self, handle: EngineHandle) -> None:
        with self._lock:
            if handle is not self._handle:
                logger.debug(f"Ignoring release of stale handle for '{handle.model_id}'")
                return
            handle.in_use = False
            self._start_idle_timer()

    def run_transcription(
        self, handle: EngineHandle, audio: np.ndarray, sample_rate: int = 16000
    ) -> str:
        """
        Run the engine on ``audio``. Blocks for the duration of the call.

        Raises:
            EngineBusyError: A transcription is already in flight on this handle.
            TranscriptionError: Empty/malformed audio or engine failure.
        """
        with self._lock:
            if handle is not self._handle or not handle.is_loaded:
                raise TranscriptionError(
                    f"Engine for model '{handle.model_id}' is no longer loaded"
                )
            if handle.busy:
                raise EngineBusyError("A transcription is already running on this handle")
            handle.busy = True

        try:
            if audio is None or len(audio) == 0:
                raise TranscriptionError("Audio buffer is empty")

            start_time = time.time()
            try:
                text = self._engine.run(handle.native, audio, sample_rate)
            except Exception as e:
                raise TranscriptionError(f"Transcription failed: {e}") from e

            processing_time = time.time() - start_time
            if processing_time > 0:
                audio_duration = len(audio) / sample_rate
                logger.debug(
                    f"Transcription finished: audio_len={audio_duration:.2f}s, "
                    f"time={processing_time:.2f}s, speed={audio_duration / processing_time:.2f}x"
                )
            return (text or "").strip()
        finally:
            with self._lock:
                handle.busy = False

    def unload(self) -> None:
        """Unload the resident model now. Used on shutdown."""
        with self._lock:
            self._cancel_idle_timer()
            if self._handle is None:
                return
            if self._handle.in_use:
                raise EngineBusyError("Cannot unload an engine that is in use")
            self._unload_locked()

    def _unload_locked(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        native, handle.native = handle.native, None
        try:
            self._engine.unload(native)
        except Exception as e:
            logger.warning(f"Error while unloading model '{handle.model_id}': {e}")
        gc.collect()
        logger.info(f"Model '{handle.model_id}' unloaded")

    def _start_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self.idle_timeout is None:
            return
        generation = self._timer_generation
        self._timer = self._timer_factory(
            self.idle_timeout, self._on_idle_timeout, args=(generation,)
        )
        self._timer.daemon = True
        self._timer.start()

    def _cancel_idle_timer(self) -> None:
        # Bumping the generation also voids a timer that already fired and is
        # waiting on the lock.
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_idle_timeout(self, generation: int) -> None:
        with self._lock:
            if generation != self._timer_generation:
                return
            self._timer = None
            if self._handle is None or self._handle.in_use:
                return
            logger.info(
                f"Engine idle for {self.idle_timeout:.0f}s, unloading '{self._handle.model_id}'"
            )
            self._unload_locked()
