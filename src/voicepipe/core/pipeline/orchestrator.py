"""
Session state machine: capture -> transcription -> enhancement -> delivery.

The orchestrator is the only writer of session state and the only caller
of the engine manager, context resolver and enhancement client. It lives on
one asyncio event loop; the blocking engine calls run on a dedicated
single-thread executor.
"""

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from ...utils.logger import get_logger
from ..context.resolver import ContextResolver
from ..engine.manager import EngineHandle, EngineResourceManager
from ..enhancement.client import EnhancementClient, EnhancementRequest
from ..enhancement.presets import Enhancement, index_enhancements
from ..enhancement.vocabulary_processor import apply_vocabulary_replacements
from ..errors import (
    AlreadyActiveError,
    CaptureError,
    FailureKind,
    InvalidStateError,
    SessionFailure,
)
from .events import EventCallback, LifecycleEvents
from .ports import AudioCapture, ContextSource, HistorySink, TextDelivery
from .session import AppContext, LifecycleEvent, Session, Stage

logger = get_logger(__name__)


class PipelineOrchestrator:
    """
    Drives one session at a time through its stages.

    Example:
        orchestrator = PipelineOrchestrator(
            engine_manager=manager,
            context_resolver=resolver,
            enhancement_client=client,
            capture=recorder,
            context_source=context_source,
            model_id="sherpa-onnx-whisper-base.en",
        )
        orchestrator.subscribe(print)
        orchestrator.start()
        ...
        session = await orchestrator.stop_and_transcribe()
        print(session.final_text)
    """

    def __init__(
        self,
        engine_manager: EngineResourceManager,
        context_resolver: ContextResolver,
        enhancement_client: EnhancementClient,
        capture: AudioCapture,
        context_source: ContextSource,
        model_id: str,
        sample_rate: int = 16000,
        enhancements: Optional[Iterable[Enhancement]] = None,
        vocabulary_replacements: Sequence[Tuple[str, str]] = (),
        history: Optional[HistorySink] = None,
        delivery: Optional[TextDelivery] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._engine = engine_manager
        self._resolver = context_resolver
        self._enhancer = enhancement_client
        self._capture = capture
        self._context_source = context_source
        self._history = history
        self._delivery = delivery

        self.model_id = model_id
        self.sample_rate = sample_rate
        self.vocabulary_replacements = list(vocabulary_replacements)
        self._presets: Dict[str, Enhancement] = index_enhancements(enhancements or [])

        # An injected executor belongs to the caller and outlives shutdown().
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="voicepipe-engine"
        )
        self._events = LifecycleEvents()
        self._session: Optional[Session] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def stage(self) -> Stage:
        return self._session.stage if self._session is not None else Stage.IDLE

    @property
    def active_session(self) -> Optional[Session]:
        return self._session

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        return self._events.subscribe(callback)

    def open_channel(self, maxsize: int = 0) -> "asyncio.Queue[LifecycleEvent]":
        return self._events.open_channel(maxsize)

    def close_channel(self, channel: asyncio.Queue) -> None:
        self._events.close_channel(channel)

    def start(self) -> Session:
        """
        Begin a new session and start recording.

        Raises:
            AlreadyActiveError: A session is already in progress.
        """
        if self._session is not None:
            raise AlreadyActiveError(self._session.stage)

        session = Session(context=self._snapshot_context(), sample_rate=self.sample_rate)
        self._session = session
        logger.info(
            f"Session {session.id} started (app={session.context.app_id!r}, "
            f"url={session.context.url!r})"
        )
        self._transition(session, Stage.RECORDING)

        try:
            self._capture.start()
        except Exception as e:
            failure = e if isinstance(e, CaptureError) else CaptureError(str(e))
            logger.error(f"Failed to start recording: {failure}")
            self._finish(session, Stage.FAILED, failure)
        return session

    async def stop_and_transcribe(self) -> Session:
        """
        Finalize the recording and run the rest of the pipeline.

        Returns the session in its terminal stage.

        Raises:
            InvalidStateError: No session is recording.
        """
        session = self._session
        if session is None or session.stage is not Stage.RECORDING:
            raise InvalidStateError("stop_and_transcribe", self.stage)

        try:
            audio = self._capture.stop()
        except Exception as e:
            failure = e if isinstance(e, CaptureError) else CaptureError(str(e))
            logger.error(f"Failed to finalize recording: {failure}")
            self._finish(session, Stage.FAILED, failure)
            return session

        if audio is None or len(audio) == 0:
            logger.warning("No audio data captured")
            self._finish(session, Stage.FAILED, CaptureError("No audio captured"))
            return session

        session.audio = audio
        logger.info(f"Captured {len(audio)} audio samples")
        self._transition(session, Stage.TRANSCRIBING)

        task = asyncio.create_task(self._process(session))
        self._task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        self._settle(session)
        return session

    async def cancel(self) -> Optional[Session]:
        """Abort the active session. Returns ``None`` when idle."""
        session = self._session
        if session is None:
            logger.debug("cancel() with no active session")
            return None

        logger.info(f"Cancelling session {session.id} during {session.stage.value}")

        if session.stage is Stage.RECORDING:
            try:
                self._capture.cancel()
            except Exception as e:
                logger.warning(f"Error while discarding recording: {e}")
            self._finish(session, Stage.CANCELLED)
            return session

        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._settle(session)
        return session

    async def shutdown(self) -> None:
        await self.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    async def _process(self, session: Session) -> Session:
        outcome, failure = Stage.COMPLETED, None
        handle: Optional[EngineHandle] = None

        try:
            session.profile = self._resolver.resolve(
                session.context.app_id, session.context.url
            )

            handle = await self._run_engine_call(self._engine.acquire, self.model_id)
            raw_text = await self._run_engine_call(
                self._engine.run_transcription,
                handle,
                session.audio,
                session.sample_rate,
            )
            self._engine.release(handle)
            handle = None

            session.raw_text = raw_text
            session.processed_text = apply_vocabulary_replacements(
                raw_text, self.vocabulary_replacements
            )
            logger.info(
                f"Transcription: '{raw_text[:50]}{'...' if len(raw_text) > 50 else ''}'"
            )

            preset = self._enhancement_preset(session)
            if preset is not None:
                self._transition(session, Stage.ENHANCING)
                await self._enhance(session, preset)

        except asyncio.CancelledError:
            outcome = Stage.CANCELLED
        except SessionFailure as e:
            logger.error(f"Session {session.id} failed: {e}")
            outcome, failure = Stage.FAILED, e
        except Exception as e:
            logger.exception(f"Unexpected error in session {session.id}: {e}")
            outcome, failure = Stage.FAILED, e
        finally:
            if handle is not None:
                self._engine.release(handle)

        self._finish(session, outcome, failure)
        return session

    async def _run_engine_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Run a blocking engine call on the engine thread.

        The call cannot be pre-empted. On cancellation, wait for it to return,
        release any handle it produced, then re-raise.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, functools.partial(fn, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            logger.info("Cancel requested during engine call, waiting for it to return")
            result = await self._drain(future)
            if isinstance(result, EngineHandle):
                self._engine.release(result)
            raise

    @staticmethod
    async def _drain(future: "asyncio.Future") -> Any:
        while not future.done():
            try:
                await asyncio.shield(future)
            except asyncio.CancelledError:
                continue
            except Exception:
                break
        if future.cancelled() or future.exception() is not None:
            return None
        return future.result()

    def _enhancement_preset(self, session: Session) -> Optional[Enhancement]:
        profile = session.profile
        if profile is None or not profile.enhancement_enabled:
            return None
        if not session.processed_text or not session.processed_text.strip():
            logger.debug("Empty transcript, skipping enhancement")
            return None

        preset = self._presets.get(profile.prompt_id) if profile.prompt_id else None
        if preset is None:
            message = f"enhancement skipped: unknown prompt '{profile.prompt_id}'"
            logger.warning(message)
            session.diagnostics.append(message)
        return preset

    async def _enhance(self, session: Session, preset: Enhancement) -> None:
        logger.info(
            f"Applying enhancement '{preset.title}' via {session.profile.provider}"
        )
        try:
            result = await self._enhancer.enhance(
                EnhancementRequest(
                    text=session.processed_text,
                    prompt=preset.prompt,
                    provider=session.profile.provider,
                )
            )
        except Exception as e:
            logger.exception(f"Session {session.id} enhancement raised, keeping raw transcript")
            session.diagnostics.append(f"enhancement failed: {e}")
            return
        session.enhancement = result

        if result.ok:
            session.enhanced_text = result.text
            session.enhancement_name = preset.title
        else:
            # Not fatal: the session completes with the transcript.
            message = f"enhancement {result.error.value}"
            if result.detail:
                message += f": {result.detail}"
            logger.warning(f"Session {session.id} {message}, keeping raw transcript")
            session.diagnostics.append(message)

    def _snapshot_context(self) -> AppContext:
        try:
            return self._context_source.current()
        except Exception as e:
            logger.warning(f"Context detection failed, using defaults: {e}")
            return AppContext()

    def _transition(
        self, session: Session, stage: Stage, error_kind: Optional[FailureKind] = None
    ) -> None:
        old = session.advance(stage)
        logger.debug(f"Session {session.id}: {old.value} -> {stage.value}")
        self._events.publish(
            LifecycleEvent(
                session_id=session.id,
                old_stage=old,
                new_stage=stage,
                error_kind=error_kind,
            )
        )

    def _settle(self, session: Session) -> None:
        # A task cancelled before its first step never reaches _finish.
        if not session.is_terminal:
            self._finish(session, Stage.CANCELLED)

    def _finish(
        self, session: Session, stage: Stage, failure: Optional[BaseException] = None
    ) -> None:
        if session.is_terminal:
            return

        old = session.advance(stage)
        session.finished_at = datetime.now()
        session.audio = None
        if failure is not None:
            session.error = (
                failure.kind if isinstance(failure, SessionFailure) else FailureKind.INTERNAL
            )
            session.error_message = str(failure)

        if stage is Stage.COMPLETED:
            self._deliver(session)
        if stage is not Stage.CANCELLED:
            self._archive(session)

        if self._session is session:
            self._session = None
            self._task = None

        logger.info(
            f"Session {session.id} {stage.value} after {session.duration:.2f}s"
        )
        self._events.publish(
            LifecycleEvent(
                session_id=session.id,
                old_stage=old,
                new_stage=stage,
                error_kind=session.error,
            )
        )

    def _deliver(self, session: Session) -> None:
        text = session.final_text
        if self._delivery is None or not text:
            return
        try:
            self._delivery.deliver(text)
        except Exception as e:
            message = f"delivery failed: {e}"
            logger.error(message)
            session.diagnostics.append(message)

    def _archive(self, session: Session) -> None:
        if self._history is None:
            return
        try:
            self._history.record(session)
        except Exception as e:
            logger.warning(f"Could not record session {session.id} to history: {e}")
