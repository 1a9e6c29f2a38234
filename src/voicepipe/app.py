"""Application runtime."""

import asyncio
import os
import sys
from typing import Optional

from voicepipe import __app_name__, __version__
from voicepipe.core.audio import AudioRecorder
from voicepipe.core.engine import EngineResourceManager, SherpaOnnxEngine
from voicepipe.core.enhancement import EnhancementClient, RateLimiter
from voicepipe.core.pipeline import (
    AppContext,
    LifecycleEvent,
    PipelineOrchestrator,
    Stage,
)
from voicepipe.core.pipeline.ports import AudioCapture, ContextSource, TextDelivery
from voicepipe.core.settings.settings import JsonHistorySink, Settings, get_settings
from voicepipe.utils.logger import get_logger, shutdown_logging

logger = get_logger(__name__)


class StaticContextSource:
    """Reports a fixed app/URL. Real frontmost-app detection plugs in here."""

    def __init__(self, app_id: Optional[str] = None, url: Optional[str] = None):
        self.app_id = app_id
        self.url = url

    def current(self) -> AppContext:
        return AppContext(app_id=self.app_id, url=self.url)


class StdoutDelivery:
    def deliver(self, text: str) -> None:
        print(text, flush=True)


def build_orchestrator(
    settings: Settings,
    capture: Optional[AudioCapture] = None,
    context_source: Optional[ContextSource] = None,
    delivery: Optional[TextDelivery] = None,
    engine_manager: Optional[EngineResourceManager] = None,
) -> PipelineOrchestrator:
    """Wire one instance of every component from ``settings``."""
    engine_manager = engine_manager or EngineResourceManager(
        SherpaOnnxEngine(), idle_timeout=settings.engine_idle_timeout
    )
    enhancement_client = EnhancementClient(
        provider_configs=settings.provider_configs(),
        retry_policy=settings.retry,
        rate_limiter=RateLimiter(min_interval=settings.rate_limit_interval),
    )

    return PipelineOrchestrator(
        engine_manager=engine_manager,
        context_resolver=settings.build_context_resolver(),
        enhancement_client=enhancement_client,
        capture=capture
        or AudioRecorder(sample_rate=settings.sample_rate, device=settings.input_device),
        context_source=context_source or StaticContextSource(),
        model_id=settings.model_id,
        sample_rate=settings.sample_rate,
        enhancements=settings.get_enhancements(),
        vocabulary_replacements=settings.vocabulary_replacements,
        history=JsonHistorySink(),
        delivery=delivery,
    )


def _log_event(event: LifecycleEvent) -> None:
    suffix = f" ({event.error_kind.value})" if event.error_kind else ""
    logger.info(
        f"[{event.session_id[:8]}] {event.old_stage.value} -> {event.new_stage.value}{suffix}"
    )


async def run_terminal(settings: Settings) -> None:
    """Enter starts and stops a recording, 'c' cancels it, 'q' quits."""
    engine_manager = EngineResourceManager(
        SherpaOnnxEngine(), idle_timeout=settings.engine_idle_timeout
    )
    orchestrator = build_orchestrator(
        settings,
        context_source=StaticContextSource(
            os.environ.get("VOICEPIPE_APP_ID"), os.environ.get("VOICEPIPE_URL")
        ),
        delivery=StdoutDelivery(),
        engine_manager=engine_manager,
    )
    orchestrator.subscribe(_log_event)

    try:
        while True:
            command = await asyncio.to_thread(input, "[Enter] record, [q] quit: ")
            if command.strip().lower() == "q":
                break

            session = orchestrator.start()
            if session.stage is not Stage.RECORDING:
                print(f"Could not start recording: {session.error_message}")
                continue

            command = await asyncio.to_thread(input, "Recording... [Enter] stop, [c] cancel: ")
            if command.strip().lower() == "c":
                await orchestrator.cancel()
                print("Cancelled.")
                continue

            session = await orchestrator.stop_and_transcribe()
            if session.stage is Stage.FAILED:
                print(f"Failed: {session.error_message}")
            for diagnostic in session.diagnostics:
                print(f"note: {diagnostic}")
    finally:
        await orchestrator.shutdown()
        engine_manager.unload()


def main():
    settings = get_settings()
    logger.info(f"Starting {__app_name__} v{__version__}")
    logger.info(
        f"Settings: model={settings.model_id}, sample_rate={settings.sample_rate}"
    )

    try:
        asyncio.run(run_terminal(settings))
    except (KeyboardInterrupt, EOFError):
        pass
    finally:
        logger.info("Application shutdown complete")
        shutdown_logging()
    sys.exit(0)


if __name__ == "__main__":
    main()
