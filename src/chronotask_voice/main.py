"""Main entry point for ChronoTask voice."""

import argparse
import asyncio
import logging
import os
from functools import partial

from .audio.capture import CaptureStream
from .audio.playback import PlaybackScheduler
from .config import VoiceConfig
from .controller import VoiceSessionController
from .dashboard import ActivityLog, create_dashboard_app
from .store import AppStore, JsonDataStore
from .wake_word import WakeWordListener

logger = logging.getLogger(__name__)


def build_controller(
    config: VoiceConfig,
    store: AppStore,
    activity_log: ActivityLog,
    api_key: str,
) -> VoiceSessionController:
    """Wire the controller to the real microphone, speaker, recognizer and Gemini Live."""
    # Imported here so the dashboard can run on machines without PortAudio
    from google import genai

    from .audio import devices
    from .live_session import LiveSession, build_connect_config
    from .recognizer import WhisperRecognizer

    client = genai.Client(api_key=api_key)

    def recognizer_factory():
        return WhisperRecognizer(
            model_name=config.wake_word.whisper_model,
            sample_rate=config.audio.input_sample_rate,
            energy_threshold=config.audio.voiced_threshold,
            max_session_seconds=config.wake_word.max_recognition_seconds,
        )

    def session_factory(**callbacks):
        # Built per session so the prompt carries the current date
        connect_config = build_connect_config(voice_name=config.session.voice_name)
        return LiveSession(client, config.session.live_model, connect_config, **callbacks)

    def capture_factory():
        return CaptureStream(
            devices.open_input,
            sample_rate=config.audio.input_sample_rate,
            frame_size=config.audio.frame_size,
            voiced_threshold=config.audio.voiced_threshold,
        )

    return VoiceSessionController(
        store,
        listener_factory=partial(
            WakeWordListener,
            recognizer_factory,
            config.wake_word.phrase,
            restart_delay=config.wake_word.restart_delay,
        ),
        session_factory=session_factory,
        capture_factory=capture_factory,
        output_factory=devices.open_output,
        activity_log=activity_log,
        scheduler=PlaybackScheduler(sample_rate=config.audio.output_sample_rate),
        silence_timeout=config.session.silence_timeout,
        silence_check_interval=config.session.silence_check_interval,
        end_session_grace=config.session.end_session_grace,
        playback_drain_timeout=config.session.playback_drain_timeout,
    )


async def run_chronotask(config: VoiceConfig) -> None:
    """Serve the dashboard and, when an API key is set, the voice assistant."""
    store = await AppStore.open(JsonDataStore(config.data_file))
    activity_log = ActivityLog()
    logger.info("Loaded %d project(s) from %s", len(store.snapshot.projects), config.data_file)

    controller = None
    api_key = os.environ.get("GOOGLE_API_KEY")
    if api_key:
        controller = build_controller(config, store, activity_log, api_key)
    else:
        logger.warning("GOOGLE_API_KEY not set; voice assistant disabled")

    dashboard_app = create_dashboard_app(store, controller, activity_log)

    import uvicorn
    server = uvicorn.Server(
        uvicorn.Config(dashboard_app, host="127.0.0.1", port=config.dashboard_port, log_level="warning")
    )
    logger.info("Dashboard available at http://localhost:%d", config.dashboard_port)

    if controller is not None and config.autostart:
        if await controller.start():
            logger.info('Say "%s" to start talking', config.wake_word.phrase)

    try:
        await server.serve()
    finally:
        if controller is not None:
            await controller.shutdown()


def cli() -> None:
    """Command-line interface entry point."""
    parser = argparse.ArgumentParser(
        description="ChronoTask - projects, calendar and a voice assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  GOOGLE_API_KEY      Gemini API key. Without it only the dashboard runs.

Dashboard:
  The HTTP API is available at http://localhost:8080 (configurable with --dashboard-port).
  Voice can be switched on and off with POST /api/voice/start and /api/voice/stop.
""",
    )
    parser.add_argument(
        "--config",
        default=".chronotask/config.yaml",
        help="Path to config file (default: .chronotask/config.yaml)",
    )
    parser.add_argument("--data-file", help="JSON data file (overrides storage.data_file)")
    parser.add_argument("--dashboard-port", type=int, help="Dashboard server port (default: 8080)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--no-autostart",
        action="store_true",
        help="Do not start listening for the wake phrase on launch",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = VoiceConfig.load(args.config)
    if args.data_file:
        config.data_file = args.data_file
    if args.dashboard_port:
        config.dashboard_port = args.dashboard_port
    if args.no_autostart:
        config.autostart = False

    try:
        asyncio.run(run_chronotask(config))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    cli()
