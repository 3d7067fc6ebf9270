"""Wake phrase detection on top of a continuous speech recognizer."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from .errors import PermissionDenied, RecognitionUnavailable

logger = logging.getLogger(__name__)

# Recognizer error kinds that mean the user has refused microphone access
FATAL_ERRORS = frozenset({"not-allowed", "service-not-allowed"})


class SpeechRecognizer(Protocol):
    """Continuous speech-to-text engine.

    Callbacks may be invoked from any thread. ``on_end`` fires whenever the
    engine stops, whether asked to or on its own, once its audio device is
    released.
    """

    on_result: Callable[[str, bool], None] | None
    on_error: Callable[[str], None] | None
    on_end: Callable[[], None] | None

    def start(self) -> None: ...

    def stop(self) -> None: ...


class WakeWordListener:
    """Listens for the wake phrase and fires ``on_wake`` once.

    Recognition engines end on their own (platform timeouts, device
    hiccups). While the listener is wanted it restarts the engine after
    ``restart_delay``; after ``stop()`` or a detection it never does.
    """

    def __init__(
        self,
        recognizer_factory: Callable[[], SpeechRecognizer],
        wake_phrase: str,
        on_wake: Callable[[], Any],
        on_fatal: Callable[[PermissionDenied], Any] | None = None,
        restart_delay: float = 0.25,
        release_timeout: float = 3.0,
    ):
        self._factory = recognizer_factory
        self.wake_phrase = wake_phrase.lower()
        self._on_wake = on_wake
        self._on_fatal = on_fatal
        self.restart_delay = restart_delay
        self.release_timeout = release_timeout

        self._loop: asyncio.AbstractEventLoop | None = None
        self._recognizer: SpeechRecognizer | None = None
        self._wanted = False
        self._triggered = False
        self._running = False
        self._released = asyncio.Event()
        self._restart_handle: asyncio.TimerHandle | None = None
        self.restart_count = 0

    @property
    def is_listening(self) -> bool:
        return self._wanted and self._running

    async def start(self) -> None:
        """Begin continuous recognition.

        The first start builds the recognizer in a worker thread, since
        engines load their model on construction.

        Raises:
            PermissionDenied: Microphone access refused
            RecognitionUnavailable: No recognition engine could be started
        """
        if self._wanted:
            return
        self._loop = asyncio.get_running_loop()
        self._wanted = True
        self._triggered = False
        self.restart_count = 0
        try:
            if self._recognizer is None:
                recognizer = await asyncio.to_thread(self._create_recognizer)
                if not self._wanted:
                    # stop() arrived while the engine was loading
                    return
                self._attach(recognizer)
            self._launch()
        except BaseException:
            self._wanted = False
            self._recognizer = None
            raise
        logger.info("Listening for wake phrase %r", self.wake_phrase)

    def _create_recognizer(self) -> SpeechRecognizer:
        try:
            return self._factory()
        except PermissionDenied:
            raise
        except Exception as e:
            raise RecognitionUnavailable(f"Speech recognition unavailable: {e}") from e

    def _attach(self, recognizer: SpeechRecognizer) -> None:
        recognizer.on_result = lambda text, final: self._post(
            self._handle_result, recognizer, text, final
        )
        recognizer.on_error = lambda kind: self._post(self._handle_error, recognizer, kind)
        recognizer.on_end = lambda: self._post(self._handle_end, recognizer)
        self._recognizer = recognizer

    def _launch(self) -> None:
        self._released.clear()
        try:
            self._recognizer.start()
        except PermissionDenied:
            raise
        except Exception as e:
            raise RecognitionUnavailable(f"Speech recognition failed to start: {e}") from e
        self._running = True

    def _post(self, callback: Callable[..., None], *args: Any) -> None:
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Event loop closed during shutdown
            pass

    def _handle_result(self, source: SpeechRecognizer, transcript: str, is_final: bool) -> None:
        if source is not self._recognizer or not self._wanted or self._triggered:
            return
        if self.wake_phrase not in transcript.lower():
            logger.debug("Heard %r", transcript)
            return

        logger.info("Wake phrase detected in %r", transcript)
        self._triggered = True
        self._halt()
        result = self._on_wake()
        if asyncio.iscoroutine(result):
            self._loop.create_task(result)

    def _handle_error(self, source: SpeechRecognizer, kind: str) -> None:
        if source is not self._recognizer:
            return
        if kind in FATAL_ERRORS:
            logger.error("Speech recognition permission denied (%s)", kind)
            self._halt()
            if self._on_fatal is not None:
                result = self._on_fatal(PermissionDenied(f"Speech recognition not allowed: {kind}"))
                if asyncio.iscoroutine(result):
                    self._loop.create_task(result)
            return
        # Recoverable: the engine ends after reporting, and the end handler restarts it
        logger.warning("Speech recognition error: %s", kind)

    def _handle_end(self, source: SpeechRecognizer) -> None:
        if source is not self._recognizer:
            return
        self._running = False
        self._released.set()
        if self._wanted and not self._triggered:
            logger.debug("Recognizer ended on its own; restarting in %.2fs", self.restart_delay)
            self._restart_handle = self._loop.call_later(self.restart_delay, self._restart)

    def _restart(self) -> None:
        self._restart_handle = None
        if not self._wanted or self._running:
            return
        self.restart_count += 1
        try:
            self._launch()
        except PermissionDenied as e:
            self._halt()
            if self._on_fatal is not None:
                result = self._on_fatal(e)
                if asyncio.iscoroutine(result):
                    self._loop.create_task(result)
        except Exception:
            logger.exception("Recognizer restart failed; retrying")
            self._restart_handle = self._loop.call_later(self.restart_delay * 4, self._restart)

    def _halt(self) -> None:
        self._wanted = False
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
        if self._recognizer is not None and self._running:
            self._recognizer.stop()

    async def stop(self) -> bool:
        """Stop recognition and wait for the engine to release the microphone.

        Idempotent. After this returns the engine will not be restarted.

        Returns:
            False if the engine did not confirm release within
            ``release_timeout`` and may still hold the microphone
        """
        self._halt()
        released = True
        if self._running:
            try:
                await asyncio.wait_for(self._released.wait(), timeout=self.release_timeout)
            except TimeoutError:
                logger.error("Recognizer did not release the microphone within %.1fs", self.release_timeout)
                self._running = False
                released = False
        self._recognizer = None
        return released
