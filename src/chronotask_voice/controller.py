"""Voice session controller: the OFF / WAITING / ACTIVE state machine.

The controller is the single actor for mode changes. Every transition runs
under one ``asyncio.Lock``; device, recognizer and session callbacks never
change state directly, they schedule a transition task that re-checks the
current mode (and the session generation) once it holds the lock.

Data is not guarded by this lock. Tool-call batches are committed through
``AppStore.update`` so they serialize with dashboard edits instead.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from pydantic import BaseModel

from .audio.capture import CaptureStream, FrameSink
from .audio.codec import decode
from .audio.playback import PlaybackScheduler
from .dashboard.activity_log import ActivityLog
from .errors import (
    DecodeError,
    InvalidTransition,
    PermissionDenied,
    RecognitionUnavailable,
    SilenceTimeout,
    VoiceError,
)
from .models import Mode, ToolCall, ToolResult
from .store import AppStore
from .tool_executor import BatchOutcome, ToolExecutor
from .tools import InvalidArguments

logger = logging.getLogger(__name__)

TRANSITIONS: dict[Mode, frozenset[Mode]] = {
    Mode.OFF: frozenset({Mode.WAITING}),
    Mode.WAITING: frozenset({Mode.ACTIVE, Mode.OFF}),
    Mode.ACTIVE: frozenset({Mode.WAITING, Mode.OFF}),
}


class Listener(Protocol):
    is_listening: bool

    async def start(self) -> None: ...

    async def stop(self) -> bool: ...


class Session(Protocol):
    is_open: bool

    async def open(self) -> None: ...

    def send_audio(self, audio) -> None: ...

    async def send_tool_results(self, results: list[ToolResult]) -> None: ...

    async def close(self) -> None: ...


class OutputDevice(Protocol):
    def close(self) -> None: ...


@dataclass(frozen=True)
class Notice:
    """A message for the user. ``fatal`` notices mean voice was switched off."""

    level: str
    message: str

    def to_dict(self) -> dict:
        return {"level": self.level, "message": self.message}


class VoiceSessionController:
    """Owns the wake-word listener, devices and live session.

    Args:
        store: Single writer for application data
        listener_factory: ``(on_wake, on_fatal) -> Listener``
        session_factory: Builds a session from keyword callbacks
            (on_audio, on_tool_calls, on_close, on_error, on_interrupted,
            on_transcript)
        capture_factory: Builds a closed CaptureStream for one session
        output_factory: Opens the speaker for a PlaybackScheduler (blocking)
    """

    def __init__(
        self,
        store: AppStore,
        listener_factory: Callable[..., Listener],
        session_factory: Callable[..., Session],
        capture_factory: Callable[[], CaptureStream],
        output_factory: Callable[[PlaybackScheduler], OutputDevice],
        executor: ToolExecutor | None = None,
        activity_log: ActivityLog | None = None,
        scheduler: PlaybackScheduler | None = None,
        silence_timeout: float = 10.0,
        silence_check_interval: float = 1.0,
        end_session_grace: float = 1.0,
        playback_drain_timeout: float = 10.0,
    ):
        self.store = store
        self.executor = executor or ToolExecutor()
        self.activity_log = activity_log
        self.scheduler = scheduler or PlaybackScheduler()
        self.silence_timeout = silence_timeout
        self.silence_check_interval = silence_check_interval
        self.end_session_grace = end_session_grace
        self.playback_drain_timeout = playback_drain_timeout

        self._session_factory = session_factory
        self._capture_factory = capture_factory
        self._output_factory = output_factory
        self._listener = listener_factory(
            on_wake=self._handle_wake, on_fatal=self._handle_listener_fatal
        )

        self._mode = Mode.OFF
        self._lock = asyncio.Lock()
        # False once the user asked for OFF; auto-restart paths check it
        self._wanted = False
        # Bumped per ACTIVE session so late callbacks from an old one are ignored
        self._generation = 0

        self._capture: CaptureStream | None = None
        self._output: OutputDevice | None = None
        self._session: Session | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._end_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._mode_listeners: list[Callable[[Mode], Any]] = []
        self._notice_listeners: list[Callable[[Notice], Any]] = []

    # --- Observers ---

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def is_wanted(self) -> bool:
        return self._wanted

    def add_mode_listener(self, callback: Callable[[Mode], Any]) -> None:
        """Add a callback (sync or async) called with each new mode."""
        self._mode_listeners.append(callback)

    def add_notice_listener(self, callback: Callable[[Notice], Any]) -> None:
        self._notice_listeners.append(callback)

    def status(self) -> dict[str, Any]:
        """Summary for the dashboard."""
        capture = self._capture
        return {
            "mode": self._mode.value,
            "wanted": self._wanted,
            "listening": self._listener.is_listening,
            "session_open": self._session is not None and self._session.is_open,
            "seconds_since_voiced": capture.seconds_since_voiced() if capture else None,
        }

    # --- User requests ---

    async def start(self) -> bool:
        """OFF -> WAITING.

        Returns:
            True if the listener started; False if the request overlapped a
            pending transition, voice was already on, or recognition could
            not start (a fatal notice is sent in that case)
        """
        if self._lock.locked() or self._mode is not Mode.OFF:
            logger.debug("Ignoring start request in mode %s", self._mode.value)
            return False
        async with self._lock:
            self._wanted = True
            try:
                await self._listener.start()
            except (PermissionDenied, RecognitionUnavailable) as e:
                self._wanted = False
                logger.error("Could not start wake word listener: %s", e)
                self._notify("fatal", str(e))
                return False
            except Exception as e:
                self._wanted = False
                logger.exception("Wake word listener failed to start")
                self._notify("fatal", f"Voice could not start: {e}")
                return False
            self._set_mode(Mode.WAITING)
        return True

    async def stop(self) -> None:
        """Any mode -> OFF, releasing every resource. Safe to call at any time."""
        self._wanted = False
        async with self._lock:
            if self._mode is Mode.OFF:
                return
            await self._listener.stop()
            await self._release_session()
            self._set_mode(Mode.OFF)

    # --- Transitions ---

    def _set_mode(self, target: Mode) -> None:
        if target is self._mode:
            return
        if target not in TRANSITIONS[self._mode]:
            raise InvalidTransition(self._mode, target)
        previous, self._mode = self._mode, target
        logger.info("Voice mode: %s -> %s", previous.value, target.value)
        for listener in self._mode_listeners:
            self._dispatch(listener, target)

    async def _activate(self) -> None:
        """WAITING -> ACTIVE after the wake phrase."""
        async with self._lock:
            if self._mode is not Mode.WAITING or not self._wanted:
                return
            # The recognizer holds the microphone until it confirms release
            if not await self._listener.stop():
                logger.warning("Microphone still held by the recognizer; not opening a session")
                await self._resume_waiting()
                return
            self._generation += 1
            generation = self._generation
            try:
                await self._acquire_session(generation)
            except PermissionDenied as e:
                logger.error("Microphone permission denied: %s", e)
                await self._release_session()
                self._wanted = False
                self._set_mode(Mode.OFF)
                self._notify("fatal", str(e))
                return
            except (VoiceError, OSError) as e:
                logger.warning("Could not start voice session: %s", e)
                await self._release_session()
                await self._resume_waiting()
                return

            if not self._wanted:
                # Stop requested while devices and the session were being acquired
                await self._release_session()
                self._set_mode(Mode.OFF)
                return

            self._set_mode(Mode.ACTIVE)
            self._supervisor_task = self._spawn(self._supervise_silence(generation))
        await self._log_event("Voice session started")

    async def _acquire_session(self, generation: int) -> None:
        self.scheduler.stop()
        self._output = await asyncio.to_thread(self._output_factory, self.scheduler)

        self._capture = self._capture_factory()
        await self._capture.open()

        self._session = self._session_factory(
            on_audio=partial(self._handle_audio, generation),
            on_tool_calls=partial(self._handle_tool_calls, generation),
            on_close=partial(self._handle_session_closed, generation),
            on_error=partial(self._handle_session_error, generation),
            on_interrupted=self.scheduler.stop,
            on_transcript=self._log_transcript,
        )
        await self._session.open()
        sink: FrameSink = self._session.send_audio
        self._capture.bind(sink)

    async def _deactivate(self, generation: int, cause: Exception | None) -> None:
        """ACTIVE -> WAITING (or OFF if the user stopped in the meantime)."""
        async with self._lock:
            if generation != self._generation or self._mode is not Mode.ACTIVE:
                return
            reason = str(cause) if cause else "session ended"
            logger.info("Ending voice session: %s", reason)
            await self._release_session()
            await self._resume_waiting()
        await self._log_event(f"Voice session ended: {reason}")

    async def _resume_waiting(self) -> None:
        # Caller holds the lock and has released the session
        if not self._wanted:
            self._set_mode(Mode.OFF)
            return
        try:
            await self._listener.start()
        except (PermissionDenied, RecognitionUnavailable) as e:
            logger.error("Could not restart wake word listener: %s", e)
            self._wanted = False
            self._set_mode(Mode.OFF)
            self._notify("fatal", str(e))
            return
        except Exception as e:
            logger.exception("Wake word listener failed to restart")
            self._wanted = False
            self._set_mode(Mode.OFF)
            self._notify("fatal", f"Voice stopped: {e}")
            return
        self._set_mode(Mode.WAITING)

    async def _release_session(self) -> None:
        current = asyncio.current_task()
        for task in (self._supervisor_task, self._end_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._supervisor_task = None
        self._end_task = None

        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception:
                logger.exception("Error closing live session")

        capture, self._capture = self._capture, None
        if capture is not None:
            capture.close()

        self.scheduler.stop()

        output, self._output = self._output, None
        if output is not None:
            try:
                await asyncio.to_thread(output.close)
            except Exception:
                logger.exception("Error closing speaker")

    # --- Callbacks ---

    def _handle_wake(self) -> None:
        self._spawn(self._activate())

    def _handle_listener_fatal(self, error: PermissionDenied) -> None:
        self._spawn(self._shut_down_fatal(error))

    async def _shut_down_fatal(self, error: Exception) -> None:
        await self.stop()
        self._notify("fatal", str(error))

    def _handle_session_closed(self, generation: int) -> None:
        self._spawn(self._deactivate(generation, None))

    def _handle_session_error(self, generation: int, error: Exception) -> None:
        self._spawn(self._deactivate(generation, error))

    def _handle_audio(self, generation: int, data: bytes | str) -> None:
        if generation != self._generation:
            return
        try:
            audio = decode(data, sample_rate=self.scheduler.sample_rate, channels=self.scheduler.channels)
        except DecodeError as e:
            logger.debug("Dropping undecodable audio chunk: %s", e)
            return
        self.scheduler.schedule(audio)

    async def _handle_tool_calls(self, generation: int, calls: list[ToolCall]) -> None:
        """Apply one batch as a single commit and answer every call in order."""
        if generation != self._generation:
            return

        def apply(snapshot):
            outcome = self.executor.apply_batch(calls, snapshot)
            return outcome.snapshot, outcome

        outcome: BatchOutcome = await self.store.update(apply)

        for call, result in zip(calls, outcome.results):
            logger.info("Tool %s -> %s", call.name, result.status)
            if self.activity_log is not None:
                await self.activity_log.log_tool_call(call.name, _call_args(call), result.result)

        session = self._session
        if session is not None and generation == self._generation:
            await session.send_tool_results(outcome.results)

        if outcome.end_session and generation == self._generation and self._end_task is None:
            self._end_task = self._spawn(self._end_after_grace(generation))

    async def _end_after_grace(self, generation: int) -> None:
        # The goodbye may still be arriving; then let what is queued finish playing
        await asyncio.sleep(self.end_session_grace)
        if not await self.scheduler.wait_until_idle(timeout=self.playback_drain_timeout):
            logger.warning("Goodbye still playing after %.1fs; ending anyway", self.playback_drain_timeout)
        await self._deactivate(generation, None)

    async def _supervise_silence(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.silence_check_interval)
            capture = self._capture
            if capture is None:
                return
            silent_for = capture.seconds_since_voiced()
            if silent_for >= self.silence_timeout:
                await self._deactivate(
                    generation, SilenceTimeout(f"no voice for {silent_for:.0f}s")
                )
                return

    async def _log_transcript(self, role: str, text: str) -> None:
        if self.activity_log is None:
            return
        if role == "user":
            await self.activity_log.log_user_speech(text)
        else:
            await self.activity_log.log_assistant_response(text)

    async def _log_event(self, message: str) -> None:
        if self.activity_log is not None:
            await self.activity_log.log_system_event(message)

    # --- Helpers ---

    def _notify(self, level: str, message: str) -> None:
        notice = Notice(level=level, message=message)
        for listener in self._notice_listeners:
            self._dispatch(listener, notice)

    def _dispatch(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Listener failed")
            return
        if asyncio.iscoroutine(result):
            self._spawn(result)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Voice controller task failed", exc_info=task.exception())

    async def shutdown(self) -> None:
        """Stop voice and wait for pending transition tasks (process exit)."""
        await self.stop()
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _call_args(call: ToolCall) -> dict[str, Any]:
    if isinstance(call.args, BaseModel):
        return call.args.model_dump(by_alias=True)
    if isinstance(call.args, InvalidArguments):
        return {"error": call.args.reason}
    return {}
