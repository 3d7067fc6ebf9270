"""Tests for the voice session controller state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
import pytest_asyncio

from chronotask_voice.audio.playback import PlaybackScheduler
from chronotask_voice.controller import TRANSITIONS, VoiceSessionController
from chronotask_voice.dashboard.activity_log import ActivityLog
from chronotask_voice.errors import (
    DeviceUnavailable,
    InvalidTransition,
    PermissionDenied,
    RecognitionUnavailable,
    SessionConnectionError,
)
from chronotask_voice.models import DataSnapshot, Mode, Project
from chronotask_voice.store import AppStore
from chronotask_voice.tools import parse_tool_call


class FakeListener:
    """Wake word listener that the test triggers by hand."""

    def __init__(self, on_wake, on_fatal):
        self.on_wake = on_wake
        self.on_fatal = on_fatal
        self.is_listening = False
        self.starts = 0
        self.stops = 0
        self.start_error: Exception | None = None
        self.releases = True

    async def start(self):
        await asyncio.sleep(0)
        if self.start_error is not None:
            raise self.start_error
        self.starts += 1
        self.is_listening = True

    async def stop(self):
        self.stops += 1
        self.is_listening = False
        return self.releases


class FakeSession:
    """Live session that records traffic and exposes its callbacks."""

    def __init__(self, on_audio, on_tool_calls, on_close, on_error, on_interrupted, on_transcript):
        self.on_audio = on_audio
        self.on_tool_calls = on_tool_calls
        self.on_close = on_close
        self.on_error = on_error
        self.on_interrupted = on_interrupted
        self.on_transcript = on_transcript
        self.is_open = False
        self.closed = False
        self.audio = []
        self.tool_results = []
        self.open_error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def open(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self.is_open = True

    def send_audio(self, audio):
        self.audio.append(audio)

    async def send_tool_results(self, results):
        self.tool_results.append(list(results))

    async def close(self):
        self.is_open = False
        self.closed = True


class FakeCapture:
    def __init__(self):
        self.opened = False
        self.closed = False
        self.sink = None
        self.silent_for = 0.0
        self.open_error: Exception | None = None

    async def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def bind(self, sink):
        self.sink = sink

    def seconds_since_voiced(self):
        return self.silent_for

    def close(self):
        self.closed = True


class FakeOutput:
    def __init__(self, scheduler):
        self.scheduler = scheduler
        self.closed = False

    def close(self):
        self.closed = True


class Harness:
    """Builds a controller wired to fakes and keeps handles on them."""

    def __init__(self, persistence=None, **controller_kwargs):
        self.sessions: list[FakeSession] = []
        self.captures: list[FakeCapture] = []
        self.outputs: list[FakeOutput] = []
        self.modes: list[Mode] = []
        self.notices = []
        self.session_open_error: Exception | None = None
        self.session_gate: asyncio.Event | None = None
        self.capture_open_error: Exception | None = None

        self.store = AppStore(
            persistence, initial=DataSnapshot(projects=(Project(id="p1", name="Garden"),))
        )
        self.activity_log = ActivityLog()
        self.scheduler = PlaybackScheduler(sample_rate=24000)

        options = {"silence_timeout": 10.0, "silence_check_interval": 0.01, "end_session_grace": 0.01}
        options.update(controller_kwargs)
        self.controller = VoiceSessionController(
            self.store,
            listener_factory=self._make_listener,
            session_factory=self._make_session,
            capture_factory=self._make_capture,
            output_factory=self._make_output,
            activity_log=self.activity_log,
            scheduler=self.scheduler,
            **options,
        )
        self.controller.add_mode_listener(self.modes.append)
        self.controller.add_notice_listener(self.notices.append)

    def _make_listener(self, on_wake, on_fatal):
        self.listener = FakeListener(on_wake, on_fatal)
        return self.listener

    def _make_session(self, **callbacks):
        session = FakeSession(**callbacks)
        session.open_error = self.session_open_error
        session.gate = self.session_gate
        self.sessions.append(session)
        return session

    def _make_capture(self):
        capture = FakeCapture()
        capture.open_error = self.capture_open_error
        self.captures.append(capture)
        return capture

    def _make_output(self, scheduler):
        output = FakeOutput(scheduler)
        self.outputs.append(output)
        return output

    async def wait_for_mode(self, mode: Mode, timeout: float = 2.0):
        async def poll():
            while self.controller.mode is not mode:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(poll(), timeout=timeout)

    async def activate(self):
        assert await self.controller.start()
        self.listener.on_wake()
        await self.wait_for_mode(Mode.ACTIVE)
        return self.sessions[-1]


async def settle(rounds: int = 5):
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest_asyncio.fixture
async def harness():
    h = Harness()
    yield h
    await h.controller.shutdown()


class TestStartStop:
    """Tests for user start/stop requests."""

    @pytest.mark.asyncio
    async def test_start_enters_waiting(self, harness):
        assert await harness.controller.start() is True

        assert harness.controller.mode is Mode.WAITING
        assert harness.listener.is_listening
        assert harness.modes == [Mode.WAITING]

    @pytest.mark.asyncio
    async def test_start_when_already_on(self, harness):
        await harness.controller.start()

        assert await harness.controller.start() is False
        assert harness.listener.starts == 1

    @pytest.mark.asyncio
    async def test_overlapping_start_is_rejected(self, harness):
        """A start arriving while another is in flight is refused."""
        results = await asyncio.gather(harness.controller.start(), harness.controller.start())

        assert sorted(results) == [False, True]
        assert harness.listener.starts == 1

    @pytest.mark.asyncio
    async def test_stop_from_waiting(self, harness):
        await harness.controller.start()

        await harness.controller.stop()

        assert harness.controller.mode is Mode.OFF
        assert not harness.listener.is_listening
        assert not harness.controller.is_wanted

    @pytest.mark.asyncio
    async def test_stop_when_off_is_noop(self, harness):
        await harness.controller.stop()
        await harness.controller.stop()

        assert harness.controller.mode is Mode.OFF
        assert harness.modes == []

    @pytest.mark.asyncio
    async def test_start_permission_denied(self, harness):
        harness.listener.start_error = PermissionDenied("microphone access denied")

        assert await harness.controller.start() is False
        await settle()

        assert harness.controller.mode is Mode.OFF
        assert [n.level for n in harness.notices] == ["fatal"]

    @pytest.mark.asyncio
    async def test_start_without_recognizer(self, harness):
        harness.listener.start_error = RecognitionUnavailable("no engine")

        assert await harness.controller.start() is False
        assert harness.controller.mode is Mode.OFF

    @pytest.mark.asyncio
    async def test_start_unexpected_listener_error(self, harness):
        harness.listener.start_error = RuntimeError("device busy")

        assert await harness.controller.start() is False
        await settle()

        assert harness.controller.mode is Mode.OFF
        assert not harness.controller.is_wanted
        assert [n.level for n in harness.notices] == ["fatal"]

    @pytest.mark.asyncio
    async def test_invalid_transition_raises(self, harness):
        with pytest.raises(InvalidTransition):
            harness.controller._set_mode(Mode.ACTIVE)


class TestActivation:
    """Tests for WAITING -> ACTIVE."""

    @pytest.mark.asyncio
    async def test_wake_opens_session(self, harness):
        session = await harness.activate()

        assert harness.listener.stops == 1
        assert not harness.listener.is_listening
        assert session.is_open
        assert harness.captures[0].opened
        assert harness.captures[0].sink == session.send_audio
        assert harness.outputs[0].scheduler is harness.scheduler
        assert harness.controller.status()["session_open"] is True

    @pytest.mark.asyncio
    async def test_stop_while_active_releases_everything(self, harness):
        session = await harness.activate()

        await harness.controller.stop()

        assert harness.controller.mode is Mode.OFF
        assert session.closed
        assert harness.captures[0].closed
        assert harness.outputs[0].closed
        assert not harness.listener.is_listening

    @pytest.mark.asyncio
    async def test_stop_during_activation_ends_off(self, harness):
        """stop() while the session is still connecting wins over activation."""
        harness.session_gate = asyncio.Event()
        await harness.controller.start()

        harness.listener.on_wake()
        await wait_until(lambda: harness.sessions)

        stop_task = asyncio.create_task(harness.controller.stop())
        await settle()
        harness.session_gate.set()
        await stop_task

        assert harness.controller.mode is Mode.OFF
        assert Mode.ACTIVE not in harness.modes
        assert harness.sessions[0].closed
        assert harness.captures[0].closed
        assert harness.outputs[0].closed

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_waiting(self, harness):
        harness.session_open_error = SessionConnectionError("connect refused")
        await harness.controller.start()

        harness.listener.on_wake()
        await wait_until(lambda: harness.listener.starts == 2)

        assert harness.controller.mode is Mode.WAITING
        assert harness.listener.starts == 2
        assert harness.captures[0].closed
        assert harness.outputs[0].closed
        assert harness.notices == []

    @pytest.mark.asyncio
    async def test_device_unavailable_returns_to_waiting(self, harness):
        harness.capture_open_error = DeviceUnavailable("no input device")
        await harness.controller.start()

        harness.listener.on_wake()
        await wait_until(lambda: harness.listener.starts == 2)

        assert harness.controller.mode is Mode.WAITING
        assert harness.sessions == []

    @pytest.mark.asyncio
    async def test_microphone_permission_denied_goes_off(self, harness):
        harness.capture_open_error = PermissionDenied("microphone access denied")
        await harness.controller.start()

        harness.listener.on_wake()
        await harness.wait_for_mode(Mode.OFF)
        await settle()

        assert not harness.controller.is_wanted
        assert [n.level for n in harness.notices] == ["fatal"]
        assert harness.outputs[0].closed

    @pytest.mark.asyncio
    async def test_unreleased_microphone_skips_session(self, harness):
        """A recognizer that never confirms release keeps the session closed."""
        await harness.controller.start()
        harness.listener.releases = False

        harness.listener.on_wake()
        await wait_until(lambda: harness.listener.starts == 2)

        assert harness.controller.mode is Mode.WAITING
        assert harness.captures == []
        assert harness.outputs == []
        assert harness.sessions == []
        assert Mode.ACTIVE not in harness.modes


class TestDeactivation:
    """Tests for ACTIVE -> WAITING."""

    @pytest.mark.asyncio
    async def test_silence_timeout(self, harness):
        harness.controller.silence_timeout = 0.05
        session = await harness.activate()

        harness.captures[0].silent_for = 1.0
        await harness.wait_for_mode(Mode.WAITING)

        assert session.closed
        assert harness.captures[0].closed
        assert harness.listener.starts == 2

    @pytest.mark.asyncio
    async def test_voice_keeps_session_alive(self, harness):
        harness.controller.silence_timeout = 0.05
        await harness.activate()

        await asyncio.sleep(0.1)

        assert harness.controller.mode is Mode.ACTIVE

    @pytest.mark.asyncio
    async def test_session_error_returns_to_waiting(self, harness):
        session = await harness.activate()

        session.on_error(SessionConnectionError("socket dropped"))
        await harness.wait_for_mode(Mode.WAITING)

        assert session.closed

    @pytest.mark.asyncio
    async def test_session_close_returns_to_waiting(self, harness):
        session = await harness.activate()

        session.on_close()
        await harness.wait_for_mode(Mode.WAITING)

        assert harness.listener.is_listening

    @pytest.mark.asyncio
    async def test_late_callback_from_old_session_is_ignored(self, harness):
        first = await harness.activate()
        first.on_close()
        await harness.wait_for_mode(Mode.WAITING)

        harness.listener.on_wake()
        await harness.wait_for_mode(Mode.ACTIVE)
        first.on_error(SessionConnectionError("stale"))
        await settle(20)

        assert harness.controller.mode is Mode.ACTIVE
        assert harness.sessions[1].is_open

    @pytest.mark.asyncio
    async def test_listener_fatal_turns_voice_off(self, harness):
        await harness.controller.start()

        harness.listener.on_fatal(PermissionDenied("Speech recognition not allowed"))
        await harness.wait_for_mode(Mode.OFF)
        await settle()

        assert [n.message for n in harness.notices] == ["Speech recognition not allowed"]

    @pytest.mark.asyncio
    async def test_listener_restart_failure_turns_voice_off(self, harness):
        session = await harness.activate()
        harness.listener.start_error = RuntimeError("recognizer thread died")

        session.on_close()
        await harness.wait_for_mode(Mode.OFF)
        await settle()

        assert session.closed
        assert harness.captures[0].closed
        assert not harness.controller.is_wanted
        assert harness.controller.status()["session_open"] is False
        assert [n.level for n in harness.notices] == ["fatal"]
        assert "recognizer thread died" in harness.notices[0].message

    @pytest.mark.asyncio
    async def test_modes_follow_transition_table(self, harness):
        """Every observed mode change is allowed by the transition table."""
        session = await harness.activate()
        session.on_close()
        await harness.wait_for_mode(Mode.WAITING)
        await harness.controller.stop()

        assert harness.modes == [Mode.WAITING, Mode.ACTIVE, Mode.WAITING, Mode.OFF]
        previous = Mode.OFF
        for mode in harness.modes:
            assert mode in TRANSITIONS[previous]
            previous = mode


class TestToolCalls:
    """Tests for tool-call batches during a session."""

    @pytest.mark.asyncio
    async def test_batch_is_one_commit_with_ordered_results(self, harness):
        commits = []
        harness.store.add_listener(commits.append)
        session = await harness.activate()

        calls = [
            parse_tool_call("a", "createProject", {"projectName": "Kitchen"}),
            parse_tool_call("b", "createTask", {"projectName": "Kitchen", "taskTitle": "Paint"}),
            parse_tool_call("c", "deleteTask", {"taskTitle": "missing"}),
        ]
        await session.on_tool_calls(calls)

        assert len(commits) == 1
        kitchen = harness.store.snapshot.find_project_by_name("kitchen")
        assert [t.title for t in kitchen.tasks] == ["Paint"]

        results = session.tool_results[0]
        assert [r.id for r in results] == ["a", "b", "c"]
        assert results[2].status == "Task not found"

        tool_entries = harness.activity_log.get_entries(roles=["tool_call"])
        assert [e.tool_name for e in reversed(tool_entries)] == [
            "createProject",
            "createTask",
            "deleteTask",
        ]
        assert tool_entries[-1].tool_args == {"projectName": "Kitchen", "description": "", "color": None}

    @pytest.mark.asyncio
    async def test_end_session_returns_to_waiting(self, harness):
        session = await harness.activate()

        await session.on_tool_calls([parse_tool_call("bye", "endSession", {})])
        await harness.wait_for_mode(Mode.WAITING)

        assert session.tool_results[0][0].status == "Ending session"
        assert session.closed

    @pytest.mark.asyncio
    async def test_end_session_after_stop_stays_off(self, harness):
        harness.controller.end_session_grace = 0.05
        session = await harness.activate()

        await session.on_tool_calls([parse_tool_call("bye", "endSession", {})])
        await harness.controller.stop()
        await asyncio.sleep(0.1)

        assert harness.controller.mode is Mode.OFF
        assert harness.listener.starts == 1

    @pytest.mark.asyncio
    async def test_end_session_waits_for_goodbye_playback(self, harness):
        session = await harness.activate()
        session.on_audio(np.zeros(2400, dtype="<i2").tobytes())

        await session.on_tool_calls([parse_tool_call("bye", "endSession", {})])
        await asyncio.sleep(0.1)

        assert harness.controller.mode is Mode.ACTIVE
        assert not session.closed

        harness.scheduler.render(4800)
        await harness.wait_for_mode(Mode.WAITING)
        assert session.closed

    @pytest.mark.asyncio
    async def test_end_session_gives_up_on_stuck_playback(self):
        h = Harness(playback_drain_timeout=0.05)
        try:
            session = await h.activate()
            session.on_audio(np.zeros(2400, dtype="<i2").tobytes())

            await session.on_tool_calls([parse_tool_call("bye", "endSession", {})])
            await h.wait_for_mode(Mode.WAITING)

            assert session.closed
        finally:
            await h.controller.shutdown()

    @pytest.mark.asyncio
    async def test_session_tasks_are_tracked(self, harness):
        session = await harness.activate()
        session.on_audio(np.zeros(2400, dtype="<i2").tobytes())
        await session.on_tool_calls([parse_tool_call("bye", "endSession", {})])

        supervisor = harness.controller._supervisor_task
        end_task = harness.controller._end_task
        assert supervisor in harness.controller._tasks
        assert end_task in harness.controller._tasks

        await harness.controller.stop()
        await settle()

        assert supervisor.done()
        assert end_task.done()
        assert not harness.controller._tasks

    @pytest.mark.asyncio
    async def test_batch_commit_survives_session_close(self):
        """Closing the session mid-save still persists and broadcasts the batch."""
        save_started = asyncio.Event()
        release_save = asyncio.Event()

        async def slow_save(data):
            save_started.set()
            await release_save.wait()

        persistence = MagicMock()
        persistence.save = AsyncMock(side_effect=slow_save)
        h = Harness(persistence=persistence)
        commits = []
        h.store.add_listener(commits.append)
        try:
            session = await h.activate()
            # The live session runs the batch inside its receive task, which close() cancels
            receive = asyncio.create_task(
                session.on_tool_calls([parse_tool_call("a", "createProject", {"projectName": "Kitchen"})])
            )
            await save_started.wait()
            receive.cancel()
            await asyncio.sleep(0)
            release_save.set()

            with pytest.raises(asyncio.CancelledError):
                await receive
            assert h.store.snapshot.find_project_by_name("kitchen") is not None
            persistence.save.assert_awaited_once_with(h.store.snapshot)
            assert commits == [h.store.snapshot]
        finally:
            await h.controller.shutdown()

    @pytest.mark.asyncio
    async def test_transcripts_are_logged(self, harness):
        session = await harness.activate()

        await session.on_transcript("user", "add a task")
        await session.on_transcript("assistant", "Done")

        roles = [e.role for e in harness.activity_log.get_entries(roles=["user", "assistant"])]
        assert roles == ["assistant", "user"]


class TestAudio:
    """Tests for assistant audio playback wiring."""

    @pytest.mark.asyncio
    async def test_audio_is_scheduled_and_interrupt_flushes(self, harness):
        session = await harness.activate()
        pcm = np.zeros(2400, dtype="<i2").tobytes()

        session.on_audio(pcm)
        session.on_audio(b"\x00")  # undecodable, dropped

        assert not harness.scheduler.is_idle
        assert harness.scheduler.next_start == pytest.approx(0.1)

        session.on_interrupted()

        assert harness.scheduler.is_idle
