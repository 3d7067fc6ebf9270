"""One Gemini Live connection for an ACTIVE voice session."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import date
from typing import Any

from google.genai import types

from .audio.codec import EncodedAudio
from .errors import SessionConnectionError
from .models import ToolCall, ToolResult
from .tools import CHRONOTASK_TOOLS, parse_tool_call

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a helpful assistant for "Kevin Task Manager".
Current Date: {today}.
You can help the user manage projects and tasks.
You can create, delete, and schedule tasks and projects using the provided tools.
When asked to select a task, select the project containing it.
If the user says "delete this project" or "delete the selected project", use the deleteCurrentProject tool.
When the user says they are finished, say a short goodbye and call the endSession tool."""


def build_system_prompt(today: date | None = None) -> str:
    return SYSTEM_PROMPT.format(today=(today or date.today()).isoformat())


def build_connect_config(
    voice_name: str = "Kore",
    tools: Sequence[dict[str, Any]] = CHRONOTASK_TOOLS,
    today: date | None = None,
) -> types.LiveConnectConfig:
    """Audio-only Live config with the ChronoTask tools registered."""
    return types.LiveConnectConfig(
        response_modalities=["AUDIO"],
        system_instruction=types.Content(parts=[types.Part(text=build_system_prompt(today))]),
        # Transcripts feed the activity log
        input_audio_transcription=types.AudioTranscriptionConfig(),
        output_audio_transcription=types.AudioTranscriptionConfig(),
        # Live API requires tools as raw dicts, not SDK types
        tools=[{"function_declarations": list(tools)}],
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice_name)
            )
        ),
    )


def _is_normal_close(e: Exception) -> bool:
    name = e.__class__.__name__
    return e.__class__.__module__.startswith("websockets") and name == "ConnectionClosedOK"


class LiveSession:
    """Bidirectional audio session with the remote assistant.

    Outgoing audio goes through a bounded queue drained by a send task, so
    the capture path never waits on the network. A receive task routes
    assistant audio to ``on_audio`` and hands each tool-call message to
    ``on_tool_calls`` as one ordered batch.

    ``on_close`` fires when the server ends the session normally and
    ``on_error`` when the connection fails. Neither fires after a local
    ``close()``, and at most one of them fires per session.
    """

    def __init__(
        self,
        client: Any,
        model: str,
        config: types.LiveConnectConfig,
        on_audio: Callable[[bytes], None],
        on_tool_calls: Callable[[list[ToolCall]], Awaitable[None]],
        on_close: Callable[[], Any] | None = None,
        on_error: Callable[[Exception], Any] | None = None,
        on_interrupted: Callable[[], None] | None = None,
        on_transcript: Callable[[str, str], Any] | None = None,
        send_queue_size: int = 32,
    ):
        self.client = client
        self.model = model
        self.config = config
        self._on_audio = on_audio
        self._on_tool_calls = on_tool_calls
        self._on_close = on_close
        self._on_error = on_error
        self._on_interrupted = on_interrupted
        self._on_transcript = on_transcript

        self.session = None
        self._session_context = None
        self._send_queue: asyncio.Queue[EncodedAudio] = asyncio.Queue(maxsize=send_queue_size)
        self._send_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._closing = False
        self._finished = False
        self.dropped_frames = 0

        self._input_transcript = ""
        self._output_transcript = ""

    @property
    def is_open(self) -> bool:
        return self.session is not None and not self._closing and not self._finished

    async def open(self) -> None:
        """Connect and start the send/receive loops.

        Raises:
            SessionConnectionError: The connection could not be established
        """
        try:
            self._session_context = self.client.aio.live.connect(model=self.model, config=self.config)
            self.session = await self._session_context.__aenter__()
        except Exception as e:
            self._session_context = None
            raise SessionConnectionError(f"Could not connect to Gemini Live: {e}") from e

        logger.info("Live session connected (%s)", self.model)
        self._send_task = asyncio.create_task(self._send_loop())
        self._receive_task = asyncio.create_task(self._receive_loop())

    def send_audio(self, audio: EncodedAudio) -> None:
        """Queue one encoded microphone frame; drops it if the queue is full."""
        if not self.is_open:
            return
        try:
            self._send_queue.put_nowait(audio)
        except asyncio.QueueFull:
            self.dropped_frames += 1
            if self.dropped_frames % 50 == 1:
                logger.warning("Send queue full; dropped %d frames", self.dropped_frames)

    async def send_tool_results(self, results: Sequence[ToolResult]) -> None:
        """Answer a tool-call batch, preserving the order of the calls."""
        if not self.is_open:
            logger.debug("Session closed; discarding %d tool results", len(results))
            return
        function_responses = [
            types.FunctionResponse(id=r.id, name=r.name, response={"result": r.result})
            for r in results
        ]
        try:
            await self.session.send_tool_response(function_responses=function_responses)
        except Exception as e:
            await self._fail(e)

    async def close(self) -> None:
        """Close the connection. Idempotent; suppresses close/error callbacks."""
        if self._closing:
            return
        self._closing = True

        current = asyncio.current_task()
        for task in (self._send_task, self._receive_task):
            if task is None or task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._send_task = None
        self._receive_task = None

        if self._session_context is not None:
            try:
                await self._session_context.__aexit__(None, None, None)
            except Exception as e:
                logger.debug("Error during session close handshake: %s", e)
            self._session_context = None
        self.session = None
        logger.info("Live session closed")

    # --- Loops ---

    async def _send_loop(self) -> None:
        try:
            while True:
                audio = await self._send_queue.get()
                await self.session.send_realtime_input(
                    audio=types.Blob(data=audio.pcm, mime_type=audio.mime_type)
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(e)

    async def _receive_loop(self) -> None:
        try:
            while not self._closing:
                # receive() yields the messages of one model turn
                received = 0
                async for response in self.session.receive():
                    received += 1
                    await self._handle_response(response)
                    if self._closing or self._finished:
                        return
                if received == 0:
                    # Stream exhausted without a message: the server closed the session
                    await self._finish_normally()
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if _is_normal_close(e):
                await self._finish_normally()
            else:
                await self._fail(e)

    async def _handle_response(self, response) -> None:
        if response.server_content:
            await self._handle_server_content(response.server_content)

        if response.tool_call and response.tool_call.function_calls:
            calls = [
                parse_tool_call(fc.id, fc.name, fc.args)
                for fc in response.tool_call.function_calls
            ]
            logger.info("Tool call batch: %s", [c.name for c in calls])
            await self._on_tool_calls(calls)

        if response.go_away:
            logger.info("Server is ending the session (time left: %s)", response.go_away.time_left)

    async def _handle_server_content(self, content) -> None:
        if content.interrupted:
            logger.debug("Assistant output interrupted")
            self._output_transcript = ""
            if self._on_interrupted is not None:
                self._on_interrupted()

        if content.input_transcription and content.input_transcription.text:
            self._input_transcript += content.input_transcription.text
        if content.output_transcription and content.output_transcription.text:
            self._output_transcript += content.output_transcription.text

        if content.model_turn and content.model_turn.parts:
            for part in content.model_turn.parts:
                if part.inline_data and part.inline_data.data:
                    self._on_audio(part.inline_data.data)

        if content.turn_complete:
            await self._flush_transcripts()

    async def _flush_transcripts(self) -> None:
        for role, attr in (("user", "_input_transcript"), ("assistant", "_output_transcript")):
            text = " ".join(getattr(self, attr).split())
            setattr(self, attr, "")
            if text and self._on_transcript is not None:
                result = self._on_transcript(role, text)
                if asyncio.iscoroutine(result):
                    await result

    # --- Termination ---

    async def _finish_normally(self) -> None:
        if self._closing or self._finished:
            return
        self._finished = True
        logger.info("Live session ended by server")
        if self._on_close is not None:
            result = self._on_close()
            if asyncio.iscoroutine(result):
                await result

    async def _fail(self, e: Exception) -> None:
        if self._closing or self._finished:
            return
        self._finished = True
        logger.warning("Live session error: %s", e)
        if self._on_error is not None:
            error = e if isinstance(e, SessionConnectionError) else SessionConnectionError(str(e))
            result = self._on_error(error)
            if asyncio.iscoroutine(result):
                await result
