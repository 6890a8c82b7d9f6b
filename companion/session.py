"""Duplex audio session with the live voice agent.

One :class:`AudioSessionManager` serves exactly one session. Two flows run
side by side once it is open:

* capture -> send: the microphone callback pushes PCM16 frames into a
  drop-oldest queue which a send task drains into ``realtimeInput`` messages;
* receive -> dispatch: server frames are handled strictly in arrival order.
  Tool calls run as separate tasks so a slow handler never holds up
  transcript or audio events that arrive meanwhile.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set

from pydantic import ValidationError

from audio.pcm import b64_decode, pcm16_to_float
from audio.playback import PlaybackScheduler
from common.bounded_queue import BoundedQueue
from common.errors import PermissionDenied, TransportError
from common.log import emit
from common.types import AudioFrame, CompanionState, ConversationTurn, Speaker, ToolCall, ToolResult
from companion import protocol
from companion.tools import ToolBox
from companion.transcript import ConversationLog
from companion.transport import Transport

OUTBOX_FRAMES = 50


class Capture(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


class Playback(Protocol):
    scheduler: PlaybackScheduler

    def start(self) -> None: ...

    async def drain_and_close(self) -> None: ...


class AudioSessionManager:
    def __init__(self, connect: Callable[[], Awaitable[Transport]], tools: ToolBox,
                 log: ConversationLog,
                 capture_factory: Callable[[Callable[[AudioFrame], None]], Capture],
                 speaker_factory: Callable[[], Playback],
                 on_state: Optional[Callable[[CompanionState], None]] = None,
                 on_closed: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._connect = connect
        self._tools = tools
        self._log = log
        self._capture_factory = capture_factory
        self._speaker_factory = speaker_factory
        self.on_state = on_state
        self.on_closed = on_closed
        self._clock = clock

        self.state = CompanionState.IDLE
        self.turn = ConversationTurn()
        self.last_activity = clock()
        self.mic_db: Optional[float] = None
        self.is_open = False
        self.closed = False

        self._transport: Optional[Transport] = None
        self._capture: Optional[Capture] = None
        self._speaker: Optional[Playback] = None
        self._outbox = BoundedQueue(OUTBOX_FRAMES)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()

    @property
    def dropped_frames(self) -> int:
        return self._outbox.drop_ct

    async def open(self, prompt: Optional[str] = None) -> bool:
        """Connect, start audio, and optionally inject a first text prompt.

        Returns ``False`` when the transport could not be opened or the
        session was closed while connecting. Raises :class:`PermissionDenied`
        when the microphone or speaker cannot be opened.
        """

        if self.is_open or self.closed:
            return False
        self._loop = asyncio.get_running_loop()
        self._set_state(CompanionState.LISTENING)
        try:
            transport = await self._connect()
        except TransportError as exc:
            emit("session.error", stage="connect", error=str(exc))
            await self._shutdown("connect_failed")
            return False
        if self.closed:
            await transport.close()
            return False
        self._transport = transport
        self.is_open = True

        try:
            self._speaker = self._speaker_factory()
            self._speaker.start()
            self._capture = self._capture_factory(self._on_frame)
            self._capture.start()
        except PermissionDenied as exc:
            emit("session.error", stage="audio", error=str(exc))
            await self._shutdown("permission_denied")
            raise

        self._send_task = self._loop.create_task(self._send_loop())
        self._recv_task = self._loop.create_task(self._receive_loop())
        self.last_activity = self._clock()
        emit("session.open")
        if prompt:
            await self.send_text(prompt)
        return True

    async def send_text(self, text: str) -> None:
        if not self.is_open or self._transport is None:
            return
        self.last_activity = self._clock()
        try:
            await self._transport.send(protocol.text_input(text))
        except TransportError as exc:
            emit("session.error", stage="send_text", error=str(exc))
            await self._shutdown("transport_error")

    async def close(self, reason: str = "closed") -> None:
        await self._shutdown(reason)

    # capture -> send

    def _on_frame(self, frame: AudioFrame) -> None:  # pragma: no cover - audio thread
        if self.closed or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._enqueue, frame)

    def _enqueue(self, frame: AudioFrame) -> None:
        if not self.closed:
            self.mic_db = frame.rms_db
            self._outbox.put(frame)

    async def _send_loop(self) -> None:
        while True:
            frame: AudioFrame = await self._outbox.get()
            if self.closed:
                return
            try:
                await self._transport.send(protocol.realtime_audio(frame.pcm))
            except TransportError as exc:
                emit("session.error", stage="send_audio", error=str(exc))
                await self._shutdown("transport_error")
                return

    # receive -> dispatch

    async def _receive_loop(self) -> None:
        reason = "server_closed"
        try:
            async for raw in self._transport.messages():
                if self.closed:
                    return
                self.last_activity = self._clock()
                try:
                    msg = protocol.parse_server_message(raw)
                    self.handle(msg)
                except Exception as exc:
                    emit("session.skip", error=repr(exc)[:200])
        except TransportError as exc:
            emit("session.error", stage="receive", error=str(exc))
            reason = "transport_error"
        except Exception as exc:
            emit("session.error", stage="receive", error=repr(exc))
            reason = "receive_error"
        await self._shutdown(reason)

    def handle(self, msg: protocol.ServerMessage) -> None:
        """Apply one server message to the turn, playback and tool state."""

        content = msg.server_content
        if content is not None:
            if content.input_transcription is not None:
                self.turn.input_text += content.input_transcription.text
            if content.output_transcription is not None:
                self.turn.output_text += content.output_transcription.text
                self._set_state(CompanionState.SPEAKING)
            if content.turn_complete:
                self._complete_turn()

        if msg.tool_call is not None and msg.tool_call.function_calls:
            self._dispatch_tools(msg.tool_call.function_calls)

        for data in msg.audio_chunks:
            self._play(data)

        if msg.go_away is not None:
            emit("session.go_away", detail=msg.go_away)

    def _complete_turn(self) -> None:
        user = self.turn.input_text.strip()
        mira = self.turn.output_text.strip()
        self.turn = ConversationTurn()
        if user:
            self._log.append(Speaker.USER, user)
        if mira:
            self._log.append(Speaker.MIRA, mira)
        self._set_state(CompanionState.LISTENING)

    def _dispatch_tools(self, calls: List[Any]) -> None:
        self._set_state(CompanionState.THINKING)
        loop = asyncio.get_running_loop()
        for raw in calls:
            try:
                call = ToolCall.model_validate(raw)
            except ValidationError as exc:
                rejected = self._tools.reject(raw, exc)
                if rejected is None:
                    emit("session.skip", error=f"unanswerable tool call: {str(exc)[:160]}")
                    continue
                task = loop.create_task(self._deliver(rejected))
            else:
                task = loop.create_task(self._run_tool(call))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, call: ToolCall) -> None:
        await self._deliver(await self._tools.invoke(call))

    async def _deliver(self, result: ToolResult) -> None:
        if self.closed or self._transport is None:
            emit("tool.discard", id=result.id, name=result.name)
            return
        try:
            await self._transport.send(protocol.tool_response(result))
        except TransportError as exc:
            emit("session.error", stage="tool_response", error=str(exc))

    async def wait_tools(self) -> None:
        if self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks))

    def _play(self, data: str) -> None:
        if self.closed or self._speaker is None:
            return
        samples = pcm16_to_float(b64_decode(data), channels=1)[:, 0]
        self._speaker.scheduler.schedule(samples)

    # lifecycle

    async def _shutdown(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        was_open = self.is_open
        self.is_open = False
        if self._capture is not None:
            self._capture.stop()
        self._outbox.clear()
        current = asyncio.current_task()
        for task in (self._send_task, self._recv_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._transport is not None:
            try:
                await self._transport.close()
            except TransportError as exc:
                emit("session.error", stage="close", error=str(exc))
        if self._speaker is not None:
            self._drain_task = asyncio.get_running_loop().create_task(self._speaker.drain_and_close())
        self._set_state(CompanionState.IDLE)
        emit("session.close", reason=reason, opened=was_open, dropped=self._outbox.drop_ct)
        if self.on_closed is not None:
            self.on_closed(reason)

    def _set_state(self, state: CompanionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_state is not None:
            self.on_state(state)
