"""Async orchestrator wiring detection, escalation and the companion session."""

from __future__ import annotations

import asyncio
import functools
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from audio.capture import MicCapture
from audio.playback import SpeakerOutput
from common.config import Settings
from common.errors import PermissionDenied
from common.latest import Latest
from common.log import emit
from common.periodic import PeriodicTask
from common.types import (AudioFrame, CompanionState, DetectionSample, DriverState, Location,
                          Speaker, TranscriptionEntry)
from companion import protocol
from companion.session import AudioSessionManager, Capture, Playback
from companion.tools import FindNearbyPlaces, NowPlaying, PlacesLookup, PlaySpotifySong, ToolBox
from companion.transcript import ConversationLog
from companion.transport import LiveTransport, Transport
from driver.debounce import FatigueDebouncer, FatigueSignal
from driver.emergency import ACK_TEXT, EmergencyEscalationTimer, EmergencyNotifier, log_notifier
from driver.state import DriverAttentionStateMachine

DROWSY_PROMPT = "The driver seems drowsy. Start a short, engaging conversation to help them stay alert."
UNRESPONSIVE_PROMPT = (
    "The driver seems unresponsive. Please state clearly if you are okay. An emergency "
    "contact will be notified in {seconds} seconds if there is no response."
)
ACK_RE = re.compile(r"\b(i['’]?m|i am)\s+(ok|okay|fine|awake|alright|all right|good|here)\b", re.IGNORECASE)
HEARTBEAT_S = 5.0


class Orchestrator:
    """Owns every piece of mutable driver/session state on one event loop."""

    def __init__(self, settings: Settings,
                 connect: Optional[Callable[[], Awaitable[Transport]]] = None,
                 capture_factory: Optional[Callable[[Callable[[AudioFrame], None]], Capture]] = None,
                 speaker_factory: Optional[Callable[[], Playback]] = None,
                 detector: Optional[Callable[[], Awaitable[Optional[DetectionSample]]]] = None,
                 notifier: EmergencyNotifier = log_notifier,
                 places: Optional[PlacesLookup] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.settings = settings
        self._connect = connect or self._connect_live
        self._capture_factory = capture_factory or functools.partial(
            self._default_capture, settings)
        self._speaker_factory = speaker_factory or functools.partial(
            SpeakerOutput, settings.output_rate)
        self._detector = detector
        self._clock = clock

        self.location: Latest[Location] = Latest()
        self.samples: Latest[DetectionSample] = Latest()
        self.log = ConversationLog()
        self.log.subscribe(self._on_entry)
        self.now_playing = NowPlaying()
        self.tools = ToolBox(FindNearbyPlaces(self.location.get, places),
                             PlaySpotifySong(self.now_playing))

        self.machine = DriverAttentionStateMachine(on_drowsy=self._start_companion)
        self.machine.subscribe(self._on_transition)
        self.debouncer = FatigueDebouncer(settings.ear_threshold, settings.drowsy_frames,
                                          settings.unresponsive_frames)
        self.emergency = EmergencyEscalationTimer(
            notifier, settings.emergency_contact, self.location.get, settings.countdown_s,
            on_expired=lambda: self.machine.emergency_resolved("emergency_notified"),
            on_cancelled=self._on_acknowledged,
        )

        self.session: Optional[AudioSessionManager] = None
        self.companion_state = CompanionState.IDLE
        self._tasks: Set[asyncio.Task] = set()
        self.detect_task = PeriodicTask("detect", settings.detect_period_s, self.detect_tick, sleep)
        self.countdown_task = PeriodicTask("countdown", 1.0, self.emergency.tick, sleep)
        self.idle_task = PeriodicTask("idle", 1.0, self.idle_tick, sleep)
        self.heartbeat_task = PeriodicTask("heartbeat", HEARTBEAT_S, self.heartbeat, sleep)

    @staticmethod
    def _default_capture(settings: Settings, on_frame: Callable[[AudioFrame], None]) -> Capture:
        return MicCapture(on_frame, rate=settings.input_rate, capture_rate=settings.capture_rate,
                          blocksize=settings.capture_block)

    async def _connect_live(self) -> Transport:
        s = self.settings
        setup = protocol.setup_message(s.model, s.voice, s.system_instruction,
                                       self.tools.declarations())
        return await LiveTransport(s.live_url, s.api_key, setup).open()

    def start(self) -> None:
        self.heartbeat_task.start()
        self.idle_task.start()
        if self.machine.state is DriverState.MONITORING:
            self.detect_task.start()

    async def stop(self) -> None:
        if self.session is not None:
            await self.session.close("shutdown")
        for task in (self.detect_task, self.countdown_task, self.idle_task, self.heartbeat_task):
            task.stop()

    # detection

    async def detect_tick(self) -> None:
        if self.machine.state is not DriverState.MONITORING:
            return
        if self._detector is not None:
            sample = await self._detector()
        else:
            sample = self.samples.take()
        if sample is None or self.machine.state is not DriverState.MONITORING:
            return
        signal = self.debouncer.update(sample)
        if signal is None:
            return
        emit("driver.signal", signal=signal.value,
             eye_closed=self.debouncer.eye_closed_frames, no_face=self.debouncer.no_face_frames)
        if signal is FatigueSignal.DROWSY:
            self.machine.request_drowsy()
        else:
            self.machine.request_unresponsive()

    def _on_transition(self, old: DriverState, new: DriverState) -> None:
        if new is DriverState.MONITORING:
            self.detect_task.start()
        else:
            self.detect_task.stop()
        if old is DriverState.UNRESPONSIVE:
            self.countdown_task.stop()
            self._close_session("emergency_resolved")
        if new is DriverState.UNRESPONSIVE:
            if self.emergency.start():
                self.countdown_task.start()
            self._open_session(UNRESPONSIVE_PROMPT.format(seconds=self.emergency.seconds))

    # escalation

    def acknowledge(self) -> bool:
        """Driver says they are okay; cancels a running countdown."""
        return self.emergency.cancel()

    def _on_acknowledged(self) -> None:
        self.log.append(Speaker.USER, ACK_TEXT)
        self.machine.emergency_resolved("acknowledged")

    def _on_entry(self, entry: TranscriptionEntry) -> None:
        if (entry.speaker is Speaker.USER and self.machine.state is DriverState.UNRESPONSIVE
                and entry.text != ACK_TEXT and ACK_RE.search(entry.text)):
            self.acknowledge()

    # companion session

    def _start_companion(self) -> None:
        self._open_session(DROWSY_PROMPT)

    def _open_session(self, prompt: str) -> None:
        if self.session is not None and not self.session.closed:
            self._spawn(self.session.send_text(prompt))
            return
        session = AudioSessionManager(self._connect, self.tools, self.log,
                                      capture_factory=self._capture_factory,
                                      speaker_factory=self._speaker_factory,
                                      on_state=self._on_companion_state,
                                      clock=self._clock)
        session.on_closed = functools.partial(self._on_session_closed, session)
        self.session = session
        self._spawn(self._run_session(session, prompt))

    async def _run_session(self, session: AudioSessionManager, prompt: str) -> None:
        try:
            await session.open(prompt)
        except PermissionDenied as exc:
            emit("permission.denied", subsystem="audio", error=str(exc))

    def _close_session(self, reason: str) -> None:
        if self.session is not None and not self.session.closed:
            self._spawn(self.session.close(reason))

    def end_conversation(self) -> bool:
        if self.session is None or self.session.closed:
            return self.machine.conversation_ended("no_session")
        self._close_session("ended_by_user")
        return True

    def _on_session_closed(self, session: AudioSessionManager, reason: str) -> None:
        if session is not self.session:
            return
        self.session = None
        self.companion_state = CompanionState.IDLE
        self.machine.conversation_ended(reason)

    def _on_companion_state(self, state: CompanionState) -> None:
        self.companion_state = state
        emit("companion.state", state=state.value)

    def idle_tick(self) -> None:
        if self.machine.state is not DriverState.ENGAGED or self.session is None:
            return
        if self._clock() - self.session.last_activity > self.settings.idle_timeout_s:
            self._close_session("idle_timeout")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for spawned session work, including tasks spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # reporting

    def snapshot(self) -> Dict[str, Any]:
        countdown = self.emergency.countdown
        song = self.now_playing.song
        loc = self.location.get()
        return {
            "driver_state": self.machine.state.value,
            "companion_state": self.companion_state.value,
            "emergency": countdown.model_dump() if countdown is not None else None,
            "emergency_contact": self.settings.emergency_contact,
            "now_playing": song.model_dump() if song is not None else None,
            "location": loc.model_dump() if loc is not None else None,
            "last_ear": self.debouncer.last_ear,
        }

    def mic_level(self) -> Optional[float]:
        """Level of the last captured block in dBFS, floored at -120."""
        if self.session is None or self.session.mic_db is None:
            return None
        return round(max(self.session.mic_db, -120.0), 1)

    def heartbeat(self) -> None:
        emit(
            "sys.health",
            mod="orchestrator",
            state=self.machine.state.value,
            companion=self.companion_state.value,
            skipped={"detect": self.detect_task.skipped, "countdown": self.countdown_task.skipped},
            errors={"detect": self.detect_task.errors},
            drops={"audio": self.session.dropped_frames if self.session is not None else 0},
            mic_db=self.mic_level(),
        )
