"""Gapless scheduled playback of agent audio.

Chunks are laid end to end on the output clock by :class:`PlaybackCursor`.
:class:`PlaybackScheduler` keeps the chunks that have not finished yet and
mixes them into whatever output window the sound card asks for.
:class:`SpeakerOutput` is that sound card: a :mod:`sounddevice` output stream
whose sample counter is the clock.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import numpy as np

from common.errors import PermissionDenied

RATE = 24000


class PlaybackCursor:
    """Monotonic start time for the next chunk."""

    def __init__(self) -> None:
        self.next_start_time = 0.0

    def place(self, duration: float, now: float) -> float:
        start = max(self.next_start_time, now)
        self.next_start_time = start + duration
        return start


@dataclass
class ScheduledBuffer:
    samples: np.ndarray
    start: float
    sample_rate: int
    on_ended: List[Callable[["ScheduledBuffer"], None]] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.samples.shape[0] / self.sample_rate

    @property
    def end(self) -> float:
        return self.start + self.duration


class PlaybackScheduler:
    """Owns the cursor and the set of not-yet-finished buffers.

    ``schedule`` is only called from the session receive loop; ``render`` is
    called from the audio thread, so the buffer list sits behind a lock.
    """

    def __init__(self, clock: Callable[[], float], sample_rate: int = RATE) -> None:
        self.clock = clock
        self.sample_rate = sample_rate
        self.cursor = PlaybackCursor()
        self.closed = False
        self._active: List[ScheduledBuffer] = []
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._active)

    def schedule(self, samples: np.ndarray) -> Optional[ScheduledBuffer]:
        if self.closed:
            return None
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        duration = samples.shape[0] / self.sample_rate
        start = self.cursor.place(duration, self.clock())
        buf = ScheduledBuffer(samples=samples, start=start, sample_rate=self.sample_rate)
        with self._lock:
            self._active.append(buf)
        return buf

    def render(self, window_start: float, frames: int) -> np.ndarray:
        """Mix every buffer overlapping ``[window_start, +frames)``."""

        out = np.zeros(frames, dtype=np.float32)
        base = int(round(window_start * self.sample_rate))
        with self._lock:
            for buf in self._active:
                offset = int(round(buf.start * self.sample_rate)) - base
                src_lo = max(0, -offset)
                dst_lo = max(0, offset)
                n = min(frames - dst_lo, buf.samples.shape[0] - src_lo)
                if n > 0:
                    out[dst_lo:dst_lo + n] += buf.samples[src_lo:src_lo + n]
        self.release_ended(window_start + frames / self.sample_rate)
        return out

    def release_ended(self, now: float) -> List[ScheduledBuffer]:
        with self._lock:
            ended = [b for b in self._active if b.end <= now]
            self._active = [b for b in self._active if b.end > now]
        for buf in ended:
            for cb in buf.on_ended:
                cb(buf)
        return ended

    def close(self) -> None:
        """Refuse new chunks; already scheduled ones play to their end."""
        self.closed = True


class SpeakerOutput:
    """Output stream whose played-sample counter drives the scheduler clock."""

    def __init__(self, sample_rate: int = RATE, device: Optional[int] = None,
                 blocksize: int = 480) -> None:
        self.sample_rate = sample_rate
        self.device = device
        self.blocksize = blocksize
        self.frames_played = 0
        self.scheduler = PlaybackScheduler(self.clock, sample_rate)
        self._stream: Any = None

    def clock(self) -> float:
        return self.frames_played / self.sample_rate

    def _callback(self, outdata, frames, time_info, status) -> None:  # pragma: no cover - realtime path
        outdata[:, 0] = self.scheduler.render(self.clock(), frames)
        self.frames_played += frames

    def start(self) -> None:
        try:
            import sounddevice as sd
        except OSError as exc:
            raise PermissionDenied(f"audio backend unavailable: {exc}") from exc
        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise PermissionDenied(f"speaker unavailable: {exc}") from exc

    async def drain_and_close(self, poll: float = 0.05, grace: float = 0.5) -> None:
        """Stop scheduling, wait for scheduled chunks to end, release the stream.

        The wait is bounded by the end of the last scheduled chunk plus
        ``grace`` on the event loop clock, so a stalled device cannot hold it.
        """

        self.scheduler.close()
        loop = asyncio.get_running_loop()
        remaining = max(0.0, self.scheduler.cursor.next_start_time - self.clock())
        deadline = loop.time() + remaining + grace
        while self._stream is not None and self.scheduler.pending and loop.time() < deadline:
            await asyncio.sleep(poll)
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
