"""Microphone capture producing PCM16 frames for the voice session.

:mod:`sounddevice` is imported when a stream is opened, so hosts without
PortAudio can still import and test everything else.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import numpy as np

from audio.pcm import float_to_pcm16, resample, rms_db
from common.errors import PermissionDenied
from common.types import AudioFrame

RATE = 16000
BLOCK = 4096


class MicCapture:
    """Capture mono audio and hand each block to ``on_frame``.

    ``on_frame`` runs on the PortAudio thread; callers marshal onto their
    event loop. Blocks are downsampled from ``capture_rate`` to ``rate``
    when the device cannot open at the session rate. After :meth:`stop` no
    further frame is delivered even if a callback is already in flight.
    """

    def __init__(self, on_frame: Callable[[AudioFrame], None], rate: int = RATE,
                 capture_rate: Optional[int] = None, blocksize: int = BLOCK,
                 device: Optional[int] = None) -> None:
        self.on_frame = on_frame
        self.rate = rate
        self.capture_rate = capture_rate or rate
        self.blocksize = blocksize
        self.device = device
        self.frame_id = 0
        self._running = False
        self._stream: Any = None

    def _callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - realtime path
        if not self._running:
            return
        self.on_frame(self.encode(indata[:, 0]))

    def encode(self, block: np.ndarray) -> AudioFrame:
        """Downsample and PCM16-encode one captured block."""

        mono = resample(np.asarray(block, dtype=np.float32), self.capture_rate, self.rate)
        pcm = float_to_pcm16(mono)
        frame = AudioFrame(id=self.frame_id, ts=time.time(), rms_db=rms_db(pcm), pcm=pcm,
                           sample_rate=self.rate, channels=1)
        self.frame_id += 1
        return frame

    def start(self) -> None:
        try:
            import sounddevice as sd
        except OSError as exc:
            raise PermissionDenied(f"audio backend unavailable: {exc}") from exc
        try:
            self._stream = sd.InputStream(
                samplerate=self.capture_rate,
                channels=1,
                dtype="float32",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise PermissionDenied(f"microphone unavailable: {exc}") from exc
        self._running = True

    def stop(self) -> None:
        self._running = False
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None


def require_microphone(device: Optional[int] = None) -> None:
    """Raise :class:`PermissionDenied` when no input device can be used."""

    try:
        import sounddevice as sd
    except OSError as exc:
        raise PermissionDenied(f"audio backend unavailable: {exc}") from exc
    try:
        sd.check_input_settings(device=device, channels=1, samplerate=RATE, dtype="float32")
    except (sd.PortAudioError, ValueError) as exc:
        raise PermissionDenied(f"microphone unavailable: {exc}") from exc
