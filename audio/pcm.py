"""PCM16 conversion, resampling and base64 framing helpers."""

from __future__ import annotations

import base64
import math

import numpy as np


def rms_db(pcm: bytes) -> float:
    """Return RMS level in dBFS for a 16-bit PCM buffer."""

    if not pcm:
        return -math.inf
    arr = np.frombuffer(pcm, dtype=np.int16)
    if not arr.size:
        return -math.inf
    rms = np.sqrt(np.mean(np.square(arr.astype(np.float32))))
    if rms <= 0:
        return -math.inf
    return 20 * math.log10(rms / 32768.0)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Encode float samples in [-1, 1] as little-endian signed 16-bit PCM."""

    scaled = np.clip(np.asarray(samples, dtype=np.float32) * 32768.0, -32768, 32767)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float(pcm: bytes, channels: int = 1) -> np.ndarray:
    """Decode PCM16 into float32 of shape ``(frames, channels)``."""

    usable = len(pcm) - len(pcm) % (2 * channels)
    arr = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float32) / 32768.0
    return arr.reshape(-1, channels)


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resampling of a mono float block."""

    if src_rate == dst_rate or samples.size == 0:
        return samples
    n_out = int(round(samples.size * dst_rate / src_rate))
    x_old = np.arange(samples.size, dtype=np.float64) / src_rate
    x_new = np.arange(n_out, dtype=np.float64) / dst_rate
    return np.interp(x_new, x_old, samples).astype(np.float32)


def b64_encode(pcm: bytes) -> str:
    return base64.b64encode(pcm).decode("ascii")


def b64_decode(data: str) -> bytes:
    return base64.b64decode(data, validate=True)
