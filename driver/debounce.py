"""Consecutive-frame debouncing of eye closure and face loss."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from common.types import DetectionSample
from driver.ear import mean_ear

EAR_THRESHOLD = 0.25
DROWSY_FRAMES = 10  # 10 frames * 200 ms = 2 s of eye closure
UNRESPONSIVE_FRAMES = 25  # 25 frames * 200 ms = 5 s without a face


class FatigueSignal(str, Enum):
    DROWSY = "RequestDrowsy"
    UNRESPONSIVE = "RequestUnresponsive"


class FatigueDebouncer:
    """Turns per-frame samples into drowsy/unresponsive requests.

    The two counters are independent: losing the face does not clear the
    closed-eye run, and only open-eye evidence resets it. A signal fires on
    every sample while its counter stays above the limit; the state machine
    ignores repeats.
    """

    def __init__(self, ear_threshold: float = EAR_THRESHOLD,
                 drowsy_frames: int = DROWSY_FRAMES,
                 unresponsive_frames: int = UNRESPONSIVE_FRAMES) -> None:
        self.ear_threshold = ear_threshold
        self.drowsy_frames = drowsy_frames
        self.unresponsive_frames = unresponsive_frames
        self.eye_closed_frames = 0
        self.no_face_frames = 0
        self.last_ear: Optional[float] = None

    def update(self, sample: DetectionSample) -> Optional[FatigueSignal]:
        """Consume one sample.

        Raises :class:`~common.errors.InvalidLandmarkSet` when a face is
        reported with malformed eyes; the counters are left untouched.
        """

        if not sample.face_found:
            self.no_face_frames += 1
            if self.no_face_frames > self.unresponsive_frames:
                return FatigueSignal.UNRESPONSIVE
            return None

        ear = mean_ear(sample.left_eye, sample.right_eye)
        self.last_ear = ear
        self.no_face_frames = 0
        if ear < self.ear_threshold:
            self.eye_closed_frames += 1
        else:
            self.eye_closed_frames = 0
        if self.eye_closed_frames > self.drowsy_frames:
            return FatigueSignal.DROWSY
        return None
