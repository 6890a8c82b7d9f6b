"""Eye Aspect Ratio.

Soukupova & Cech, "Real-Time Eye Blink Detection using Facial Landmarks".
Points follow the 68-point convention: p1 outer corner, p2/p3 upper lid,
p4 inner corner, p5/p6 lower lid.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from common.errors import InvalidLandmarkSet
from common.types import LandmarkPoint


def eye_aspect_ratio(eye: Sequence[LandmarkPoint]) -> float:
    """Return ``(|p2-p6| + |p3-p5|) / (2 * |p1-p4|)`` for one eye."""

    if eye is None or len(eye) != 6:
        raise InvalidLandmarkSet(f"expected 6 eye landmarks, got {0 if eye is None else len(eye)}")
    pts = np.array([[p.x, p.y] for p in eye], dtype=np.float64)
    vertical = np.linalg.norm(pts[1] - pts[5]) + np.linalg.norm(pts[2] - pts[4])
    horizontal = np.linalg.norm(pts[0] - pts[3])
    if not np.isfinite(pts).all() or horizontal == 0:
        raise InvalidLandmarkSet("degenerate eye landmarks")
    return float(vertical / (2.0 * horizontal))


def mean_ear(left: Sequence[LandmarkPoint], right: Sequence[LandmarkPoint]) -> float:
    return (eye_aspect_ratio(left) + eye_aspect_ratio(right)) / 2.0
