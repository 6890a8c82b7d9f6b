import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from common.errors import InvalidLandmarkSet
from common.types import LandmarkPoint
from driver.ear import eye_aspect_ratio, mean_ear


def eye(points):
    return [LandmarkPoint(x=x, y=y) for x, y in points]


OPEN_EYE = eye([(0, 0), (1, 1), (2, 1), (3, 0), (2, -1), (1, -1)])


def test_open_eye_ratio():
    # vertical distances are 2 each, horizontal 3
    assert eye_aspect_ratio(OPEN_EYE) == pytest.approx(4 / 6)


def test_closed_eye_is_below_threshold():
    closed = eye([(0, 0), (1, 0.2), (2, 0.2), (3, 0), (2, -0.2), (1, -0.2)])
    assert eye_aspect_ratio(closed) < 0.25


@pytest.mark.parametrize("dx,dy,scale", [(10, -4, 1), (0, 0, 3.5), (-7, 2, 0.1), (5, 5, -2)])
def test_invariant_under_translation_and_scaling(dx, dy, scale):
    moved = [LandmarkPoint(x=p.x * scale + dx, y=p.y * scale + dy) for p in OPEN_EYE]
    assert eye_aspect_ratio(moved) == pytest.approx(eye_aspect_ratio(OPEN_EYE))


@pytest.mark.parametrize("n", [0, 1, 5, 7, 12])
def test_wrong_point_count_rejected(n):
    with pytest.raises(InvalidLandmarkSet):
        eye_aspect_ratio([LandmarkPoint(x=i, y=i) for i in range(n)])


def test_missing_eye_rejected():
    with pytest.raises(InvalidLandmarkSet):
        mean_ear(OPEN_EYE, None)


def test_degenerate_eye_rejected():
    with pytest.raises(InvalidLandmarkSet):
        eye_aspect_ratio(eye([(1, 1)] * 6))


def test_mean_of_both_eyes():
    closed = eye([(0, 0), (1, 0.3), (2, 0.3), (3, 0), (2, -0.3), (1, -0.3)])
    expected = (eye_aspect_ratio(OPEN_EYE) + eye_aspect_ratio(closed)) / 2
    assert mean_ear(OPEN_EYE, closed) == pytest.approx(expected)
