import itertools

import pytest

from mocapcore.wanddetector import (
    CrossDetection,
    detect_3p_wand,
    detect_4p_wand,
    detect_cross,
)

FX, FY, CX, CY = 500.0, 500.0, 320.0, 240.0


def _create_3p_wand(size_cm, middle_offset_cm):
    return [
        (-size_cm / 2.0, 0.0, 0.0),
        (middle_offset_cm, 0.0, 0.0),
        (size_cm / 2.0, 0.0, 0.0),
    ]


def _project(points):
    return [(FX * x / z + CX, FY * y / z + CY) for x, y, z in points]


def test_3p_false():
    assert detect_3p_wand([]) is None


def test_3p_wrong_count():
    assert detect_3p_wand([(0.0, 0.0), (1.0, 0.0)]) is None


def test_3p_simple():
    wand = [(x, y, z + 200.0) for x, y, z in _create_3p_wand(50.0, 10.0)]
    pixels = _project(wand)

    detection = detect_3p_wand(pixels)

    assert detection is not None
    for i in range(3):
        assert detection[i] == pixels[i]


@pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
def test_3p_order_independent(order):
    wand = [(x, y, z + 200.0) for x, y, z in _create_3p_wand(50.0, 10.0)]
    pixels = _project(wand)
    shuffled = [pixels[i] for i in order]

    assert detect_3p_wand(shuffled) == pixels


def test_4p_wrong_count():
    assert detect_4p_wand([(0.0, 0.0)] * 3) is None
    assert detect_4p_wand([(0.0, 0.0)] * 5) is None


@pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
def test_4p_order_independent(order):
    left, middle, right, cross = (0.0, 0.0), (3.0, 0.0), (10.0, 0.0), (3.0, 1.0)
    pts = [left, middle, right, cross]
    shuffled = [pts[i] for i in order]

    result = detect_4p_wand(shuffled)

    assert result is not None
    assert sorted(result) == sorted(pts)
    assert result[1] == middle
    assert result[3] == cross
    assert result == detect_4p_wand(pts)


def test_4p_border_farthest_from_middle_comes_first():
    pts = [(0.0, 0.0), (3.0, 0.0), (10.0, 0.0), (3.0, 1.0)]
    result = detect_4p_wand(pts)
    assert {result[0], result[2]} == {(0.0, 0.0), (10.0, 0.0)}
    first, mid, third = result[0], result[1], result[2]
    d_first = abs(first[0] - mid[0])
    d_third = abs(third[0] - mid[0])
    assert d_first >= d_third


def test_cross_wrong_count():
    assert detect_cross([(0.0, 0.0, 0.0)] * 4, 1.0) is None


def _check_cross(points):
    detection = detect_cross(points, 1.0)
    assert isinstance(detection, CrossDetection)
    assert detection.center_point == points[0]
    assert detection.normal_vector == pytest.approx((0.0, 0.0, 1.0), abs=1e-6)
    assert detection.edge_points == points[1:]


def test_cross_simple():
    _check_cross([
        (0.0, 0.0, 0.0),
        (1.0, 0.0, 0.0),
        (0.0, 1.0, 0.0),
        (-1.0, 0.0, 0.0),
        (0.0, -1.0, 0.0),
    ])


def test_cross_noise():
    _check_cross([
        (0.0, 0.0, 0.0),
        (1.0, -0.1, 0.0),
        (0.0, 0.9, 0.0),
        (-1.1, 0.0, 0.0),
        (0.0, -1.2, 0.0),
    ])


def test_cross_noise_shift():
    _check_cross([
        (0.0, 0.0, -10.0),
        (1.0, -0.1, -10.0),
        (0.0, 0.9, -10.0),
        (-1.1, 0.0, -10.0),
        (0.0, -1.2, -10.0),
    ])


def test_cross_center_found_when_not_first():
    points = [
        (1.0, 0.0, 0.0),
        (0.0, 1.0, 0.0),
        (0.0, 0.0, 0.0),
        (-1.0, 0.0, 0.0),
        (0.0, -1.0, 0.0),
    ]
    detection = detect_cross(points, 1.0)
    assert detection.center_point == points[2]
    assert len(detection.edge_points) == 4
    assert points[2] not in detection.edge_points