"""Recognition of calibration wands among detected marker positions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

__all__ = ["CrossDetection", "detect_4p_wand", "detect_3p_wand", "detect_cross"]


@dataclass
class CrossDetection:
    """A five-point cross: its centre, the four arm tips and the plane normal."""

    center_point: Any
    edge_points: list = field(default_factory=list)
    normal_vector: tuple[float, float, float] = (0.0, 0.0, 0.0)


def _distance(a: Any, b: Any) -> float:
    diff = np.asarray(a, dtype=float) - np.asarray(b, dtype=float)
    return float(np.linalg.norm(diff))


def detect_4p_wand(pts: Sequence[Any]) -> Optional[list]:
    """Order four wand pixels as [left border, middle, right border, cross].

    The closest pair of points is the middle and the cross point, the most
    distant pair the two borders. Returns None unless exactly four points
    are given.
    """
    if len(pts) != 4:
        return None

    count = len(pts)
    dist = [[math.inf] * count for _ in range(count)]
    for i in range(count):
        for j in range(i + 1, count):
            dist[i][j] = dist[j][i] = _distance(pts[i], pts[j])

    min_val, max_val = math.inf, -math.inf
    min_loc = max_loc = (-1, -1)
    # Row-major scan of the off-diagonal entries; the first extreme wins.
    for row in range(count):
        for col in range(count):
            if row == col:
                continue
            value = dist[row][col]
            if value < min_val:
                min_val, min_loc = value, (row, col)
            if value > max_val:
                max_val, max_loc = value, (row, col)

    border_r, border_l = max_loc
    cross, middle = min_loc

    if dist[cross][border_l] < dist[middle][border_l]:
        cross, middle = middle, cross

    if dist[middle][border_l] < dist[middle][border_r]:
        border_l, border_r = border_r, border_l

    return [pts[border_l], pts[middle], pts[border_r], pts[cross]]


def detect_3p_wand(pts: Sequence[Any]) -> Optional[list]:
    """Order three collinear wand pixels as [left, middle, right].

    The middle point has the smallest summed distance to the others and the
    left point the largest. Returns None unless exactly three points are given.
    """
    if len(pts) != 3:
        return None

    sums = [
        _distance(pts[1], pts[0]) + _distance(pts[2], pts[0]),
        _distance(pts[0], pts[1]) + _distance(pts[2], pts[1]),
        _distance(pts[0], pts[2]) + _distance(pts[1], pts[2]),
    ]

    middle_id = min(range(3), key=sums.__getitem__)
    left_id = max(range(3), key=sums.__getitem__)
    right_id = min({0, 1, 2} - {middle_id, left_id})

    return [pts[left_id], pts[middle_id], pts[right_id]]


def detect_cross(pts: Sequence[Any], size: float) -> Optional[CrossDetection]:
    """Find the centre of a five-point cross with arms of length ``size``.

    The centre is the point whose distances to all points best match the arm
    length; the normal is the direction of least spread, facing +z.
    Returns None unless exactly five points are given.
    """
    if len(pts) != 5:
        return None

    rmse = []
    for a in pts:
        total = sum((_distance(a, b) - size) ** 2 for b in pts)
        rmse.append(math.sqrt(total / 5.0))

    center_index = min(range(5), key=rmse.__getitem__)
    edges = [p for i, p in enumerate(pts) if i != center_index]

    coords = np.asarray(pts, dtype=float).reshape(5, 3)
    centered = coords - coords.mean(axis=0)
    cov = centered.T @ centered
    _, vectors = np.linalg.eigh(cov)
    normal = vectors[:, 0]
    if normal[2] < 0.0:
        normal = -normal

    return CrossDetection(
        center_point=pts[center_index],
        edge_points=edges,
        normal_vector=(float(normal[0]), float(normal[1]), float(normal[2])),
    )