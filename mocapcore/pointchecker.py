"""Keeping marker identities stable from one frame to the next."""

from __future__ import annotations

import enum
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable

__all__ = ["PointCount", "Marker", "PointChecker"]

Position = tuple[float, float, float]
DistanceMap = list[list[float]]


class PointCount(enum.Enum):
    """How the number of seen points compares with the expected number."""

    TOOMANY = enum.auto()
    GOOD = enum.auto()
    NOTENOUGH = enum.auto()
    NO = enum.auto()


def _position(value: Any) -> Position:
    coords = tuple(float(c) for c in value)
    if len(coords) != 3:
        raise ValueError(f"expected three coordinates, got {len(coords)}")
    return coords  # type: ignore[return-value]


@dataclass(frozen=True)
class Marker:
    """A 3D marker position carrying an identifier."""

    id: int
    position: Position

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", _position(self.position))


class PointChecker:
    """Assigns identifiers to unlabelled 3D points frame by frame.

    A previous marker keeps its identifier when a point in the new frame
    lies exactly at its position; identifiers of vanished markers are
    reused for points that appear later.
    """

    max_no_frame_duration = 30

    def __init__(self, num_of_points: int = 1) -> None:
        self._state = PointCount.NO
        self._no_frame_duration = 0
        self._num_of_points = 0
        self.num_of_points = num_of_points
        self._last_removed_ids: deque[int] = deque()
        self._last_points: list[Marker] = []
        self._last_good_frame: list[Marker] = []

    @property
    def num_of_points(self) -> int:
        """Number of markers expected in every frame."""
        return self._num_of_points

    @num_of_points.setter
    def num_of_points(self, value: int) -> None:
        if value < 0:
            raise ValueError("number of points cannot be negative")
        self._num_of_points = int(value)

    @property
    def last_points(self) -> list[Marker]:
        """Markers of the last non-empty frame."""
        return list(self._last_points)

    def solve_point_ids(self, points: Iterable[Any]) -> list[Marker]:
        """Label the points of a new frame and return them as markers."""
        current = [_position(p) for p in points]

        if not current:
            self._state = PointCount.NO
            self._no_frame_duration += 1
            return []

        if self._state is PointCount.NO:
            markers = self._handle_no(current)
        elif self._state is PointCount.GOOD:
            markers = self._handle_good(current)
        else:
            markers = self._handle_not_enough(current)

        if len(current) < len(self._last_points):
            self._handle_removed_points(markers)

        self._no_frame_duration = 0
        self._last_points = markers
        return list(markers)

    def _update_state(self, count: int) -> None:
        if count < self._num_of_points:
            self._state = PointCount.NOTENOUGH
        elif count == self._num_of_points:
            self._state = PointCount.GOOD
        else:
            self._state = PointCount.TOOMANY

    def _handle_no(self, points: list[Position]) -> list[Marker]:
        self._update_state(len(points))

        if self._no_frame_duration < self.max_no_frame_duration and self._last_good_frame:
            distances = self._distance_map(self._last_good_frame, points)
            return self._covered_points(points, distances)

        self._last_removed_ids.clear()
        return [Marker(self._next_unique_index(i), p) for i, p in enumerate(points)]

    def _handle_not_enough(self, points: list[Position]) -> list[Marker]:
        distances = self._distance_map(self._last_points, points)
        markers = self._covered_points(points, distances)

        self._update_state(len(points))
        if self._state is PointCount.GOOD and self._last_good_frame:
            distances = self._distance_map(self._last_good_frame, points)

        self._add_uncovered_points(points, distances, markers)
        return markers

    def _handle_good(self, points: list[Position]) -> list[Marker]:
        distances = self._distance_map(self._last_points, points)
        markers = self._covered_points(points, distances)

        if len(markers) == self._num_of_points:
            self._state = PointCount.GOOD
            self._last_good_frame = list(markers)
        else:
            self._state = PointCount.NOTENOUGH

        if len(points) > self._num_of_points:
            kept = {m.position for m in markers}
            # The point following a removed one is not examined.
            index = 0
            while index < len(points):
                if points[index] not in kept:
                    del points[index]
                index += 1

        return markers

    @staticmethod
    def _distance_map(previous: list[Marker], points: list[Position]) -> DistanceMap:
        return [[math.dist(m.position, p) for p in points] for m in previous]

    def _next_unique_index(self, fallback: int) -> int:
        if self._last_removed_ids:
            return self._last_removed_ids.popleft()
        return fallback

    def _add_uncovered_points(
        self, points: list[Position], distances: DistanceMap, markers: list[Marker]
    ) -> None:
        if not distances:
            return
        for col, point in enumerate(points[: len(distances[0])]):
            if not any(row[col] == 0 for row in distances):
                markers.append(Marker(self._next_unique_index(len(markers)), point))

    def _covered_points(self, points: list[Position], distances: DistanceMap) -> list[Marker]:
        markers = []
        for i, row in enumerate(distances):
            for j, value in enumerate(row):
                if value == 0 and i < len(self._last_points) and j < len(points):
                    markers.append(Marker(self._last_points[i].id, points[j]))
        return markers

    def _handle_removed_points(self, markers: list[Marker]) -> None:
        present = {m.id for m in markers}
        for previous in self._last_points:
            if previous.id not in present and previous.id <= len(self._last_points):
                self._last_removed_ids.append(previous.id)