"""Camera observations of a calibration wand and the residuals used to fit them."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

from mocapcore.transforms import euler_xyz_matrix, make_affine, rigid_transform

__all__ = [
    "project_points",
    "reprojection_residual",
    "point_distance_residual",
    "Observation",
    "ObservationPair",
]

_BEHIND_CAMERA_PENALTY = 1000000.0


def _camera_matrix(camera_matrix: Any) -> np.ndarray:
    matrix = np.asarray(camera_matrix, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"camera matrix must be 3x3, got shape {matrix.shape}")
    return matrix


def project_points(points: Any, rvec: Any, tvec: Any, camera_matrix: Any) -> np.ndarray:
    """Project 3D points through a pinhole camera without distortion.

    ``rvec`` and ``tvec`` map world points into the camera frame. Returns an
    N x 2 array of pixel coordinates.
    """
    k = _camera_matrix(camera_matrix)
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    transform = rigid_transform(rvec, tvec)
    cam = pts @ transform[:3, :3].T + transform[:3, 3]
    z = cam[:, 2]
    inv_z = np.where(z != 0.0, 1.0 / np.where(z != 0.0, z, 1.0), 1.0)
    x = cam[:, 0] * inv_z
    y = cam[:, 1] * inv_z
    return np.column_stack((k[0, 0] * x + k[0, 2], k[1, 1] * y + k[1, 2]))


def reprojection_residual(
    camera: Sequence[float], point: Any, observation: Any, camera_matrix: Any
) -> np.ndarray:
    """Pixel residual of ``point`` seen by a camera given as (rvec, tvec) six-vector.

    Points behind the camera yield a large penalty instead.
    """
    params = np.asarray(camera, dtype=float).reshape(6)
    transformed = rigid_transform(params[:3], params[3:]) @ np.append(
        np.asarray(point, dtype=float).reshape(3), 1.0
    )
    projected = project_points(transformed[:3], np.zeros(3), np.zeros(3), camera_matrix)[0]
    res = projected - np.asarray(observation, dtype=float).reshape(2)
    if transformed[2] > 0.0:
        return res
    return _BEHIND_CAMERA_PENALTY - res


def point_distance_residual(
    left: Any,
    middle: Any,
    right: Any,
    middle_to_left: float,
    middle_to_right: float,
    left_to_right: float,
) -> np.ndarray:
    """Differences between expected and actual squared wand point distances."""
    l = np.asarray(left, dtype=float).reshape(3)
    m = np.asarray(middle, dtype=float).reshape(3)
    r = np.asarray(right, dtype=float).reshape(3)
    return np.array(
        [
            middle_to_left**2 - float(np.sum((m - l) ** 2)),
            middle_to_right**2 - float(np.sum((m - r) ** 2)),
            left_to_right**2 - float(np.sum((l - r) ** 2)),
        ]
    )


@dataclass
class Observation:
    """Pixels seen by one camera together with that camera's pose."""

    pixels: list = field(default_factory=list)
    rvec: np.ndarray = field(default_factory=lambda: np.zeros(3))
    tvec: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def projection_matrix(self, camera_matrix: Any) -> np.ndarray:
        """3 x 4 matrix K [R | t]."""
        return _camera_matrix(camera_matrix) @ rigid_transform(self.rvec, self.tvec)[:3, :]

    def reprojection_error(self, triangulated_points: Sequence[Any], camera_matrix: Any) -> float:
        """Mean pixel distance between projected points and observed pixels."""
        if len(triangulated_points) == 0:
            return math.inf
        projected = project_points(triangulated_points, self.rvec, self.tvec, camera_matrix)
        if len(projected) != len(self.pixels):
            raise ValueError(
                f"{len(projected)} points projected but {len(self.pixels)} pixels observed"
            )
        if not self.pixels:
            return math.inf
        observed = np.asarray(self.pixels, dtype=float).reshape(-1, 2)
        return float(np.mean(np.linalg.norm(projected - observed, axis=1)))

    def ceres_params(self) -> np.ndarray:
        """The pose as one six-vector: rvec then tvec."""
        return np.concatenate(
            (np.asarray(self.rvec, dtype=float).reshape(3), np.asarray(self.tvec, dtype=float).reshape(3))
        )


@dataclass
class ObservationPair:
    """Simultaneous observations of the wand by two cameras."""

    first: Observation = field(default_factory=Observation)
    second: Observation = field(default_factory=Observation)
    camera_matrix: Optional[np.ndarray] = None
    triangulated_points: list = field(default_factory=list)

    def reprojection_error(self) -> float:
        """Average of both cameras' reprojection errors."""
        return (
            self.first.reprojection_error(self.triangulated_points, self.camera_matrix)
            + self.second.reprojection_error(self.triangulated_points, self.camera_matrix)
        ) / 2.0

    def relative_transform(self) -> np.ndarray:
        """Pose difference of the second camera with respect to the first."""
        rvec = np.asarray(self.second.rvec, dtype=float) - np.asarray(self.first.rvec, dtype=float)
        tvec = np.asarray(self.second.tvec, dtype=float) - np.asarray(self.first.tvec, dtype=float)
        return make_affine(euler_xyz_matrix(rvec), tvec)