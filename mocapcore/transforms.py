"""Rigid transforms, camera extrinsics and pixel rays."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

import numpy as np
from scipy.spatial.transform import Rotation

__all__ = [
    "Signal",
    "rodrigues_to_matrix",
    "matrix_to_rodrigues",
    "euler_xyz_matrix",
    "make_affine",
    "rigid_transform",
    "invert_affine",
    "is_approx",
    "ExtrinsicSettings",
    "Ray",
    "CameraSettings",
]

_DEG_TO_RAD = np.pi / 180.0
_RAD_TO_DEG = 180.0 / np.pi


class Signal:
    """A list of callbacks invoked in connection order."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]) -> None:
        self._callbacks.append(callback)

    def emit(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            callback(*args)


def _vec3(value: Any) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.size != 3:
        raise ValueError(f"expected three components, got shape {arr.shape}")
    return arr.reshape(3).copy()


def _rotation_part(matrix: Any) -> np.ndarray:
    arr = np.asarray(matrix, dtype=float)
    if arr.shape == (4, 4):
        return arr[:3, :3]
    if arr.shape != (3, 3):
        raise ValueError(f"expected a 3x3 or 4x4 matrix, got shape {arr.shape}")
    return arr


def rodrigues_to_matrix(rvec: Any) -> np.ndarray:
    """Rotation matrix of an axis-angle vector."""
    return Rotation.from_rotvec(_vec3(rvec)).as_matrix()


def matrix_to_rodrigues(matrix: Any) -> np.ndarray:
    """Axis-angle vector of a rotation matrix (or the rotation of an affine)."""
    return Rotation.from_matrix(_rotation_part(matrix)).as_rotvec()


def euler_xyz_matrix(angles: Any) -> np.ndarray:
    """Rotation about X, then the new Y, then the new Z: Rx @ Ry @ Rz."""
    ax, ay, az = _vec3(angles)
    cx, sx = np.cos(ax), np.sin(ax)
    cy, sy = np.cos(ay), np.sin(ay)
    cz, sz = np.cos(az), np.sin(az)
    rx = np.array([[1.0, 0.0, 0.0], [0.0, cx, -sx], [0.0, sx, cx]])
    ry = np.array([[cy, 0.0, sy], [0.0, 1.0, 0.0], [-sy, 0.0, cy]])
    rz = np.array([[cz, -sz, 0.0], [sz, cz, 0.0], [0.0, 0.0, 1.0]])
    return rx @ ry @ rz


def make_affine(rotation: Any, translation: Any) -> np.ndarray:
    """4x4 homogeneous transform from a 3x3 rotation and a translation."""
    result = np.eye(4)
    result[:3, :3] = _rotation_part(rotation)
    result[:3, 3] = _vec3(translation)
    return result


def rigid_transform(rvec: Any, tvec: Any) -> np.ndarray:
    """4x4 transform from an axis-angle rotation and a translation."""
    return make_affine(rodrigues_to_matrix(rvec), tvec)


def invert_affine(transform: Any) -> np.ndarray:
    """Inverse of a rigid 4x4 transform."""
    arr = np.asarray(transform, dtype=float)
    if arr.shape != (4, 4):
        raise ValueError(f"expected a 4x4 matrix, got shape {arr.shape}")
    rot_t = arr[:3, :3].T
    return make_affine(rot_t, -rot_t @ arr[:3, 3])


def is_approx(a: Any, b: Any, precision: float = 1e-5) -> bool:
    """Fuzzy equality relative to the smaller of the two Frobenius norms."""
    x = np.asarray(a, dtype=float)
    y = np.asarray(b, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"shape mismatch: {x.shape} vs {y.shape}")
    diff = np.linalg.norm(x - y)
    return bool(diff <= precision * min(np.linalg.norm(x), np.linalg.norm(y)))


class ExtrinsicSettings:
    """Editable camera pose: rotation kept in degrees, translation in cm.

    Signals: ``rotation_changed(rvec)``, ``translation_changed(tvec)`` and
    ``transform_changed(transform)``; they fire only when a value changes.
    """

    def __init__(self) -> None:
        self._rotation_deg = np.zeros(3)
        self._translation = np.zeros(3)
        self.rotation_changed = Signal()
        self.translation_changed = Signal()
        self.transform_changed = Signal()

    def rotation(self) -> np.ndarray:
        """Euler angles in radians."""
        return self._rotation_deg * _DEG_TO_RAD

    def translation(self) -> np.ndarray:
        return self._translation.copy()

    def transform(self) -> np.ndarray:
        return make_affine(euler_xyz_matrix(self.rotation()), self.translation())

    def set_rotation(self, rvec: Any) -> None:
        """Set the Euler angles, given in radians."""
        degrees = _vec3(rvec) * _RAD_TO_DEG
        if np.array_equal(degrees, self._rotation_deg):
            return
        self._rotation_deg = degrees
        self.rotation_changed.emit(self.rotation())
        self.transform_changed.emit(self.transform())

    def set_translation(self, tvec: Any) -> None:
        values = _vec3(tvec)
        if np.array_equal(values, self._translation):
            return
        self._translation = values
        self.translation_changed.emit(self.translation())
        self.transform_changed.emit(self.transform())


@dataclass(frozen=True, eq=False)
class Ray:
    """A half-line from ``origin`` along the unit vector ``direction``."""

    origin: np.ndarray
    direction: np.ndarray


class CameraSettings:
    """Pose and intrinsics of one camera, turning pixels into world rays.

    Signals: ``translation_changed(tvec)``, ``rotation_changed(rvec)`` and
    ``rays_received(camera_id, rays)``.
    """

    def __init__(self, camera_id: Any, camera_matrix: Any) -> None:
        matrix = np.asarray(camera_matrix, dtype=float)
        if matrix.shape != (3, 3):
            raise ValueError(f"camera matrix must be 3x3, got shape {matrix.shape}")
        self.camera_id = camera_id
        self.camera_matrix = matrix
        self._camera_matrix_inv = np.linalg.inv(matrix)
        self._translation = np.zeros(3)
        self._rotation = np.zeros(3)
        self.translation_changed = Signal()
        self.rotation_changed = Signal()
        self.rays_received = Signal()

    @property
    def translation(self) -> np.ndarray:
        return self._translation.copy()

    @property
    def rotation(self) -> np.ndarray:
        return self._rotation.copy()

    def transform(self) -> np.ndarray:
        """Camera pose with the rotation read as X-Y-Z Euler angles."""
        return make_affine(euler_xyz_matrix(self._rotation), self._translation)

    def set_rotation(self, rvec: Any) -> None:
        self._rotation = _vec3(rvec)
        self.rotation_changed.emit(self.rotation)

    def set_translation(self, tvec: Any) -> None:
        self._translation = _vec3(tvec)
        self.translation_changed.emit(self.translation)

    def pixel_ray(self, pixel: Any) -> Ray:
        """World ray through ``pixel``, starting at the camera position."""
        x, y = np.asarray(pixel, dtype=float).reshape(2)
        normalized = self._camera_matrix_inv @ np.array([x, y, 1.0])
        direction = rodrigues_to_matrix(self._rotation) @ normalized
        return Ray(origin=self.translation, direction=direction / np.linalg.norm(direction))

    def rays_for_points(self, points: Iterable[Any]) -> list[tuple[tuple[float, float], Ray]]:
        """Pair each pixel with its ray, announce them and return them."""
        rays = []
        for point in points:
            x, y = np.asarray(point, dtype=float).reshape(2)
            pixel = (float(x), float(y))
            rays.append((pixel, self.pixel_ray(pixel)))
        self.rays_received.emit(self.camera_id, rays)
        return rays