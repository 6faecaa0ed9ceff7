"""Extrinsic calibration of several cameras from a moving three-point wand."""

from __future__ import annotations

import enum
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable, Mapping, Optional, Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from mocapcore.observation import ObservationPair, project_points
from mocapcore.transforms import (
    invert_affine,
    matrix_to_rodrigues,
    rigid_transform,
    rodrigues_to_matrix,
)
from mocapcore.wanddetector import detect_3p_wand

__all__ = [
    "CalibrationType",
    "CalibrationSettings",
    "InputData",
    "settings_from_controls",
    "triangulate_points",
    "relative_to_global_transforms",
    "WandCalibration",
]

logger = logging.getLogger(__name__)

_BEHIND_CAMERA_PENALTY = 1000000.0
_MAX_NEW_FRAME_DIFF = 5.0
_ROTATION_BOUND = math.pi / 2


class CalibrationType(enum.Enum):
    """Start a calibration from scratch or extend the running one."""

    FULL = "Full"
    REFINE = "Refine"


@dataclass
class CalibrationSettings:
    """Number of wand frames wanted per camera pair and the calibration type."""

    frames_per_camera: int = -1
    calib_type: CalibrationType = CalibrationType.FULL


@dataclass
class InputData:
    """Wand geometry, camera intrinsics and the cameras to calibrate."""

    wand_points: list = field(default_factory=list)
    camera_matrix: Any = None
    camera_settings: dict = field(default_factory=dict)


def settings_from_controls(frames_per_camera: int, type_text: str) -> CalibrationSettings:
    """Settings as chosen in the calibration controls; only "Refine" selects refining."""
    calib_type = CalibrationType.REFINE if type_text == "Refine" else CalibrationType.FULL
    return CalibrationSettings(frames_per_camera=int(frames_per_camera), calib_type=calib_type)


def triangulate_points(
    projection_first: Any,
    projection_second: Any,
    pixels_first: Sequence[Any],
    pixels_second: Sequence[Any],
) -> np.ndarray:
    """Linear (DLT) triangulation of pixel correspondences; returns an N x 3 array."""
    p1 = np.asarray(projection_first, dtype=float)
    p2 = np.asarray(projection_second, dtype=float)
    if p1.shape != (3, 4) or p2.shape != (3, 4):
        raise ValueError("projection matrices must be 3x4")
    if len(pixels_first) != len(pixels_second):
        raise ValueError(
            f"{len(pixels_first)} and {len(pixels_second)} pixels cannot be paired"
        )

    points = []
    for first, second in zip(pixels_first, pixels_second):
        u1, v1 = np.asarray(first, dtype=float).reshape(2)
        u2, v2 = np.asarray(second, dtype=float).reshape(2)
        system = np.array(
            [
                u1 * p1[2] - p1[0],
                v1 * p1[2] - p1[1],
                u2 * p2[2] - p2[0],
                v2 * p2[2] - p2[1],
            ]
        )
        _, _, vt = np.linalg.svd(system)
        homogeneous = vt[-1]
        points.append(homogeneous[:3] / homogeneous[3])
    return np.asarray(points, dtype=float).reshape(-1, 3)


def relative_to_global_transforms(
    detections: Mapping[tuple[Hashable, Hashable], ObservationPair],
) -> dict:
    """Chain pairwise relative poses into poses of all cameras.

    The first camera of the smallest pair key is the reference with the
    identity pose; the others are reached breadth-first over the pairs.
    """
    if not detections:
        raise ValueError("no camera pairs to chain")

    keys = sorted(detections)
    reference = keys[0][0]
    transforms = {reference: np.eye(4)}
    queue = deque([reference])

    while queue:
        current = queue.popleft()
        for key in keys:
            first_id, second_id = key
            pair = detections[key]
            if first_id == current and second_id not in transforms:
                transforms[second_id] = pair.relative_transform() @ transforms[first_id]
                queue.append(second_id)
            if second_id == current and first_id not in transforms:
                transforms[first_id] = (
                    np.linalg.inv(pair.relative_transform()) @ transforms[second_id]
                )
                queue.append(first_id)

    return transforms


def _normalized(pixels: Sequence[Any], camera_matrix: np.ndarray) -> np.ndarray:
    px = np.asarray(pixels, dtype=float).reshape(-1, 2)
    homogeneous = np.column_stack((px, np.ones(len(px))))
    return homogeneous @ np.linalg.inv(camera_matrix).T


def _essential_matrix(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """Least-squares eight-point estimate on normalized coordinates."""
    system = np.einsum("ni,nj->nij", second, first).reshape(len(first), 9)
    _, _, vt = np.linalg.svd(system)
    essential = vt[-1].reshape(3, 3)
    u, _, vt = np.linalg.svd(essential)
    return u @ np.diag([1.0, 1.0, 0.0]) @ vt


def _relative_pose(
    first_pixels: Sequence[Any], second_pixels: Sequence[Any], camera_matrix: np.ndarray
) -> np.ndarray:
    """3 x 4 pose [R | t] of the second camera with unit-length translation."""
    first = _normalized(first_pixels, camera_matrix)
    second = _normalized(second_pixels, camera_matrix)
    essential = _essential_matrix(first, second)

    u, _, vt = np.linalg.svd(essential)
    if np.linalg.det(u) < 0:
        u = -u
    if np.linalg.det(vt) < 0:
        vt = -vt
    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    rotations = (u @ w @ vt, u @ w.T @ vt)
    translation = u[:, 2]

    reference = np.hstack((np.eye(3), np.zeros((3, 1))))
    best, best_count = None, -1
    for rotation in rotations:
        for t in (translation, -translation):
            pose = np.column_stack((rotation, t))
            points = triangulate_points(reference, pose, first[:, :2], second[:, :2])
            depth_second = (points @ rotation.T + t)[:, 2]
            count = int(np.count_nonzero((points[:, 2] > 0) & (depth_second > 0)))
            if count > best_count:
                best, best_count = pose, count
    return best


def _reprojection(
    camera: np.ndarray, points: np.ndarray, observed: np.ndarray, camera_matrix: np.ndarray
) -> np.ndarray:
    transformed = points @ rodrigues_to_matrix(camera[:3]).T + camera[3:]
    projected = project_points(transformed, np.zeros(3), np.zeros(3), camera_matrix)
    res = projected - observed
    return np.where(transformed[:, 2:3] > 0.0, res, _BEHIND_CAMERA_PENALTY - res)


@dataclass
class _Block:
    first_cam: int
    second_cam: int
    offset: int
    count: int
    first_px: np.ndarray
    second_px: np.ndarray


class WandCalibration:
    """Collects wand observations per camera pair and estimates camera poses.

    A first stage estimates each pair's relative pose from the essential
    matrix, scaled by the known wand length; once all cameras are linked by
    pairs with a small reprojection error, a bundle adjustment refines every
    pose and the results are written to the cameras' settings.
    """

    def __init__(self) -> None:
        self._started = False
        self._finished = False
        self.wand_points: list[tuple[float, float, float]] = []
        self.camera_settings: dict = {}
        self.camera_matrix: Optional[np.ndarray] = None
        self.error_threshold = 3.0
        self.min_calib_observations = 300
        self.observed_detections: dict[tuple[Hashable, Hashable], ObservationPair] = {}

    def running(self) -> bool:
        return self._started

    def start_calib(self, start: bool, settings: CalibrationSettings, data: InputData) -> None:
        """Start or stop collecting; a full start discards earlier observations."""
        self._started = start
        self._finished = not start

        if not start:
            logger.debug("end calibration")
            return

        if settings.calib_type is CalibrationType.FULL:
            self.camera_matrix = (
                None if data.camera_matrix is None else np.asarray(data.camera_matrix, dtype=float)
            )
            self.camera_settings = dict(data.camera_settings)
            self.wand_points = [
                tuple(float(c) for c in np.asarray(p, dtype=float).reshape(3))
                for p in data.wand_points
            ]
            self.observed_detections.clear()
            self.min_calib_observations = settings.frames_per_camera
        else:
            self.min_calib_observations += settings.frames_per_camera

    def compute_scale(self, triangulated_points: Sequence[Any]) -> float:
        """Ratio of real to triangulated wand segment lengths, averaged."""
        wand_size = len(self.wand_points)
        if wand_size < 2:
            raise ValueError("the wand needs at least two points")
        if len(triangulated_points) % wand_size != 0:
            raise ValueError("triangulated points do not form whole wand observations")
        if not triangulated_points:
            raise ValueError("no triangulated points")

        points = np.asarray(triangulated_points, dtype=float).reshape(-1, 3)
        observations = len(points) // wand_size
        scale = 0.0
        for i in range(1, wand_size):
            real = math.dist(self.wand_points[i], self.wand_points[i - 1])
            virtual = np.linalg.norm(points[i::wand_size] - points[i - 1 :: wand_size], axis=1)
            scale += real / (float(np.sum(virtual)) / observations)
        return scale / (wand_size - 1)

    def is_camera_pair_ready(self, detections: ObservationPair) -> bool:
        frames = min(len(detections.first.pixels), len(detections.second.pixels))
        return frames > self.min_calib_observations * len(self.wand_points)

    def is_ready_for_precise_stage(self) -> bool:
        """Whether well-calibrated pairs link every camera together."""
        keys = sorted(self.observed_detections)
        good = {
            key for key in keys
            if self.observed_detections[key].reprojection_error() < self.error_threshold
        }

        discovered: set = set()
        queue: deque = deque()
        for key in keys:
            if key in good:
                discovered.add(key[0])
                queue.append(key[0])
                break

        while queue:
            current = queue.popleft()
            for first_id, second_id in keys:
                if (first_id, second_id) not in good:
                    continue
                if first_id == current and second_id not in discovered:
                    discovered.add(second_id)
                    queue.append(second_id)
                if second_id == current and first_id not in discovered:
                    discovered.add(first_id)
                    queue.append(first_id)

        return len(discovered) >= len(self.camera_settings)

    def add_frame(self, points: Iterable[tuple[Hashable, Sequence[Any]]]) -> None:
        """Feed one synchronized frame: (camera id, pixels) for every camera."""
        if self._finished:
            return

        detected = []
        for camera_id, pixels in points:
            wand = detect_3p_wand(list(pixels))
            if wand is not None:
                detected.append(
                    (camera_id, [tuple(float(c) for c in np.asarray(p).reshape(2)) for p in wand])
                )

        self._add_observations(detected)
        self._initial_stage()

        if not self.is_ready_for_precise_stage():
            return
        logger.debug("calibration ready for bundle adjustment")

        for key in [k for k, pair in self.observed_detections.items()
                    if not self.is_camera_pair_ready(pair)]:
            del self.observed_detections[key]
        if not self.observed_detections:
            return

        self._bundle_adjust()
        self._finished = True

    def _require_camera_matrix(self) -> np.ndarray:
        if self.camera_matrix is None:
            raise RuntimeError("calibration has no camera matrix")
        return self.camera_matrix

    def _add_observations(self, wand_points: list) -> None:
        wand_size = len(self.wand_points)
        for i, (first_id, first_px) in enumerate(wand_points):
            for second_id, second_px in wand_points[i + 1 :]:
                pair = self.observed_detections.setdefault((first_id, second_id), ObservationPair())
                if self.is_camera_pair_ready(pair):
                    continue

                first_seen, second_seen = pair.first.pixels, pair.second.pixels
                max_diff = 0.0
                if first_seen:
                    for index in range(wand_size):
                        diff = math.dist(first_px[index], first_seen[len(first_seen) - wand_size + index])
                        diff2 = math.dist(second_px[index], second_seen[len(second_seen) - wand_size + index])
                        max_diff = max(max_diff, diff, diff2)

                if max_diff > _MAX_NEW_FRAME_DIFF or not first_seen or not second_seen:
                    first_seen.extend(first_px)
                    second_seen.extend(second_px)
                    logger.debug(
                        "add observation: %d / %d",
                        len(first_seen) // max(wand_size, 1),
                        self.min_calib_observations,
                    )

    def _initial_stage(self) -> None:
        for key in sorted(self.observed_detections):
            pair = self.observed_detections[key]
            if not self.is_camera_pair_ready(pair) or pair.reprojection_error() < self.error_threshold:
                continue

            camera_matrix = self._require_camera_matrix()
            pair.camera_matrix = camera_matrix

            relative = _relative_pose(pair.first.pixels, pair.second.pixels, camera_matrix)
            projection_first = camera_matrix @ np.eye(3, 4)
            projection_second = camera_matrix @ relative
            points = triangulate_points(
                projection_first, projection_second, pair.first.pixels, pair.second.pixels
            )
            scale = self.compute_scale(points)
            pair.triangulated_points = [tuple(p) for p in points * scale]

            pair.first.rvec = np.zeros(3)
            pair.first.tvec = np.zeros(3)
            pair.second.rvec = matrix_to_rodrigues(relative[:, :3])
            pair.second.tvec = relative[:, 3] * scale

            logger.debug("pair %s initial error %.4f", key, pair.reprojection_error())

    def _bundle_adjust(self) -> None:
        if len(self.wand_points) < 3:
            raise ValueError("bundle adjustment needs a three-point wand")
        camera_matrix = self._require_camera_matrix()
        keys = sorted(self.observed_detections)
        transforms = relative_to_global_transforms(self.observed_detections)

        for key in keys:
            pair = self.observed_detections[key]
            for observation, camera_id in ((pair.first, key[0]), (pair.second, key[1])):
                transform = transforms[camera_id]
                observation.rvec = matrix_to_rodrigues(transform)
                observation.tvec = transform[:3, 3].copy()
            points = triangulate_points(
                pair.first.projection_matrix(pair.camera_matrix),
                pair.second.projection_matrix(pair.camera_matrix),
                pair.first.pixels,
                pair.second.pixels,
            )
            pair.triangulated_points = [tuple(p) for p in points]
            logger.debug("pair %s global error %.4f", key, pair.reprojection_error())

        w0, w1, w2 = self.wand_points[:3]
        left_to_middle_sq = math.dist(w1, w0) ** 2
        left_to_right_sq = math.dist(w2, w0) ** 2
        middle_to_right_sq = math.dist(w2, w1) ** 2
        wand_size = len(self.wand_points)

        camera_index: dict = {}
        camera_params = []
        for key in keys:
            pair = self.observed_detections[key]
            for observation, camera_id in ((pair.first, key[0]), (pair.second, key[1])):
                if camera_id not in camera_index:
                    camera_index[camera_id] = len(camera_params)
                    camera_params.append(observation.ceres_params())

        n_cam_params = 6 * len(camera_params)
        x0_parts = [np.concatenate(camera_params)]
        blocks = []
        offset = n_cam_params
        for key in keys:
            pair = self.observed_detections[key]
            count = len(pair.first.pixels)
            x0_parts.append(np.asarray(pair.triangulated_points, dtype=float).reshape(-1))
            blocks.append(
                _Block(
                    first_cam=camera_index[key[0]],
                    second_cam=camera_index[key[1]],
                    offset=offset,
                    count=count,
                    first_px=np.asarray(pair.first.pixels, dtype=float).reshape(-1, 2),
                    second_px=np.asarray(pair.second.pixels, dtype=float).reshape(-1, 2),
                )
            )
            offset += 3 * count
        x0 = np.concatenate(x0_parts)

        lower = np.full_like(x0, -np.inf)
        upper = np.full_like(x0, np.inf)
        for cam in range(len(camera_params)):
            rot = slice(6 * cam, 6 * cam + 3)
            lower[rot] = x0[rot] - _ROTATION_BOUND
            upper[rot] = x0[rot] + _ROTATION_BOUND

        def residuals(x: np.ndarray) -> np.ndarray:
            cams = x[:n_cam_params].reshape(-1, 6)
            parts = []
            for block in blocks:
                pts = x[block.offset : block.offset + 3 * block.count].reshape(-1, 3)
                left, middle, right = pts[0::wand_size], pts[1::wand_size], pts[2::wand_size]
                parts.append(
                    np.column_stack(
                        (
                            left_to_middle_sq - np.sum((middle - left) ** 2, axis=1),
                            middle_to_right_sq - np.sum((middle - right) ** 2, axis=1),
                            left_to_right_sq - np.sum((left - right) ** 2, axis=1),
                        )
                    ).ravel()
                )
                parts.append(_reprojection(cams[block.first_cam], pts, block.first_px, camera_matrix).ravel())
                parts.append(_reprojection(cams[block.second_cam], pts, block.second_px, camera_matrix).ravel())
            return np.concatenate(parts)

        n_residuals = sum(3 * len(range(0, b.count, wand_size)) + 4 * b.count for b in blocks)
        sparsity = lil_matrix((n_residuals, len(x0)), dtype=int)
        row = 0
        for block in blocks:
            for triple in range(len(range(0, block.count, wand_size))):
                cols = [
                    block.offset + 3 * (triple * wand_size + j) + c
                    for j in range(3)
                    for c in range(3)
                ]
                for _ in range(3):
                    sparsity[row, cols] = 1
                    row += 1
            for cam in (block.first_cam, block.second_cam):
                for point in range(block.count):
                    cols = list(range(6 * cam, 6 * cam + 6)) + list(
                        range(block.offset + 3 * point, block.offset + 3 * point + 3)
                    )
                    for _ in range(2):
                        sparsity[row, cols] = 1
                        row += 1

        result = least_squares(
            residuals,
            x0,
            jac_sparsity=sparsity,
            bounds=(lower, upper),
            method="trf",
            loss="cauchy",
            f_scale=0.5,
            max_nfev=300,
            ftol=1e-15,
            gtol=1e-15,
        )
        logger.debug("bundle adjustment: %s, cost %.6f", result.message, result.cost)

        cams = result.x[:n_cam_params].reshape(-1, 6)
        for key, block in zip(keys, blocks):
            pair = self.observed_detections[key]
            pts = result.x[block.offset : block.offset + 3 * block.count].reshape(-1, 3)
            pair.triangulated_points = [tuple(p) for p in pts]

            for observation, camera_id in ((pair.first, key[0]), (pair.second, key[1])):
                params = cams[camera_index[camera_id]]
                inverse = invert_affine(rigid_transform(params[:3], params[3:]))
                observation.rvec = matrix_to_rodrigues(inverse)
                observation.tvec = inverse[:3, 3].copy()
                settings = self.camera_settings[camera_id]
                settings.set_rotation(observation.rvec)
                settings.set_translation(observation.tvec)

            logger.debug("pair %s error after refinement %.4f", key, pair.reprojection_error())