import math
import uuid

import numpy as np
import pytest

from mocapcore.calibration import (
    CalibrationSettings,
    CalibrationType,
    InputData,
    WandCalibration,
    relative_to_global_transforms,
    settings_from_controls,
    triangulate_points,
)
from mocapcore.observation import ObservationPair, project_points
from mocapcore.transforms import (
    CameraSettings,
    invert_affine,
    is_approx,
    make_affine,
    rodrigues_to_matrix,
)

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
WAND = [(-25.0, 0.0, 0.0), (10.0, 0.0, 0.0), (25.0, 0.0, 0.0)]


def _ids(count):
    return [uuid.uuid4() for _ in range(count)]


def _started(frames, cameras=("cam-a", "cam-b")):
    wc = WandCalibration()
    settings = {name: CameraSettings(name, K) for name in cameras}
    wc.start_calib(True, CalibrationSettings(frames_per_camera=frames), InputData(WAND, K, settings))
    return wc, settings


def test_settings_from_controls_refine():
    settings = settings_from_controls(120, "Refine")
    assert settings.calib_type is CalibrationType.REFINE
    assert settings.frames_per_camera == 120


def test_settings_from_controls_other_text_is_full():
    settings = settings_from_controls(50, "Full")
    assert settings.calib_type is CalibrationType.FULL
    assert settings.frames_per_camera == 50


def test_triangulate_round_trip():
    points = np.array([[1.0, 2.0, 100.0], [-10.0, 5.0, 150.0], [3.0, -4.0, 80.0]])
    rvec, tvec = np.array([0.0, 0.3, 0.0]), np.array([-20.0, 0.0, 5.0])
    px1 = project_points(points, np.zeros(3), np.zeros(3), K)
    px2 = project_points(points, rvec, tvec, K)
    p1 = K @ np.eye(3, 4)
    p2 = K @ np.column_stack((rodrigues_to_matrix(rvec), tvec))
    result = triangulate_points(p1, p2, px1, px2)
    assert np.allclose(result, points, atol=1e-6)


def test_triangulate_mismatched_lengths():
    with pytest.raises(ValueError):
        triangulate_points(np.eye(3, 4), np.eye(3, 4), [(0.0, 0.0)], [])


def test_relative_to_global_identity():
    ids = _ids(2)
    transforms = relative_to_global_transforms({(ids[0], ids[1]): ObservationPair()})
    assert len(transforms) == 2
    assert is_approx(transforms[ids[0]], np.eye(4))
    assert is_approx(transforms[ids[1]], np.eye(4))


def test_relative_to_global_simple():
    ids = _ids(2)
    pair = ObservationPair()
    pair.second.tvec = np.array([1.0, 2.0, 3.0])
    transforms = relative_to_global_transforms({(ids[0], ids[1]): pair})
    assert len(transforms) == 2
    assert is_approx(transforms[ids[0]], np.eye(4))
    assert is_approx(transforms[ids[1]], pair.relative_transform())


def test_relative_to_global_three_cameras_translation():
    ids = _ids(3)
    detections = {}
    for i in range(2):
        pair = ObservationPair()
        pair.second.tvec = np.array([1.0, 0.0, 0.0])
        detections[(ids[i], ids[i + 1])] = pair
    transforms = relative_to_global_transforms(detections)
    assert len(transforms) == 3
    expected = make_affine(np.eye(3), [2.0, 0.0, 0.0])
    transform = transforms[ids[2]] @ np.linalg.inv(transforms[ids[0]])
    assert is_approx(transform, expected)


def test_relative_to_global_three_cameras_rotation():
    ids = _ids(3)
    detections = {}
    for i in range(2):
        pair = ObservationPair()
        pair.second.rvec = np.array([0.0, math.pi / 2, 0.0])
        pair.second.tvec = np.array([1.0, 0.0, 0.0])
        detections[(ids[i], ids[i + 1])] = pair
    transforms = relative_to_global_transforms(detections)
    assert len(transforms) == 3
    expected = make_affine(rodrigues_to_matrix([0.0, math.pi, 0.0]), [1.0, 0.0, -1.0])
    transform = transforms[ids[2]] @ np.linalg.inv(transforms[ids[0]])
    assert np.linalg.norm(transform[:3, 3]) == pytest.approx(math.sqrt(2), abs=1e-4)
    assert is_approx(transform, expected)


def test_relative_to_global_square():
    ids = _ids(5)
    detections = {}
    for i in range(4):
        pair = ObservationPair()
        pair.second.rvec = np.array([0.0, math.pi / 2, 0.0])
        pair.second.tvec = np.array([1.0, 0.0, 0.0])
        detections[(ids[i], ids[i + 1])] = pair
    transforms = relative_to_global_transforms(detections)
    assert len(transforms) == 5
    assert is_approx(transforms[ids[0]], transforms[ids[4]])


def test_relative_to_global_empty():
    with pytest.raises(ValueError):
        relative_to_global_transforms({})


def test_start_and_stop():
    wc, _ = _started(5)
    assert wc.running() is True
    wc.start_calib(False, CalibrationSettings(), InputData())
    assert wc.running() is False


def test_refine_adds_frames():
    wc, _ = _started(5)
    wc.start_calib(True, CalibrationSettings(3, CalibrationType.REFINE), InputData())
    assert wc.min_calib_observations == 8
    assert wc.wand_points == WAND


def test_compute_scale():
    wc, _ = _started(5)
    scale = wc.compute_scale([(-2.5, 0.0, 0.0), (1.0, 0.0, 0.0), (2.5, 0.0, 0.0)])
    assert scale == pytest.approx(10.0)


def test_compute_scale_incomplete_observation():
    wc, _ = _started(5)
    with pytest.raises(ValueError):
        wc.compute_scale([(0.0, 0.0, 0.0), (1.0, 0.0, 0.0)])


def test_camera_pair_ready():
    wc, _ = _started(2)
    pair = ObservationPair()
    pair.first.pixels = [(0.0, 0.0)] * 6
    pair.second.pixels = [(0.0, 0.0)] * 6
    assert wc.is_camera_pair_ready(pair) is False
    pair.first.pixels = [(0.0, 0.0)] * 9
    pair.second.pixels = [(0.0, 0.0)] * 9
    assert wc.is_camera_pair_ready(pair) is True


def test_not_ready_for_precise_stage_without_data():
    wc, _ = _started(5)
    assert wc.is_ready_for_precise_stage() is False


def test_add_frame_orders_and_deduplicates():
    wc, _ = _started(5)
    left, middle, right = (100.0, 100.0), (170.0, 100.0), (200.0, 100.0)
    frame = [("cam-a", [middle, right, left]), ("cam-b", [left, middle, right])]
    wc.add_frame(frame)
    pair = wc.observed_detections[("cam-a", "cam-b")]
    assert pair.first.pixels == [left, middle, right]
    assert len(pair.second.pixels) == 3

    wc.add_frame(frame)
    assert len(pair.first.pixels) == 3

    shifted = [(x + 10.0, y) for x, y in (left, middle, right)]
    wc.add_frame([("cam-a", shifted), ("cam-b", shifted)])
    assert len(pair.first.pixels) == 6


def test_add_frame_ignores_cameras_without_wand():
    wc, _ = _started(5)
    wc.add_frame([("cam-a", [(0.0, 0.0), (5.0, 5.0)]), ("cam-b", [(1.0, 1.0)] * 3)])
    assert wc.observed_detections == {}


def test_add_frame_after_stop_is_ignored():
    wc, _ = _started(5)
    wc.start_calib(False, CalibrationSettings(), InputData())
    wc.add_frame([("cam-a", [(100.0, 100.0), (170.0, 100.0), (200.0, 100.0)]),
                  ("cam-b", [(100.0, 100.0), (170.0, 100.0), (200.0, 100.0)])])
    assert wc.observed_detections == {}


def test_full_calibration_recovers_baseline():
    wc, settings = _started(10)
    rng = np.random.default_rng(7)
    cam_b_rvec = np.array([0.0, 0.2, 0.0])
    cam_b_tvec = np.array([-30.0, 0.0, 0.0])
    wand = np.asarray(WAND)

    for _ in range(30):
        rotation = rodrigues_to_matrix(rng.normal(size=3) * 0.8)
        center = np.array([rng.uniform(-40, 40), rng.uniform(-30, 30), rng.uniform(180, 260)])
        world = wand @ rotation.T + center
        px_a = [tuple(p) for p in project_points(world, np.zeros(3), np.zeros(3), K)]
        px_b = [tuple(p) for p in project_points(world, cam_b_rvec, cam_b_tvec, K)]
        wc.add_frame([("cam-a", px_a), ("cam-b", px_b)])

    expected_center = invert_affine(make_affine(rodrigues_to_matrix(cam_b_rvec), cam_b_tvec))[:3, 3]
    assert np.linalg.norm(settings["cam-a"].translation) == pytest.approx(0.0, abs=0.5)
    assert np.allclose(settings["cam-b"].translation, expected_center, atol=0.5)
    assert np.allclose(settings["cam-b"].rotation, -cam_b_rvec, atol=1e-2)
    assert wc.observed_detections[("cam-a", "cam-b")].reprojection_error() < 1.0