# mocapcore

Geometry and calibration core for a multi-camera optical motion-capture
system. It detects calibration wands among marker pixels, turns pixels
into 3D rays, keeps marker identities stable between frames, and
estimates where each camera sits relative to the others.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `mocapcore.wanddetector`
  - `detect_3p_wand(pts)` orders three wand points as left, middle and
    right. The middle point has the smallest summed distance to the
    others, and the left point has the largest.
  - `detect_4p_wand(pts)` orders four points as left border, middle,
    right border and cross point.
  - `detect_cross(pts, size)` finds the centre of a five-point cross with
    arms of length `size`, along with the plane normal, which is turned to
    face +z. It returns a `CrossDetection`.
  - Each detector returns `None` when given the wrong number of points.
- `mocapcore.transforms`
  - Rotation helpers: `rodrigues_to_matrix`, `matrix_to_rodrigues` and
    `euler_xyz_matrix` (X, then Y, then Z).
  - 4x4 affine helpers: `make_affine`, `rigid_transform`,
    `invert_affine`, and `is_approx` for fuzzy comparison.
  - `Signal` is a small list of callbacks for change notifications.
  - `ExtrinsicSettings` stores a camera pose. The rotation is held in
    degrees and is read and set in radians. Its signals fire only when a
    value actually changes.
  - `CameraSettings` holds a camera matrix and a pose. It turns pixels
    into world-space `Ray` objects with `pixel_ray` and
    `rays_for_points`.
- `mocapcore.pointchecker`
  - `PointChecker.solve_point_ids(points)` labels the 3D points of each
    new frame as `Marker`s. A marker keeps its id when a new point lies
    exactly at its previous position.
  - Ids of markers that vanished are reused for points that appear later.
  - Its internal state is a `PointCount`.
- `mocapcore.observation`
  - `Observation` and `ObservationPair` hold the wand pixels seen by one
    camera and by a pair of cameras, with their poses.
  - They provide projection matrices, reprojection error and the
    pair-relative transform.
  - Residual functions: `project_points`, `reprojection_residual` and
    `point_distance_residual`.
- `mocapcore.calibration`
  - `WandCalibration` collects three-point wand observations for each
    camera pair.
  - It estimates each pair's relative pose from the essential matrix,
    scaled by the known wand length.
  - It chains the pairs into global poses with
    `relative_to_global_transforms`.
  - Finally it refines all poses with a bounded robust least-squares
    bundle adjustment and writes the results to each camera's settings
    (`set_rotation`, `set_translation`).
  - A run is described by `CalibrationSettings`, `CalibrationType` and
    `InputData`. `settings_from_controls` builds settings from a frame
    count and a type name ("Refine", or anything else for a full
    calibration).
  - `triangulate_points` performs linear triangulation.

## Example

```python
from mocapcore.wanddetector import detect_3p_wand

ordered = detect_3p_wand([(320.0, 240.0), (420.0, 240.0), (200.0, 240.0)])
# [(200.0, 240.0), (320.0, 240.0), (420.0, 240.0)]: left, middle, right
```

```python
import numpy as np
from mocapcore.calibration import relative_to_global_transforms
from mocapcore.observation import ObservationPair

pair = ObservationPair()
pair.second.tvec = np.array([1.0, 2.0, 3.0])
transforms = relative_to_global_transforms({("cam-a", "cam-b"): pair})
# transforms["cam-a"] is the identity, transforms["cam-b"] the relative pose
```

## What it does not do

This is a library of geometry and calibration routines only. It has:

- no command-line program;
- no graphical interface or 3D scene view;
- no network transport for talking to cameras or discovering them;
- no step that intersects rays from several cameras into markers.

Pixels and camera settings are passed in by the caller. Results come back
as return values or through `Signal` callbacks.