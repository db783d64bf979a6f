# globalsfm

Stages of a global structure-from-motion pipeline, written in Python on top
of NumPy and SciPy. Instead of registering images one at a time, a global
pipeline solves for all camera poses at once.

The package provides four stages, each working in place on ordinary
dictionaries of cameras, images and tracks:

1. **View graph calibration** (`globalsfm.view_graph_calibration.ViewGraphCalibrator`)
   refines focal lengths from the fundamental matrices (`ImagePair.F`) of
   valid pairs whose configuration is `CALIBRATED` or `UNCALIBRATED`. Cameras
   with `has_prior_focal_length` are held fixed. An estimate whose ratio to
   the previous focal length lies outside
   `[thres_lower_ratio, thres_higher_ratio]` is rejected; accepted ones are
   written to the camera and set `has_refined_focal_length`. Pairs whose
   residual exceeds `thres_two_view_error` are marked invalid.
2. **Rotation averaging** (`globalsfm.rotation_averaging.RotationEstimator`)
   estimates the rotation of every registered image from the relative
   rotations of valid pairs. Unless `skip_initialization` or `use_gravity`
   is set, rotations are first propagated along a maximum spanning tree
   weighted by inlier count. The estimate is then refined by L1 regression
   (ADMM) followed by iteratively reweighted least squares with a
   Geman–McClure or half-norm weight. With `use_gravity`, images that carry a
   `gravity` vector only have their rotation about the vertical axis
   estimated. `rel_angle_error(angle_12, angle_1, angle_2)` gives the wrapped
   angle error used for gravity-aligned pairs.
3. **Track establishment** (`globalsfm.track_establishment.TrackEngine`)
   joins the inlier matches of all valid pairs into tracks with a
   `UnionFind`. A track holding two features of one image farther apart than
   `thres_inconsistency` is left without observations.
   `find_tracks_for_problem` keeps tracks whose length lies between
   `min_num_view_per_track` and `max_num_view_per_track`, longest first,
   restricted to registered images.
4. **Global positioning** (`globalsfm.global_positioning.GlobalPositioner`)
   solves for camera centres and 3D points from direction constraints with
   one positive scale per constraint, starting from random positions drawn
   with the configured `seed`. The resulting poses are written back as
   `cam_from_world` translations.

Each `solve` / `estimate_rotations` call returns `True` when the result is
usable and `False` otherwise (for example when there are no images, no pairs
or no tracks for the chosen constraint type).

## Data model

The scene types live in `globalsfm.sfm`:

- `Rigid3d` – a rigid transform; `rotation` is a unit quaternion stored as
  `(w, x, y, z)`. It has `inverse()`, `rotation_matrix()`, `apply(point)`
  and composition through `*`.
- `Camera` – a camera model by name (`SIMPLE_PINHOLE`, `PINHOLE`,
  `SIMPLE_RADIAL`, `RADIAL`, `OPENCV`, `OPENCV_FISHEYE`, `FULL_OPENCV`,
  `SIMPLE_RADIAL_FISHEYE`, `RADIAL_FISHEYE`, `THIN_PRISM_FISHEYE`) and its
  parameter vector, with `focal()` (mean focal length), `principal_point()`,
  `focal_length_idxs()` and `principal_point_idxs()`. A wrong model name or
  parameter count raises `ValueError`.
- `Image` – pose `cam_from_world`, `is_registered`, 2D `features`, unit
  bearing vectors `features_undist`, an optional `gravity` vector, and
  `center()` for the camera centre.
- `ImagePair` – two image ids, `is_valid`, `config`
  (`TwoViewGeometryConfig`), `cam2_from_cam1`, the `F`, `E` and `H`
  matrices, `matches` (an N×2 array of feature indices) and `inliers`
  (row indices into `matches`).
- `ViewGraph` – pairs keyed by `image_pair_to_pair_id(image_id1, image_id2)`,
  which does not depend on the order of the ids; `adjacency_list()` gives the
  neighbours of each image through valid pairs.
- `Track` – `xyz`, `is_initialized` and a list of
  `(image_id, feature_id)` observations.

## Options

Each stage has an options dataclass in `globalsfm.options`, gathered in
`GlobalMapperOptions` together with iteration counts and `skip_*` flags:

| Field               | Class                           |
|---------------------|---------------------------------|
| `opt_vgcalib`       | `ViewGraphCalibratorOptions`    |
| `opt_ra`            | `RotationEstimatorOptions`      |
| `opt_track`         | `TrackEstablishmentOptions`     |
| `opt_gp`            | `GlobalPositionerOptions`       |
| `opt_relpose`       | `RelativePoseEstimationOptions` |
| `opt_ba`            | `BundleAdjusterOptions`         |
| `opt_triangulator`  | `TriangulatorOptions`           |

`GlobalPositionerOptions.constraint_type` takes a `ConstraintType`
(`ONLY_POINTS`, `ONLY_CAMERAS`, `POINTS_AND_CAMERAS_BALANCED`,
`POINTS_AND_CAMERAS`); `RotationEstimatorOptions.weight_type` takes a
`WeightType` (`GEMAN_MCCLURE` or `HALF_NORM`). Robust losses are described by
`LossFunction` with a `LossKind` (`TRIVIAL`, `HUBER`, `CAUCHY`, `ARCTAN`), a
scale and a weight; `rho(squared_norm)` returns the loss value. Solver limits
are in `SolverOptions`.

`globalsfm.cost_functions` holds the residuals the stages use:
`BATAPairwiseDirectionError`, `FetzerFocalLengthCost`,
`FetzerFocalLengthSameCameraCost` (with the helpers `fetzer_d` and
`fetzer_ds`) and `GravError`.

## Running the stages

```python
from globalsfm.options import GlobalMapperOptions
from globalsfm.view_graph_calibration import ViewGraphCalibrator
from globalsfm.rotation_averaging import RotationEstimator
from globalsfm.track_establishment import TrackEngine
from globalsfm.global_positioning import GlobalPositioner

options = GlobalMapperOptions()

# view_graph, cameras and images come from your own matching and
# relative pose estimation.
ViewGraphCalibrator(options.opt_vgcalib).solve(view_graph, cameras, images)

RotationEstimator(options.opt_ra).estimate_rotations(view_graph, images)

engine = TrackEngine(view_graph, images, options.opt_track)
tracks_full = engine.establish_full_tracks()
tracks = engine.find_tracks_for_problem(tracks_full)

GlobalPositioner(options.opt_gp).solve(view_graph, cameras, images, tracks)
```

## Command-line style options

`globalsfm.option_manager.OptionManager` binds option names such as
`ba_iteration_num`, `skip_rotation_averaging`,
`TrackEstablishment.min_num_view_per_track` or
`GlobalPositioning.thres_loss_function` to fields of its `mapper`
(a `GlobalMapperOptions`). Call the `add_*_options()` methods for the groups
you want, or `add_required_option` / `add_default_option` to bind your own
names to any dataclass field, then `parse(argv)` with `--name value` or
`--name=value` arguments. `add_global_mapper_resume_options()` also switches
on the skip flags of the steps that cannot run on an existing
reconstruction. `help_text()` describes every declared option,
`registered_options()` gives the registered names and their current values,
and `reset()` restores the defaults. Unknown options, malformed values,
repeated options and missing required options raise `OptionError`;
`--help` / `-h` prints the description and exits with status 0.

## What the package does not do

- There is no command-line program; `OptionManager` parses arguments but
  nothing runs a full mapping pipeline from them.
- It does not read feature or match databases, nor read or write
  reconstructions. Cameras, images, pairs and tracks are built by the caller.
- It does not estimate relative poses, undistort features (fill
  `Image.features_undist` yourself), run bundle adjustment, retriangulate
  tracks or prune the reconstruction. `RelativePoseEstimationOptions`,
  `BundleAdjusterOptions` and `TriangulatorOptions` hold settings only.

## Tests

```
pip install -e .[test]
pytest
```