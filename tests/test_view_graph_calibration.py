import numpy as np

from globalsfm.options import ViewGraphCalibratorOptions
from globalsfm.sfm import Camera, Image, ImagePair, TwoViewGeometryConfig, ViewGraph
from globalsfm.view_graph_calibration import ViewGraphCalibrator

TRUE_FOCAL = 500.0


def _skew(t):
    return np.array([[0, -t[2], t[1]], [t[2], 0, -t[0]], [-t[1], t[0], 0]])


def _rot(axis, angle):
    axis = np.asarray(axis, float) / np.linalg.norm(axis)
    k = _skew(axis)
    return np.eye(3) + np.sin(angle) * k + (1 - np.cos(angle)) * k @ k


def _setup(initial_focal, prior=False, config=TwoViewGeometryConfig.UNCALIBRATED):
    k = np.array([[TRUE_FOCAL, 0, 10.0], [0, TRUE_FOCAL, -5.0], [0, 0, 1]])
    kinv = np.linalg.inv(k)
    cameras = {1: Camera(1, params=[initial_focal, 10.0, -5.0], has_prior_focal_length=prior)}
    images = {i: Image(i, 1) for i in range(1, 5)}
    rng = np.random.default_rng(0)
    pairs = {}
    for a, b in [(1, 2), (1, 3), (2, 4), (3, 4), (1, 4)]:
        r = _rot(rng.normal(size=3), rng.uniform(0.1, 0.4))
        t = rng.normal(size=3)
        f = kinv.T @ _skew(t) @ r @ kinv
        p = ImagePair(a, b, config=config, F=f / np.linalg.norm(f))
        pairs[p.pair_id] = p
    return cameras, images, ViewGraph(pairs)


def test_recovers_focal_length():
    cameras, images, vg = _setup(520.0)
    assert ViewGraphCalibrator(ViewGraphCalibratorOptions()).solve(vg, cameras, images)
    assert abs(cameras[1].focal() - TRUE_FOCAL) < 1.0
    assert cameras[1].has_refined_focal_length
    assert all(p.is_valid for p in vg.image_pairs.values())


def test_prior_focal_left_unchanged():
    cameras, images, vg = _setup(520.0, prior=True)
    assert ViewGraphCalibrator(ViewGraphCalibratorOptions()).solve(vg, cameras, images)
    assert cameras[1].focal() == 520.0
    assert not cameras[1].has_refined_focal_length


def test_other_configs_are_ignored():
    cameras, images, vg = _setup(520.0, config=TwoViewGeometryConfig.PLANAR)
    assert ViewGraphCalibrator(ViewGraphCalibratorOptions()).solve(vg, cameras, images)
    assert cameras[1].focal() == 520.0


def test_estimate_outside_ratio_is_rejected():
    cameras, images, vg = _setup(520.0)
    opts = ViewGraphCalibratorOptions(thres_lower_ratio=1.5)
    ViewGraphCalibrator(opts).solve(vg, cameras, images)
    assert cameras[1].focal() == 520.0
    assert not cameras[1].has_refined_focal_length