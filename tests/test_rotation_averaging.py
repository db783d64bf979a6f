import math

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from globalsfm.options import RotationEstimatorOptions
from globalsfm.rotation_averaging import RotationEstimator, rel_angle_error
from globalsfm.sfm import Image, ImagePair, Rigid3d, ViewGraph


def _pose(mat):
    x, y, z, w = Rotation.from_matrix(mat).as_quat()
    return Rigid3d(np.array([w, x, y, z]))


def _angle_between(a, b):
    return float(np.linalg.norm(Rotation.from_matrix(a.T @ b).as_rotvec()))


def _truth(n, seed, max_angle):
    rng = np.random.default_rng(seed)
    return [
        Rotation.from_rotvec(rng.uniform(-1.0, 1.0, 3) * max_angle / math.sqrt(3)).as_matrix()
        for _ in range(n)
    ]


def _scene(truth, with_gravity=False):
    images = {}
    for i, mat in enumerate(truth):
        images[i] = Image(
            image_id=i,
            camera_id=1,
            is_registered=True,
            gravity=mat[:, 1] if with_gravity else None,
        )
    pairs = {}
    for i in range(len(truth)):
        for j in range(i + 1, len(truth)):
            pair = ImagePair(i, j, cam2_from_cam1=_pose(truth[j] @ truth[i].T))
            pair.inliers = list(range(10 + i + j))
            pairs[pair.pair_id] = pair
    return ViewGraph(image_pairs=pairs), images


def _max_relative_error(view_graph, images, truth):
    worst = 0.0
    for pair in view_graph.image_pairs.values():
        i, j = pair.image_id1, pair.image_id2
        est = images[j].cam_from_world.rotation_matrix() @ images[i].cam_from_world.rotation_matrix().T
        worst = max(worst, _angle_between(est, truth[j] @ truth[i].T))
    return worst


def test_rel_angle_error_plain_difference():
    assert rel_angle_error(0.1, 0.2, 0.5) == pytest.approx(0.2)


def test_rel_angle_error_upper_boundary_wraps_to_minus_pi():
    assert rel_angle_error(0.0, 0.0, math.pi) == pytest.approx(-math.pi)


@pytest.mark.parametrize(
    "args", [(0.0, -3.0, 4.0), (5.0, 1.0, -2.0), (-7.5, 0.3, 0.1), (0.2, 0.2, 0.2)]
)
def test_rel_angle_error_range_and_congruence(args):
    angle_12, angle_1, angle_2 = args
    result = rel_angle_error(angle_12, angle_1, angle_2)
    assert -math.pi <= result < math.pi
    turns = (result - ((angle_2 - angle_1) - angle_12)) / (2 * math.pi)
    assert turns == pytest.approx(round(turns), abs=1e-9)


def test_exact_relative_rotations_with_spanning_tree_init():
    truth = _truth(5, seed=3, max_angle=1.5)
    view_graph, images = _scene(truth)
    estimator = RotationEstimator(RotationEstimatorOptions())
    assert estimator.estimate_rotations(view_graph, images) is True
    assert _max_relative_error(view_graph, images, truth) < 1e-6


def test_skip_initialization_converges_and_keeps_fixed_camera():
    truth = _truth(4, seed=7, max_angle=0.3)
    view_graph, images = _scene(truth)
    options = RotationEstimatorOptions(skip_initialization=True)
    assert RotationEstimator(options).estimate_rotations(view_graph, images) is True
    assert _max_relative_error(view_graph, images, truth) < 1e-3
    assert _angle_between(images[0].cam_from_world.rotation_matrix(), np.eye(3)) < 1e-3


def test_irls_only():
    truth = _truth(4, seed=11, max_angle=0.2)
    view_graph, images = _scene(truth)
    options = RotationEstimatorOptions(skip_initialization=True, max_num_l1_iterations=0)
    assert RotationEstimator(options).estimate_rotations(view_graph, images) is True
    assert _max_relative_error(view_graph, images, truth) < 1e-3


def test_gravity_aligned_rotation_averaging():
    truth = _truth(4, seed=5, max_angle=1.0)
    view_graph, images = _scene(truth, with_gravity=True)
    options = RotationEstimatorOptions(use_gravity=True)
    assert RotationEstimator(options).estimate_rotations(view_graph, images) is True
    assert _max_relative_error(view_graph, images, truth) < 1e-5
    for i, image in images.items():
        # The vertical axis of each camera must stay aligned with its gravity.
        col = image.cam_from_world.rotation_matrix()[:, 1]
        assert np.allclose(col, truth[i][:, 1], atol=1e-6)


def test_unregistered_image_is_left_alone():
    truth = _truth(4, seed=9, max_angle=1.0)
    view_graph, images = _scene(truth)
    original = Rotation.from_rotvec([0.4, -0.2, 0.1]).as_matrix()
    images[99] = Image(image_id=99, camera_id=1, is_registered=False,
                       cam_from_world=_pose(original))
    assert RotationEstimator(RotationEstimatorOptions()).estimate_rotations(view_graph, images)
    assert np.allclose(images[99].cam_from_world.rotation_matrix(), original, atol=1e-12)
    assert _max_relative_error(view_graph, images, truth) < 1e-6


def test_repeated_estimation_is_stable():
    truth = _truth(5, seed=13, max_angle=1.2)
    view_graph, images = _scene(truth)
    estimator = RotationEstimator(RotationEstimatorOptions())
    assert estimator.estimate_rotations(view_graph, images)
    first = {i: im.cam_from_world.rotation_matrix() for i, im in images.items()}
    assert estimator.estimate_rotations(view_graph, images)
    for i, image in images.items():
        assert _angle_between(image.cam_from_world.rotation_matrix(), first[i]) < 1e-6


def test_no_registered_images_fails():
    truth = _truth(3, seed=1, max_angle=0.5)
    view_graph, images = _scene(truth)
    for image in images.values():
        image.is_registered = False
    assert RotationEstimator(RotationEstimatorOptions()).estimate_rotations(view_graph, images) is False