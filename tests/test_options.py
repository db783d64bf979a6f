import math

import pytest

from globalsfm.options import (
    BundleAdjusterOptions,
    ConstraintType,
    GlobalMapperOptions,
    GlobalPositionerOptions,
    LossFunction,
    LossKind,
    OptimizationBaseOptions,
    RansacOptions,
    RelativePoseEstimationOptions,
    RotationEstimatorOptions,
    SolverOptions,
    TrackEstablishmentOptions,
    TriangulatorOptions,
    ViewGraphCalibratorOptions,
    WeightType,
)


def test_trivial_loss_is_identity():
    assert LossFunction().rho(2.5) == 2.5


def test_huber_quadratic_region():
    loss = LossFunction(LossKind.HUBER, 2.0)
    assert loss.rho(3.0) == pytest.approx(3.0)


def test_huber_continuous_and_sublinear():
    loss = LossFunction(LossKind.HUBER, 2.0)
    assert loss.rho(4.0 + 1e-9) == pytest.approx(loss.rho(4.0))
    assert loss.rho(100.0) < 100.0


@pytest.mark.parametrize("kind", [LossKind.HUBER, LossKind.CAUCHY, LossKind.ARCTAN])
def test_robust_losses_monotone_and_bounded_by_trivial(kind):
    loss = LossFunction(kind, 0.5)
    values = [loss.rho(s) for s in (0.0, 0.1, 1.0, 10.0)]
    assert values == sorted(values)
    assert values[0] == 0.0
    assert all(v <= s + 1e-12 for v, s in zip(values, (0.0, 0.1, 1.0, 10.0)))


def test_arctan_saturates():
    loss = LossFunction(LossKind.ARCTAN, 0.5)
    assert loss.rho(1e12) == pytest.approx(0.5 * math.pi / 2)


def test_weight_scales_loss():
    base = LossFunction(LossKind.CAUCHY, 1.0)
    scaled = LossFunction(LossKind.CAUCHY, 1.0, weight=0.5)
    assert scaled.rho(3.0) == pytest.approx(0.5 * base.rho(3.0))


def test_base_options_defaults():
    opts = OptimizationBaseOptions()
    assert opts.loss_function is None
    assert opts.thres_loss_function == 1e-1
    assert opts.solver_options.max_num_iterations == 100
    assert opts.solver_options.function_tolerance == 1e-5
    assert opts.solver_options.num_threads >= 1


def test_bundle_adjuster_defaults():
    opts = BundleAdjusterOptions()
    assert opts.thres_loss_function == 1.0
    assert opts.loss_function.kind is LossKind.HUBER
    assert opts.loss_function.scale == opts.thres_loss_function
    assert opts.solver_options.max_num_iterations == 200
    assert opts.min_num_view_per_track == 3


def test_bundle_adjuster_keeps_given_solver_options():
    opts = BundleAdjusterOptions(solver_options=SolverOptions(max_num_iterations=7))
    assert opts.solver_options.max_num_iterations == 7


def test_global_positioner_defaults():
    opts = GlobalPositionerOptions()
    assert opts.constraint_type is ConstraintType.ONLY_POINTS
    assert opts.loss_function.kind is LossKind.HUBER
    assert opts.loss_function.scale == 1e-1
    assert opts.seed == 1


def test_view_graph_calibrator_defaults():
    opts = ViewGraphCalibratorOptions()
    assert opts.thres_loss_function == 1e-2
    assert opts.thres_lower_ratio == 0.1
    assert opts.thres_higher_ratio == 10
    assert opts.thres_two_view_error == 2.0
    assert opts.loss_function is None


def test_track_and_triangulator_defaults():
    track = TrackEstablishmentOptions()
    assert track.min_num_tracks_per_view == -1
    assert track.max_num_tracks == 10000000
    tri = TriangulatorOptions()
    assert tri.min_num_matches == 15
    assert tri.tri_complete_max_reproj_error == 15.0


def test_rotation_estimator_defaults():
    opts = RotationEstimatorOptions()
    assert opts.weight_type is WeightType.GEMAN_MCCLURE
    assert opts.max_num_irls_iterations == 100
    assert list(opts.axis) == [0.0, 1.0, 0.0]


def test_relpose_ransac_iterations():
    assert RelativePoseEstimationOptions().ransac_options.max_iterations == 50000
    assert RansacOptions(max_epipolar_error=2.0).max_epipolar_error == 2.0


def test_global_mapper_defaults_and_independence():
    first = GlobalMapperOptions()
    second = GlobalMapperOptions()
    assert first.skip_pruning is True
    assert first.num_iteration_bundle_adjustment == 3
    first.opt_gp.constraint_type = ConstraintType.ONLY_CAMERAS
    first.opt_ba.solver_options.max_num_iterations = 5
    assert second.opt_gp.constraint_type is ConstraintType.ONLY_POINTS
    assert second.opt_ba.solver_options.max_num_iterations == 200


def test_constraint_type_from_name():
    assert ConstraintType("POINTS_AND_CAMERAS_BALANCED") is ConstraintType.POINTS_AND_CAMERAS_BALANCED
    with pytest.raises(ValueError):
        ConstraintType("NOPE")