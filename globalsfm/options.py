"""Option sets for the stages of the global mapper."""

from __future__ import annotations

import enum
import math
import os
from dataclasses import dataclass, field

import numpy as np


class LossKind(enum.Enum):
    """Robust loss function family."""

    TRIVIAL = "trivial"
    HUBER = "huber"
    CAUCHY = "cauchy"
    ARCTAN = "arctan"


@dataclass
class LossFunction:
    """Robust loss with scale ``scale`` and an overall multiplier ``weight``."""

    kind: LossKind = LossKind.TRIVIAL
    scale: float = 1.0
    weight: float = 1.0

    def rho(self, squared_norm: float) -> float:
        """Loss value for a squared residual norm."""
        s = float(squared_norm)
        a = self.scale
        b = a * a
        if self.kind is LossKind.TRIVIAL:
            value = s
        elif self.kind is LossKind.HUBER:
            value = s if s <= b else 2.0 * a * math.sqrt(s) - b
        elif self.kind is LossKind.CAUCHY:
            value = b * math.log1p(s / b)
        else:
            value = a * math.atan2(s, a)
        return self.weight * value


def _default_threads() -> int:
    return os.cpu_count() or 1


@dataclass
class SolverOptions:
    """Settings for the nonlinear least-squares solver."""

    max_num_iterations: int = 100
    function_tolerance: float = 1e-5
    num_threads: int = field(default_factory=_default_threads)
    minimizer_progress_to_stdout: bool = False


@dataclass
class OptimizationBaseOptions:
    """Settings shared by every optimisation stage."""

    verbose: bool = False
    thres_loss_function: float = 1e-1
    loss_function: LossFunction | None = None
    solver_options: SolverOptions = field(default_factory=SolverOptions)


@dataclass
class BundleAdjusterOptions(OptimizationBaseOptions):
    """Bundle adjustment settings."""

    thres_loss_function: float = 1.0
    solver_options: SolverOptions = field(
        default_factory=lambda: SolverOptions(max_num_iterations=200)
    )
    optimize_rotations: bool = True
    optimize_translation: bool = True
    optimize_intrinsics: bool = True
    optimize_points: bool = True
    min_num_view_per_track: int = 3

    def __post_init__(self) -> None:
        if self.loss_function is None:
            self.loss_function = LossFunction(LossKind.HUBER, self.thres_loss_function)


class ConstraintType(enum.Enum):
    """Which constraints global positioning uses."""

    ONLY_POINTS = "ONLY_POINTS"
    ONLY_CAMERAS = "ONLY_CAMERAS"
    POINTS_AND_CAMERAS_BALANCED = "POINTS_AND_CAMERAS_BALANCED"
    POINTS_AND_CAMERAS = "POINTS_AND_CAMERAS"


@dataclass
class GlobalPositionerOptions(OptimizationBaseOptions):
    """Global positioning settings."""

    generate_random_positions: bool = True
    generate_random_points: bool = True
    generate_scales: bool = True
    optimize_positions: bool = True
    optimize_points: bool = True
    optimize_scales: bool = True
    min_num_view_per_track: int = 3
    seed: int = 1
    constraint_type: ConstraintType = ConstraintType.ONLY_POINTS
    constraint_reweight_scale: float = 1.0

    def __post_init__(self) -> None:
        if self.loss_function is None:
            self.loss_function = LossFunction(LossKind.HUBER, self.thres_loss_function)


@dataclass
class ViewGraphCalibratorOptions(OptimizationBaseOptions):
    """Focal length calibration settings."""

    thres_loss_function: float = 1e-2
    thres_lower_ratio: float = 0.1
    thres_higher_ratio: float = 10.0
    thres_two_view_error: float = 2.0


@dataclass
class TrackEstablishmentOptions:
    """Track building and selection settings."""

    thres_inconsistency: float = 10.0
    min_num_tracks_per_view: int = -1
    min_num_view_per_track: int = 3
    max_num_view_per_track: int = 100
    max_num_tracks: int = 10000000


@dataclass
class TriangulatorOptions:
    """Retriangulation settings."""

    tri_complete_max_reproj_error: float = 15.0
    tri_merge_max_reproj_error: float = 15.0
    tri_min_angle: float = 1.0
    min_num_matches: int = 15


class WeightType(enum.Enum):
    """IRLS weighting scheme for rotation averaging."""

    GEMAN_MCCLURE = "GEMAN_MCCLURE"
    HALF_NORM = "HALF_NORM"


@dataclass
class RotationEstimatorOptions:
    """Rotation averaging settings."""

    max_num_l1_iterations: int = 5
    l1_step_convergence_threshold: float = 0.001
    max_num_irls_iterations: int = 100
    irls_step_convergence_threshold: float = 0.001
    axis: np.ndarray = field(default_factory=lambda: np.array([0.0, 1.0, 0.0]))
    irls_loss_parameter_sigma: float = 5.0
    weight_type: WeightType = WeightType.GEMAN_MCCLURE
    skip_initialization: bool = False
    use_weight: bool = False
    use_gravity: bool = False
    verbose: bool = False


@dataclass
class RansacOptions:
    """Robust estimation settings for relative poses."""

    max_iterations: int = 50000
    max_epipolar_error: float = 1.0


@dataclass
class RelativePoseEstimationOptions:
    """Relative pose estimation settings."""

    ransac_options: RansacOptions = field(default_factory=RansacOptions)


@dataclass
class _InlierThresholdOptions:
    max_angle_error: float = 1.0
    max_reprojection_error: float = 1e-2
    min_triangulation_angle: float = 1.0
    max_epipolar_error_E: float = 1.0
    max_epipolar_error_F: float = 4.0
    max_epipolar_error_H: float = 4.0
    min_inlier_num: float = 30
    min_inlier_ratio: float = 0.25
    max_rotation_error: float = 10.0


@dataclass
class GlobalMapperOptions:
    """Settings for every stage of the global mapper and its flow control."""

    opt_vgcalib: ViewGraphCalibratorOptions = field(default_factory=ViewGraphCalibratorOptions)
    opt_relpose: RelativePoseEstimationOptions = field(
        default_factory=RelativePoseEstimationOptions
    )
    opt_ra: RotationEstimatorOptions = field(default_factory=RotationEstimatorOptions)
    opt_track: TrackEstablishmentOptions = field(default_factory=TrackEstablishmentOptions)
    opt_gp: GlobalPositionerOptions = field(default_factory=GlobalPositionerOptions)
    opt_ba: BundleAdjusterOptions = field(default_factory=BundleAdjusterOptions)
    opt_triangulator: TriangulatorOptions = field(default_factory=TriangulatorOptions)
    inlier_thresholds: _InlierThresholdOptions = field(default_factory=_InlierThresholdOptions)

    num_iteration_bundle_adjustment: int = 3
    num_iteration_retriangulation: int = 1

    skip_preprocessing: bool = False
    skip_view_graph_calibration: bool = False
    skip_relative_pose_estimation: bool = False
    skip_rotation_averaging: bool = False
    skip_track_establishment: bool = False
    skip_global_positioning: bool = False
    skip_bundle_adjustment: bool = False
    skip_retriangulation: bool = False
    skip_pruning: bool = True