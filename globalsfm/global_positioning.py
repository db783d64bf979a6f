"""Global positioning: camera centers and points from directions with per-constraint scales."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Mapping, MutableMapping

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from globalsfm.options import (
    ConstraintType,
    GlobalPositionerOptions,
    LossFunction,
    LossKind,
)
from globalsfm.sfm import Camera, Image, Track, ViewGraph

logger = logging.getLogger(__name__)

_MIN_SCALE = 1e-5
_POSITION, _POINT = 0, 1


@dataclass
class _Constraint:
    first: tuple[int, int]
    second: tuple[int, int]
    scale_idx: int
    translation_obs: np.ndarray
    loss: LossFunction


def _robust_residuals(raw: np.ndarray, losses: list[LossFunction]) -> np.ndarray:
    """Rescale each residual block so its squared norm equals the loss value."""
    out = np.empty_like(raw)
    for k, loss in enumerate(losses):
        r = raw[k]
        s = float(r @ r)
        if s > 0.0:
            factor = math.sqrt(max(loss.rho(s), 0.0) / s)
        else:
            factor = math.sqrt(loss.weight)
        out[k] = factor * r
    return out


class GlobalPositioner:
    """Estimates camera positions and 3D points from relative directions."""

    def __init__(self, options: GlobalPositionerOptions) -> None:
        self.options = options
        self._rng = np.random.default_rng(options.seed)
        self._loss_uncalibrated: LossFunction | None = None
        self._loss_calibrated: LossFunction | None = None
        self._scales: list[float] = []
        self._constraints: list[_Constraint] = []

    def _base_loss(self) -> LossFunction:
        return self.options.loss_function or LossFunction(LossKind.TRIVIAL)

    def _random_vector(self) -> np.ndarray:
        return 100.0 * self._rng.uniform(-1.0, 1.0, size=3)

    def solve(
        self,
        view_graph: ViewGraph,
        cameras: Mapping[int, Camera],
        images: MutableMapping[int, Image],
        tracks: MutableMapping[int, Track],
    ) -> bool:
        """Estimate positions in place; return whether the solution is usable."""
        opts = self.options
        if not images:
            logger.error("Number of images = %d", len(images))
            return False
        if not view_graph.image_pairs and opts.constraint_type is not ConstraintType.ONLY_POINTS:
            logger.error("Number of image_pairs = %d", len(view_graph.image_pairs))
            return False
        if not tracks and opts.constraint_type is not ConstraintType.ONLY_CAMERAS:
            logger.error("Number of tracks = %d", len(tracks))
            return False

        logger.info("Setting up the global positioner problem")
        self._scales = []
        self._constraints = []

        self._initialize_random_positions(view_graph, images, tracks)
        if opts.constraint_type is not ConstraintType.ONLY_POINTS:
            self._add_camera_to_camera_constraints(view_graph, images)
        if opts.constraint_type is not ConstraintType.ONLY_CAMERAS:
            self._add_point_to_camera_constraints(cameras, images, tracks)

        logger.info("Solving the global positioner problem")
        usable = self._optimize(images, tracks)
        self._convert_results(images)
        return usable

    def _initialize_random_positions(self, view_graph, images, tracks) -> None:
        opts = self.options
        constrained: set[int] = set()
        for pair in view_graph.image_pairs.values():
            if not pair.is_valid:
                continue
            constrained.add(pair.image_id1)
            constrained.add(pair.image_id2)

        if opts.constraint_type is not ConstraintType.ONLY_CAMERAS:
            for track in tracks.values():
                if len(track.observations) < opts.min_num_view_per_track:
                    continue
                for image_id, _ in track.observations:
                    image = images.get(image_id)
                    if image is not None and image.is_registered:
                        constrained.add(image_id)

        if not opts.generate_random_positions or not opts.optimize_positions:
            for image in images.values():
                image.cam_from_world.translation = image.center()
            return

        for image_id, image in images.items():
            if image_id in constrained:
                image.cam_from_world.translation = self._random_vector()
            else:
                image.cam_from_world.translation = image.center()

        if opts.verbose:
            logger.info("Constrained positions: %d", len(constrained))

    def _add_camera_to_camera_constraints(self, view_graph, images) -> None:
        loss = self._base_loss()
        for pair in view_graph.image_pairs.values():
            if not pair.is_valid:
                continue
            if pair.image_id1 not in images or pair.image_id2 not in images:
                continue
            rot2 = images[pair.image_id2].cam_from_world.rotation_matrix()
            translation = -(rot2.T @ pair.cam2_from_cam1.translation)
            self._scales.append(1.0)
            self._constraints.append(
                _Constraint(
                    (_POSITION, pair.image_id1),
                    (_POSITION, pair.image_id2),
                    len(self._scales) - 1,
                    translation,
                    loss,
                )
            )
        if self.options.verbose:
            logger.info(
                "%d camera to camera constraints were added to the position estimation problem.",
                len(self._constraints),
            )

    def _add_point_to_camera_constraints(self, cameras, images, tracks) -> None:
        opts = self.options
        num_cam_to_cam = len(self._constraints)
        num_pt_to_cam = len(tracks)
        if num_pt_to_cam == 0:
            return

        weight_scale_pt = 1.0
        balanced = opts.constraint_type is ConstraintType.POINTS_AND_CAMERAS_BALANCED
        if num_cam_to_cam > 0 and balanced:
            weight_scale_pt = opts.constraint_reweight_scale * num_cam_to_cam / num_pt_to_cam
        if opts.verbose:
            logger.info("Point to camera weight scaled: %s", weight_scale_pt)

        base = self._base_loss()
        if self._loss_uncalibrated is None:
            self._loss_uncalibrated = replace(base, weight=base.weight * 0.5 * weight_scale_pt)
        if balanced:
            self._loss_calibrated = replace(base, weight=base.weight * weight_scale_pt)
        else:
            self._loss_calibrated = base

        for track_id, track in tracks.items():
            if len(track.observations) < opts.min_num_view_per_track:
                continue
            if opts.optimize_points and opts.generate_random_points:
                track.xyz = self._random_vector()
                track.is_initialized = True
            self._add_track(track_id, track, cameras, images)

    def _add_track(self, track_id, track, cameras, images) -> None:
        for image_id, feature_id in track.observations:
            image = images.get(image_id)
            if image is None or not image.is_registered:
                continue
            rot = image.cam_from_world.rotation_matrix()
            translation = rot.T @ image.features_undist[feature_id]
            if self.options.generate_scales or not track.is_initialized:
                scale = 1.0
            else:
                trans_calc = track.xyz - image.cam_from_world.translation
                scale = max(float(translation @ trans_calc) / float(trans_calc @ trans_calc),
                            _MIN_SCALE)
            self._scales.append(scale)
            calibrated = cameras[image.camera_id].has_prior_focal_length
            loss = self._loss_calibrated if calibrated else self._loss_uncalibrated
            self._constraints.append(
                _Constraint(
                    (_POSITION, image_id),
                    (_POINT, track_id),
                    len(self._scales) - 1,
                    translation,
                    loss,
                )
            )

    def _optimize(self, images, tracks) -> bool:
        opts = self.options
        if not self._constraints:
            return True

        # Blocks that appear in the problem, in a fixed order.
        blocks: dict[tuple[int, int], int] = {}
        for c in self._constraints:
            for key in (c.first, c.second):
                blocks.setdefault(key, len(blocks))

        def block_value(key):
            kind, ident = key
            if kind == _POSITION:
                return images[ident].cam_from_world.translation
            return tracks[ident].xyz

        state = np.zeros(3 * len(blocks) + len(self._scales))
        for key, b in blocks.items():
            state[3 * b: 3 * b + 3] = block_value(key)
        scale_offset = 3 * len(blocks)
        state[scale_offset:] = self._scales

        free = np.zeros(state.size, dtype=bool)
        for (kind, _), b in blocks.items():
            optimize = opts.optimize_positions if kind == _POSITION else opts.optimize_points
            free[3 * b: 3 * b + 3] = optimize
        free[scale_offset:] = opts.optimize_scales
        free_index = np.full(state.size, -1)
        free_index[free] = np.arange(int(free.sum()))

        first = np.array([blocks[c.first] for c in self._constraints])
        second = np.array([blocks[c.second] for c in self._constraints])
        scale_idx = np.array([c.scale_idx for c in self._constraints])
        obs = np.array([c.translation_obs for c in self._constraints])
        losses = [c.loss for c in self._constraints]

        def unpack(x):
            full = state.copy()
            full[free] = x
            return full

        def residuals(x):
            full = unpack(x)
            pos = full[:scale_offset].reshape(-1, 3)
            scales = full[scale_offset:]
            raw = obs - scales[scale_idx][:, None] * (pos[second] - pos[first])
            return _robust_residuals(raw, losses).ravel()

        if free.any():
            sparsity = lil_matrix((3 * len(self._constraints), int(free.sum())), dtype=int)
            for k in range(len(self._constraints)):
                cols = [*range(3 * first[k], 3 * first[k] + 3),
                        *range(3 * second[k], 3 * second[k] + 3),
                        scale_offset + scale_idx[k]]
                for col in cols:
                    if free_index[col] >= 0:
                        sparsity[3 * k: 3 * k + 3, free_index[col]] = 1

            lower = np.full(state.size, -np.inf)
            lower[scale_offset:] = _MIN_SCALE
            x0 = state[free].copy()
            lb = lower[free]
            x0 = np.maximum(x0, lb)
            result = least_squares(
                residuals,
                x0,
                jac_sparsity=sparsity,
                bounds=(lb, np.inf),
                method="trf",
                ftol=opts.solver_options.function_tolerance,
                max_nfev=max(opts.solver_options.max_num_iterations, 1) * 10,
                verbose=2 if opts.verbose else 0,
            )
            logger.info("Global positioning finished: %s", result.message)
            state = unpack(result.x)
            usable = result.status >= 0 and bool(np.all(np.isfinite(result.x)))
        else:
            usable = True

        for key, b in blocks.items():
            kind, ident = key
            value = state[3 * b: 3 * b + 3].copy()
            if kind == _POSITION:
                images[ident].cam_from_world.translation = value
            else:
                tracks[ident].xyz = value
        self._scales = list(state[scale_offset:])
        return usable

    @staticmethod
    def _convert_results(images) -> None:
        for image in images.values():
            pose = image.cam_from_world
            pose.translation = -(pose.rotation_matrix() @ pose.translation)