"""Focal length calibration of cameras from the fundamental matrices of the view graph."""

from __future__ import annotations

import logging
import math
from typing import Mapping, MutableMapping

import numpy as np
from scipy.optimize import least_squares

from globalsfm.cost_functions import FetzerFocalLengthCost, FetzerFocalLengthSameCameraCost
from globalsfm.options import LossFunction, LossKind, ViewGraphCalibratorOptions
from globalsfm.sfm import Camera, Image, ImagePair, TwoViewGeometryConfig, ViewGraph

logger = logging.getLogger(__name__)

_MIN_FOCAL = 1e-3
_USED_CONFIGS = (TwoViewGeometryConfig.CALIBRATED, TwoViewGeometryConfig.UNCALIBRATED)


def _pair_used(pair: ImagePair) -> bool:
    return pair.config in _USED_CONFIGS and pair.is_valid


class ViewGraphCalibrator:
    """Refines focal lengths and invalidates pairs that disagree with them."""

    def __init__(self, options: ViewGraphCalibratorOptions) -> None:
        self.options = options
        self._focals: dict[int, float] = {}
        self._blocks: list[tuple[object, tuple[int, ...]]] = []

    def solve(
        self,
        view_graph: ViewGraph,
        cameras: MutableMapping[int, Camera],
        images: Mapping[int, Image],
    ) -> bool:
        """Calibrate in place; return whether the solution is usable."""
        logger.info("Start ViewGraphCalibrator")
        opts = self.options
        self._focals = {cid: cam.focal() for cid, cam in cameras.items()}
        self._blocks = []
        opts.loss_function = LossFunction(LossKind.CAUCHY, opts.thres_loss_function)

        for pair in view_graph.image_pairs.values():
            if _pair_used(pair):
                self._add_image_pair(pair, cameras, images)

        used = {cid for _, ids in self._blocks for cid in ids}
        free = [cid for cid in cameras if cid in used and not cameras[cid].has_prior_focal_length]
        if not free:
            logger.info("No cameras to optimize")
            return True

        usable = self._optimize(free)
        self._copy_back_results(cameras, used)
        self._filter_image_pairs(view_graph)
        return usable

    def _add_image_pair(self, pair, cameras, images) -> None:
        cid1 = images[pair.image_id1].camera_id
        cid2 = images[pair.image_id2].camera_id
        if cid1 == cid2:
            cost = FetzerFocalLengthSameCameraCost(pair.F, cameras[cid1].principal_point())
            self._blocks.append((cost, (cid1,)))
        else:
            cost = FetzerFocalLengthCost(
                pair.F, cameras[cid1].principal_point(), cameras[cid2].principal_point()
            )
            self._blocks.append((cost, (cid1, cid2)))

    def _raw_residuals(self, focals: Mapping[int, float]) -> np.ndarray:
        return np.array(
            [cost(*(focals[c] for c in ids)) for cost, ids in self._blocks]
        ).reshape(-1, 2)

    def _optimize(self, free: list[int]) -> bool:
        loss = self.options.loss_function

        def residuals(x):
            focals = dict(self._focals)
            focals.update(zip(free, x))
            raw = self._raw_residuals(focals)
            out = np.empty_like(raw)
            for k, r in enumerate(raw):
                s = float(r @ r)
                factor = math.sqrt(max(loss.rho(s), 0.0) / s) if s > 0 else math.sqrt(loss.weight)
                out[k] = factor * r
            return out.ravel()

        x0 = np.maximum([self._focals[c] for c in free], _MIN_FOCAL)
        result = least_squares(
            residuals,
            x0,
            bounds=(_MIN_FOCAL, np.inf),
            method="trf",
            ftol=self.options.solver_options.function_tolerance,
            max_nfev=max(self.options.solver_options.max_num_iterations, 1) * 10,
            verbose=2 if self.options.verbose else 0,
        )
        self._focals.update(zip(free, (float(v) for v in result.x)))
        return result.status >= 0 and bool(np.all(np.isfinite(result.x)))

    def _copy_back_results(self, cameras, used: set[int]) -> None:
        opts = self.options
        rejected = 0
        for cid, camera in cameras.items():
            if cid not in used:
                continue
            ratio = self._focals[cid] / camera.focal()
            if ratio > opts.thres_higher_ratio or ratio < opts.thres_lower_ratio:
                if opts.verbose:
                    logger.info(
                        "NOT ACCEPTED: Camera %d focal: %s original focal: %s",
                        cid, self._focals[cid], camera.focal(),
                    )
                rejected += 1
                continue
            camera.has_refined_focal_length = True
            for idx in camera.focal_length_idxs():
                camera.params[idx] = self._focals[cid]
        logger.info("%d cameras are rejected in view graph calibration", rejected)

    def _filter_image_pairs(self, view_graph: ViewGraph) -> int:
        raw = self._raw_residuals(self._focals)
        threshold_sq = self.options.thres_two_view_error ** 2
        invalid = 0
        counter = 0
        for pair in view_graph.image_pairs.values():
            if not _pair_used(pair):
                continue
            error = raw[counter]
            if float(error @ error) > threshold_sq:
                invalid += 1
                pair.is_valid = False
            counter += 1
        logger.info(
            "invalid / total number of two view geometry: %d / %d", invalid, 2 * counter
        )
        return invalid