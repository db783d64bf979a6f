"""Robust rotation averaging over the view graph (L1 followed by IRLS refinement)."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import MutableMapping

import numpy as np
from scipy.sparse import csc_matrix, csr_matrix, diags
from scipy.sparse.linalg import splu, spsolve
from scipy.spatial.transform import Rotation

from globalsfm.options import RotationEstimatorOptions, WeightType
from globalsfm.sfm import Image, Rigid3d, ViewGraph, image_pair_to_pair_id
from globalsfm.track_establishment import UnionFind

logger = logging.getLogger(__name__)

EPS = 1e-6
_TWO_PI = 2.0 * math.pi
_L1_INITIAL_ITERATIONS = 10
_L1_MAX_ITERATIONS = 100
_ADMM_RHO = 1.0
_ADMM_ABS_TOL = 1e-4
_ADMM_REL_TOL = 1e-2


def rel_angle_error(angle_12: float, angle_1: float, angle_2: float) -> float:
    """Error of a relative angle, wrapped into [-pi, pi)."""
    est = (angle_2 - angle_1) - angle_12
    while est >= math.pi:
        est -= _TWO_PI
    while est < -math.pi:
        est += _TWO_PI
    return est


def _angle_axis_to_rotation(vec) -> np.ndarray:
    return Rotation.from_rotvec(np.asarray(vec, dtype=float)).as_matrix()


def _rotation_to_angle_axis(mat) -> np.ndarray:
    return Rotation.from_matrix(np.asarray(mat, dtype=float)).as_rotvec()


def _matrix_to_quaternion(mat) -> np.ndarray:
    x, y, z, w = Rotation.from_matrix(np.asarray(mat, dtype=float)).as_quat()
    return np.array([w, x, y, z])


def _angle_to_rot_up(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _rot_up_to_angle(mat) -> float:
    return float(_rotation_to_angle_axis(mat)[1])


def _gravity_align(gravity) -> np.ndarray:
    """Rotation whose second column is the (normalised) gravity direction."""
    g = np.asarray(gravity, dtype=float)
    g = g / np.linalg.norm(g)
    ref = np.array([0.0, 0.0, 1.0]) if abs(g[2]) < 0.9 else np.array([1.0, 0.0, 0.0])
    x = np.cross(g, ref)
    x /= np.linalg.norm(x)
    z = np.cross(x, g)
    return np.column_stack([x, g, z])


def _shrink(values: np.ndarray, threshold: float) -> np.ndarray:
    return np.sign(values) * np.maximum(np.abs(values) - threshold, 0.0)


def _l1_solve(a: csr_matrix, b: np.ndarray, max_num_iterations: int) -> np.ndarray:
    """Minimise ||a x - b||_1 with ADMM."""
    m, n = a.shape
    at = a.T.tocsc()
    lu = splu(csc_matrix(at @ a))
    x = np.zeros(n)
    z = np.zeros(m)
    u = np.zeros(m)
    sqrt_m, sqrt_n = math.sqrt(m), math.sqrt(n)
    for _ in range(max_num_iterations):
        x = lu.solve(at @ (b + z - u))
        ax = a @ x
        z_old = z
        z = _shrink(ax - b + u, 1.0 / _ADMM_RHO)
        u = u + ax - z - b
        r_norm = np.linalg.norm(ax - z - b)
        s_norm = np.linalg.norm(_ADMM_RHO * (at @ (z - z_old)))
        eps_pri = sqrt_m * _ADMM_ABS_TOL + _ADMM_REL_TOL * max(
            np.linalg.norm(ax), np.linalg.norm(z), np.linalg.norm(b)
        )
        eps_dual = sqrt_n * _ADMM_ABS_TOL + _ADMM_REL_TOL * np.linalg.norm(
            _ADMM_RHO * (at @ u)
        )
        if r_norm < eps_pri and s_norm < eps_dual:
            break
    return x


@dataclass
class _PairInfo:
    image_id1: int
    image_id2: int
    index: int = -1
    has_gravity: bool = False
    xz_error: float = 0.0
    R_rel: np.ndarray = field(default_factory=lambda: np.eye(3))
    angle_rel: float = 0.0


class RotationEstimator:
    """Estimates global camera orientations from relative rotations."""

    def __init__(self, options: RotationEstimatorOptions) -> None:
        self.options = options
        self._fixed_camera_id: int | None = None
        self._fixed_camera_rotation = np.zeros(3)
        self._idx: dict[int, int] = {}
        self._pairs: dict[int, _PairInfo] = {}
        self._matrix = csr_matrix((0, 0))
        self._step = np.zeros(0)
        self._residual = np.zeros(0)
        self._rotations = np.zeros(0)

    def _uses_gravity(self, image: Image) -> bool:
        return self.options.use_gravity and image.gravity is not None

    def estimate_rotations(
        self, view_graph: ViewGraph, images: MutableMapping[int, Image]
    ) -> bool:
        """Estimate the rotations of registered images in place; return success."""
        opts = self.options
        if not any(image.is_registered for image in images.values()):
            logger.error("No registered images to estimate rotations for")
            return False

        if not opts.skip_initialization and not opts.use_gravity:
            self._initialize_from_maximum_spanning_tree(view_graph, images)

        self._setup_linear_system(view_graph, images)

        if opts.max_num_l1_iterations > 0 and not self._solve_l1_regression(images):
            return False
        if opts.max_num_irls_iterations > 0 and not self._solve_irls(images):
            return False

        for image_id, image in images.items():
            if not image.is_registered:
                continue
            idx = self._idx[image_id]
            if self._uses_gravity(image):
                mat = _gravity_align(image.gravity) @ _angle_to_rot_up(self._rotations[idx])
            else:
                mat = _angle_axis_to_rotation(self._rotations[idx: idx + 3])
            image.cam_from_world.rotation = _matrix_to_quaternion(mat)
        return True

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------
    def _initialize_from_maximum_spanning_tree(
        self, view_graph: ViewGraph, images: MutableMapping[int, Image]
    ) -> None:
        registered = [i for i, image in images.items() if image.is_registered]
        edges = sorted(
            (
                (len(pair.inliers), pair.image_id1, pair.image_id2)
                for pair in view_graph.image_pairs.values()
                if pair.is_valid
                and pair.image_id1 in images
                and pair.image_id2 in images
                and images[pair.image_id1].is_registered
                and images[pair.image_id2].is_registered
            ),
            key=lambda edge: -edge[0],
        )
        uf = UnionFind()
        tree: dict[int, list[int]] = {}
        for _, a, b in edges:
            if uf.find(a) != uf.find(b):
                uf.union(a, b)
                tree.setdefault(a, []).append(b)
                tree.setdefault(b, []).append(a)

        root = next((i for i in registered if i in tree), registered[0])
        visited = {root}
        queue = deque([root])
        while queue:
            parent = queue.popleft()
            for child in tree.get(parent, ()):
                if child in visited:
                    continue
                visited.add(child)
                queue.append(child)
                pair = view_graph.image_pairs[image_pair_to_pair_id(child, parent)]
                parent_pose = images[parent].cam_from_world
                if pair.image_id1 == child:
                    pose = pair.cam2_from_cam1.inverse() * parent_pose
                else:
                    pose = pair.cam2_from_cam1 * parent_pose
                images[child].cam_from_world.rotation = pose.rotation.copy()

    # ------------------------------------------------------------------
    # Linear system
    # ------------------------------------------------------------------
    def _setup_linear_system(
        self, view_graph: ViewGraph, images: MutableMapping[int, Image]
    ) -> None:
        self._idx = {}
        self._pairs = {}
        if self._fixed_camera_id is not None and not (
            self._fixed_camera_id in images and images[self._fixed_camera_id].is_registered
        ):
            self._fixed_camera_id = None

        rotations: list[float] = []
        for image_id, image in images.items():
            if not image.is_registered:
                continue
            self._idx[image_id] = len(rotations)
            if self._uses_gravity(image):
                angle = _rot_up_to_angle(
                    _gravity_align(image.gravity).T @ image.cam_from_world.rotation_matrix()
                )
                rotations.append(angle)
                if self._fixed_camera_id is None:
                    self._fixed_camera_id = image_id
                    self._fixed_camera_rotation = np.array([0.0, angle, 0.0])
            else:
                rotations.extend(_rotation_to_angle_axis(image.cam_from_world.rotation_matrix()))

        if self._fixed_camera_id is None:
            image_id = next(iter(self._idx))
            self._fixed_camera_id = image_id
            self._fixed_camera_rotation = _rotation_to_angle_axis(
                images[image_id].cam_from_world.rotation_matrix()
            )

        num_dof = len(rotations)
        self._rotations = np.array(rotations, dtype=float)
        if self.options.verbose:
            logger.info("num_img: %d, num_dof: %d", len(self._idx), num_dof)

        counter = 0
        for pair_id, pair in view_graph.image_pairs.items():
            if not pair.is_valid or pair.image_id1 not in self._idx or pair.image_id2 not in self._idx:
                continue
            image1, image2 = images[pair.image_id1], images[pair.image_id2]
            info = _PairInfo(pair.image_id1, pair.image_id2)
            r_rel = pair.cam2_from_cam1.rotation_matrix()
            if self._uses_gravity(image1):
                r_rel = r_rel @ _gravity_align(image1.gravity)
            if self._uses_gravity(image2):
                r_rel = _gravity_align(image2.gravity).T @ r_rel
            info.R_rel = r_rel
            if self._uses_gravity(image1) and self._uses_gravity(image2):
                counter += 1
                aa = _rotation_to_angle_axis(r_rel)
                info.xz_error = float(aa[0] ** 2 + aa[2] ** 2)
                info.has_gravity = True
                info.angle_rel = float(aa[1])
            self._pairs[pair_id] = info

        if self.options.verbose:
            logger.info("%d image pairs are gravity aligned", counter)

        rows: list[int] = []
        cols: list[int] = []
        vals: list[float] = []

        def add(row: int, col: int, value: float) -> None:
            rows.append(row)
            cols.append(col)
            vals.append(value)

        pos = 0
        for info in self._pairs.values():
            idx1, idx2 = self._idx[info.image_id1], self._idx[info.image_id2]
            info.index = pos
            if info.has_gravity:
                add(pos, idx1, -1.0)
                add(pos, idx2, 1.0)
                pos += 1
                continue
            for idx, image_id, sign in ((idx1, info.image_id1, -1.0), (idx2, info.image_id2, 1.0)):
                if self._uses_gravity(images[image_id]):
                    # Only the rotation about the vertical axis is free.
                    add(pos + 1, idx, sign)
                else:
                    for k in range(3):
                        add(pos + k, idx + k, sign)
            pos += 3

        fixed_idx = self._idx[self._fixed_camera_id]
        self._fixed_has_gravity = self._uses_gravity(images[self._fixed_camera_id])
        if self._fixed_has_gravity:
            add(pos, fixed_idx, 1.0)
            pos += 1
        else:
            for k in range(3):
                add(pos + k, fixed_idx + k, 1.0)
            pos += 3

        self._matrix = csr_matrix((vals, (rows, cols)), shape=(pos, num_dof))
        self._step = np.zeros(num_dof)
        self._residual = np.zeros(pos)

    # ------------------------------------------------------------------
    # Solvers
    # ------------------------------------------------------------------
    def _solve_l1_regression(self, images: MutableMapping[int, Image]) -> bool:
        opts = self.options
        max_inner = _L1_INITIAL_ITERATIONS
        last_norm = curr_norm = 0.0
        self._compute_residuals(images)

        iteration = 0
        for iteration in range(opts.max_num_l1_iterations):
            if opts.verbose:
                logger.info("L1 ADMM iteration: %d", iteration)
            last_norm = curr_norm
            try:
                self._step = _l1_solve(self._matrix, self._residual.copy(), max_inner)
            except RuntimeError as exc:
                logger.error("L1 solver failed: %s", exc)
                return False
            if np.isnan(self._step).any():
                logger.error("nan error")
                return False
            if opts.verbose:
                logger.info(
                    "residual: %s",
                    float(np.abs(self._matrix @ self._step - self._residual).sum()),
                )
            curr_norm = float(np.linalg.norm(self._step))
            self._update_global_rotations(images)
            self._compute_residuals(images)

            converged_norm = abs(last_norm - curr_norm) < EPS
            if self._average_step_size(images) < opts.l1_step_convergence_threshold or converged_norm:
                if converged_norm:
                    logger.info("L1 step norm stopped changing")
                iteration += 1
                break
            max_inner = min(max_inner * 2, _L1_MAX_ITERATIONS)
        if opts.verbose:
            logger.info("L1 ADMM total iteration: %d", iteration)
        return True

    def _solve_irls(self, images: MutableMapping[int, Image]) -> bool:
        opts = self.options
        sigma = math.radians(opts.irls_loss_parameter_sigma)
        if opts.verbose:
            logger.info("sigma: %s", opts.irls_loss_parameter_sigma)

        weights = np.ones(self._matrix.shape[0])
        a = self._matrix
        self._compute_residuals(images)

        iteration = 0
        for iteration in range(opts.max_num_irls_iterations):
            if opts.verbose:
                logger.info("IRLS iteration: %d", iteration)
            for info in self._pairs.values():
                pos = info.index
                if info.has_gravity:
                    err_squared = self._residual[pos] ** 2 + info.xz_error
                else:
                    seg = self._residual[pos: pos + 3]
                    err_squared = float(seg @ seg)

                if opts.weight_type is WeightType.GEMAN_MCCLURE:
                    tmp = err_squared + sigma * sigma
                    w = sigma * sigma / (tmp * tmp)
                else:
                    with np.errstate(divide="ignore"):
                        w = float(np.power(err_squared, (0.5 - 2.0) / 2.0))

                if math.isnan(w):
                    logger.error("nan weight!")
                    return False
                if info.has_gravity:
                    weights[pos] = w
                else:
                    weights[pos: pos + 3] = w

            at_weight = a.T @ diags(weights)
            lhs = csc_matrix(at_weight @ a)
            self._step = np.atleast_1d(spsolve(lhs, at_weight @ self._residual)).astype(float)
            self._update_global_rotations(images)
            self._compute_residuals(images)

            if self._average_step_size(images) < opts.irls_step_convergence_threshold:
                iteration += 1
                break
        if opts.verbose:
            logger.info("IRLS total iteration: %d", iteration)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _estimated_rotation(self, image_id: int, image: Image) -> np.ndarray:
        idx = self._idx[image_id]
        if self._uses_gravity(image):
            return _angle_to_rot_up(self._rotations[idx])
        return _angle_axis_to_rotation(self._rotations[idx: idx + 3])

    def _update_global_rotations(self, images: MutableMapping[int, Image]) -> None:
        for image_id, image in images.items():
            if not image.is_registered:
                continue
            idx = self._idx[image_id]
            if self._uses_gravity(image):
                self._rotations[idx] -= self._step[idx]
            else:
                r_ori = _angle_axis_to_rotation(self._rotations[idx: idx + 3])
                self._rotations[idx: idx + 3] = _rotation_to_angle_axis(
                    r_ori @ _angle_axis_to_rotation(-self._step[idx: idx + 3])
                )

    def _compute_residuals(self, images: MutableMapping[int, Image]) -> None:
        for info in self._pairs.values():
            if info.has_gravity:
                self._residual[info.index] = rel_angle_error(
                    info.angle_rel,
                    self._rotations[self._idx[info.image_id1]],
                    self._rotations[self._idx[info.image_id2]],
                )
            else:
                r1 = self._estimated_rotation(info.image_id1, images[info.image_id1])
                r2 = self._estimated_rotation(info.image_id2, images[info.image_id2])
                self._residual[info.index: info.index + 3] = -_rotation_to_angle_axis(
                    r2.T @ info.R_rel @ r1
                )

        fixed_idx = self._idx[self._fixed_camera_id]
        if self._fixed_has_gravity:
            self._residual[-1] = self._rotations[fixed_idx] - self._fixed_camera_rotation[1]
        else:
            self._residual[-3:] = _rotation_to_angle_axis(
                _angle_axis_to_rotation(self._fixed_camera_rotation).T
                @ _angle_axis_to_rotation(self._rotations[fixed_idx: fixed_idx + 3])
            )

    def _average_step_size(self, images: MutableMapping[int, Image]) -> float:
        total = 0.0
        for image_id, image in images.items():
            if not image.is_registered:
                continue
            idx = self._idx[image_id]
            if self._uses_gravity(image):
                total += abs(self._step[idx])
            else:
                total += float(np.linalg.norm(self._step[idx: idx + 3]))
        return total / len(self._idx)


__all__ = ["RotationEstimator", "rel_angle_error", "Rigid3d"]