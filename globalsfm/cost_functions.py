"""Residual functions used by the global positioning, calibration and gravity stages."""

from __future__ import annotations

import numpy as np

_ZERO_DENOMINATOR = 1e-6


def _scalar(value) -> float:
    return float(np.ravel(np.asarray(value, dtype=float))[0])


class BATAPairwiseDirectionError:
    """Residual ``t_obs - scale * (position2 - position1)`` between a direction and two positions."""

    def __init__(self, translation_obs) -> None:
        self.translation_obs = np.asarray(translation_obs, dtype=float).reshape(3).copy()

    def __call__(self, position1, position2, scale) -> np.ndarray:
        translation = np.asarray(position2, dtype=float).reshape(3) - np.asarray(
            position1, dtype=float
        ).reshape(3)
        return self.translation_obs - _scalar(scale) * translation


def fetzer_d(ai, bi, aj, bj, u: int, v: int) -> np.ndarray:
    """Cross terms of the Kruppa ratios ``u`` and ``v`` as a 4-vector."""
    ai, bi, aj, bj = (np.asarray(x, dtype=float).reshape(3) for x in (ai, bi, aj, bj))
    return np.array(
        [
            ai[u] * aj[v] - ai[v] * aj[u],
            ai[u] * bj[v] - ai[v] * bj[u],
            bi[u] * aj[v] - bi[v] * aj[u],
            bi[u] * bj[v] - bi[v] * bj[u],
        ]
    )


def fetzer_ds(i1_G_i0) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """The three coefficient vectors (d_01, d_02, d_12) derived from the SVD of ``i1_G_i0``."""
    g = np.asarray(i1_G_i0, dtype=float).reshape(3, 3)
    u_mat, s, vh = np.linalg.svd(g)
    v_mat = vh.T

    v_0, v_1 = v_mat[:, 0], v_mat[:, 1]
    u_0, u_1 = u_mat[:, 0], u_mat[:, 1]

    ai = np.array(
        [
            s[0] * s[0] * (v_0[0] * v_0[0] + v_0[1] * v_0[1]),
            s[0] * s[1] * (v_0[0] * v_1[0] + v_0[1] * v_1[1]),
            s[1] * s[1] * (v_1[0] * v_1[0] + v_1[1] * v_1[1]),
        ]
    )
    aj = np.array(
        [
            u_1[0] * u_1[0] + u_1[1] * u_1[1],
            -(u_0[0] * u_1[0] + u_0[1] * u_1[1]),
            u_0[0] * u_0[0] + u_0[1] * u_0[1],
        ]
    )
    bi = np.array(
        [
            s[0] * s[0] * v_0[2] * v_0[2],
            s[0] * s[1] * v_0[2] * v_1[2],
            s[1] * s[1] * v_1[2] * v_1[2],
        ]
    )
    bj = np.array([u_1[2] * u_1[2], -(u_0[2] * u_1[2]), u_0[2] * u_0[2]])

    return (
        fetzer_d(ai, bi, aj, bj, 1, 0),
        fetzer_d(ai, bi, aj, bj, 0, 2),
        fetzer_d(ai, bi, aj, bj, 2, 1),
    )


def _principal_point_matrix(principal_point) -> np.ndarray:
    pp = np.asarray(principal_point, dtype=float).reshape(2)
    k = np.eye(3)
    k[0, 2] = pp[0]
    k[1, 2] = pp[1]
    return k


def _fetzer_residuals(d_01: np.ndarray, d_12: np.ndarray, fi: float, fj: float) -> np.ndarray:
    di = fj * fj * d_01[0] + d_01[1]
    dj = fi * fi * d_12[0] + d_12[2]
    if di == 0.0:
        di = _ZERO_DENOMINATOR
    if dj == 0.0:
        dj = _ZERO_DENOMINATOR
    k0_01 = -(fj * fj * d_01[2] + d_01[3]) / di
    k1_12 = -(fi * fi * d_12[1] + d_12[3]) / dj
    return np.array([(fi * fi - k0_01) / (fi * fi), (fj * fj - k1_12) / (fj * fj)])


class FetzerFocalLengthCost:
    """Focal length consistency of a fundamental matrix between two different cameras."""

    def __init__(self, i1_F_i0, principal_point0, principal_point1) -> None:
        k0 = _principal_point_matrix(principal_point0)
        k1 = _principal_point_matrix(principal_point1)
        g = k1.T @ np.asarray(i1_F_i0, dtype=float).reshape(3, 3) @ k0
        self.d_01, self.d_02, self.d_12 = fetzer_ds(g)

    def __call__(self, fi, fj) -> np.ndarray:
        return _fetzer_residuals(self.d_01, self.d_12, _scalar(fi), _scalar(fj))


class FetzerFocalLengthSameCameraCost:
    """Focal length consistency of a fundamental matrix between images of one camera."""

    def __init__(self, i1_F_i0, principal_point) -> None:
        k = _principal_point_matrix(principal_point)
        g = k.T @ np.asarray(i1_F_i0, dtype=float).reshape(3, 3) @ k
        self.d_01, self.d_02, self.d_12 = fetzer_ds(g)

    def __call__(self, fi) -> np.ndarray:
        f = _scalar(fi)
        return _fetzer_residuals(self.d_01, self.d_12, f, f)


class GravError:
    """Difference between an estimated and an observed gravity direction."""

    def __init__(self, grav_obs) -> None:
        self.grav_obs = np.asarray(grav_obs, dtype=float).reshape(3).copy()

    def __call__(self, gvec) -> np.ndarray:
        return np.asarray(gvec, dtype=float).reshape(3) - self.grav_obs