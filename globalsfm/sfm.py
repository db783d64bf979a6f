"""Scene containers for global structure-from-motion: poses, cameras, images, pairs, tracks."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np

MAX_NUM_IMAGES = 2147483647


class TwoViewGeometryConfig(enum.IntEnum):
    """Kind of two-view geometry estimated for an image pair."""

    UNDEFINED = 0
    DEGENERATE = 1
    CALIBRATED = 2
    UNCALIBRATED = 3
    PLANAR = 4
    PANORAMIC = 5
    PLANAR_OR_PANORAMIC = 6
    WATERMARK = 7
    MULTIPLE = 8


def _quat_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    aw, ax, ay, az = a
    bw, bx, by, bz = b
    return np.array(
        [
            aw * bw - ax * bx - ay * by - az * bz,
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
        ]
    )


def _quat_to_matrix(q: np.ndarray) -> np.ndarray:
    w, x, y, z = q
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ]
    )


@dataclass(eq=False)
class Rigid3d:
    """Rigid transform; ``rotation`` is a unit quaternion stored as (w, x, y, z)."""

    rotation: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0]))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        q = np.asarray(self.rotation, dtype=float).reshape(4)
        norm = np.linalg.norm(q)
        if norm == 0.0:
            raise ValueError("rotation quaternion must be non-zero")
        self.rotation = q / norm
        self.translation = np.asarray(self.translation, dtype=float).reshape(3).copy()

    def rotation_matrix(self) -> np.ndarray:
        """Return the 3x3 rotation matrix."""
        return _quat_to_matrix(self.rotation)

    def inverse(self) -> Rigid3d:
        """Return the inverse transform."""
        w, x, y, z = self.rotation
        conj = np.array([w, -x, -y, -z])
        return Rigid3d(conj, -(_quat_to_matrix(conj) @ self.translation))

    def apply(self, point) -> np.ndarray:
        """Transform a 3D point."""
        return self.rotation_matrix() @ np.asarray(point, dtype=float) + self.translation

    def __mul__(self, other):
        if not isinstance(other, Rigid3d):
            return NotImplemented
        return Rigid3d(
            _quat_multiply(self.rotation, other.rotation),
            self.rotation_matrix() @ other.translation + self.translation,
        )


# model name -> (number of params, focal indices, principal point indices)
_CAMERA_MODELS: dict[str, tuple[int, tuple[int, ...], tuple[int, ...]]] = {
    "SIMPLE_PINHOLE": (3, (0,), (1, 2)),
    "PINHOLE": (4, (0, 1), (2, 3)),
    "SIMPLE_RADIAL": (4, (0,), (1, 2)),
    "RADIAL": (5, (0,), (1, 2)),
    "OPENCV": (8, (0, 1), (2, 3)),
    "OPENCV_FISHEYE": (8, (0, 1), (2, 3)),
    "FULL_OPENCV": (12, (0, 1), (2, 3)),
    "SIMPLE_RADIAL_FISHEYE": (4, (0,), (1, 2)),
    "RADIAL_FISHEYE": (5, (0,), (1, 2)),
    "THIN_PRISM_FISHEYE": (12, (0, 1), (2, 3)),
}


@dataclass(eq=False)
class Camera:
    """Camera intrinsics with a named model and its parameter vector."""

    camera_id: int
    model: str = "SIMPLE_PINHOLE"
    width: int = 0
    height: int = 0
    params: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))
    has_prior_focal_length: bool = False
    has_refined_focal_length: bool = False

    def __post_init__(self) -> None:
        if self.model not in _CAMERA_MODELS:
            raise ValueError(f"unsupported camera model: {self.model}")
        self.params = np.asarray(self.params, dtype=float).reshape(-1).copy()
        expected = _CAMERA_MODELS[self.model][0]
        if self.params.size != expected:
            raise ValueError(
                f"camera model {self.model} takes {expected} params, got {self.params.size}"
            )

    def focal_length_idxs(self) -> list[int]:
        """Indices of the focal length parameters."""
        return list(_CAMERA_MODELS[self.model][1])

    def principal_point_idxs(self) -> list[int]:
        """Indices of the principal point parameters."""
        return list(_CAMERA_MODELS[self.model][2])

    def focal(self) -> float:
        """Mean focal length."""
        return float(np.mean(self.params[self.focal_length_idxs()]))

    def principal_point(self) -> np.ndarray:
        """Principal point (cx, cy)."""
        return self.params[self.principal_point_idxs()].copy()


@dataclass(eq=False)
class Image:
    """An image with its pose, features and registration state."""

    image_id: int
    camera_id: int
    file_name: str = ""
    cam_from_world: Rigid3d = field(default_factory=Rigid3d)
    is_registered: bool = False
    features: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    features_undist: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    gravity: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.features = np.asarray(self.features, dtype=float).reshape(-1, 2)
        self.features_undist = np.asarray(self.features_undist, dtype=float).reshape(-1, 3)
        if self.gravity is not None:
            self.gravity = np.asarray(self.gravity, dtype=float).reshape(3)

    def center(self) -> np.ndarray:
        """Camera center in world coordinates."""
        return self.cam_from_world.inverse().translation


def image_pair_to_pair_id(image_id1: int, image_id2: int) -> int:
    """Order-independent identifier of an image pair."""
    if image_id1 > image_id2:
        image_id1, image_id2 = image_id2, image_id1
    return MAX_NUM_IMAGES * image_id1 + image_id2


@dataclass(eq=False)
class ImagePair:
    """Two-view relation between two images."""

    image_id1: int
    image_id2: int
    is_valid: bool = True
    config: TwoViewGeometryConfig = TwoViewGeometryConfig.UNDEFINED
    cam2_from_cam1: Rigid3d = field(default_factory=Rigid3d)
    F: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    E: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    H: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    matches: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=int))
    inliers: list[int] = field(default_factory=list)
    pair_id: int = field(init=False)

    def __post_init__(self) -> None:
        self.pair_id = image_pair_to_pair_id(self.image_id1, self.image_id2)
        self.matches = np.asarray(self.matches, dtype=np.int64).reshape(-1, 2)
        self.F = np.asarray(self.F, dtype=float).reshape(3, 3)
        self.E = np.asarray(self.E, dtype=float).reshape(3, 3)
        self.H = np.asarray(self.H, dtype=float).reshape(3, 3)


@dataclass
class ViewGraph:
    """Image pairs keyed by pair id."""

    image_pairs: dict[int, ImagePair] = field(default_factory=dict)

    def adjacency_list(self) -> dict[int, set[int]]:
        """Neighbouring images of each image through valid pairs."""
        adjacency: dict[int, set[int]] = {}
        for pair in self.image_pairs.values():
            if not pair.is_valid:
                continue
            adjacency.setdefault(pair.image_id1, set()).add(pair.image_id2)
            adjacency.setdefault(pair.image_id2, set()).add(pair.image_id1)
        return adjacency


@dataclass(eq=False)
class Track:
    """A 3D point with the image features observing it."""

    track_id: int = 0
    xyz: np.ndarray = field(default_factory=lambda: np.zeros(3))
    is_initialized: bool = False
    observations: list[tuple[int, int]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.xyz = np.asarray(self.xyz, dtype=float).reshape(3).copy()