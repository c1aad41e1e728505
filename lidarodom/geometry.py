"""Rigid-body geometry and small point-cloud helpers shared by the registration code."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation


class RegistrationError(RuntimeError):
    """Raised when a registration cannot collect enough valid correspondences."""


def hat(v) -> np.ndarray:
    """Return the skew-symmetric matrix of a 3-vector, so that hat(v) @ w == v x w."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def so3_exp(v) -> np.ndarray:
    """Rotation matrix of a rotation vector."""
    return Rotation.from_rotvec(np.asarray(v, dtype=float).reshape(3)).as_matrix()


def so3_log(rotation) -> np.ndarray:
    """Rotation vector (angle in [0, pi]) of a rotation matrix."""
    return Rotation.from_matrix(np.asarray(rotation, dtype=float).reshape(3, 3)).as_rotvec()


def _identity_rotation() -> np.ndarray:
    return np.eye(3)


def _zero_translation() -> np.ndarray:
    return np.zeros(3)


@dataclass(frozen=True, eq=False)
class Pose:
    """A rigid transform x -> rotation @ x + translation."""

    rotation: np.ndarray = field(default_factory=_identity_rotation)
    translation: np.ndarray = field(default_factory=_zero_translation)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rotation", np.array(self.rotation, dtype=float).reshape(3, 3))
        object.__setattr__(self, "translation", np.array(self.translation, dtype=float).reshape(3))

    @classmethod
    def identity(cls) -> "Pose":
        return cls()

    @classmethod
    def from_matrix(cls, matrix) -> "Pose":
        m = np.asarray(matrix, dtype=float).reshape(4, 4)
        return cls(m[:3, :3], m[:3, 3])

    def with_translation(self, translation) -> "Pose":
        return Pose(self.rotation, translation)

    def with_rotation(self, rotation) -> "Pose":
        return Pose(rotation, self.translation)

    def inverse(self) -> "Pose":
        rt = self.rotation.T
        return Pose(rt, -rt @ self.translation)

    def compose(self, other: "Pose") -> "Pose":
        """Return self * other: apply other first, then self."""
        return Pose(self.rotation @ other.rotation, self.rotation @ other.translation + self.translation)

    def __matmul__(self, other: "Pose") -> "Pose":
        return self.compose(other)

    def apply(self, points) -> np.ndarray:
        """Transform one point of shape (3,) or an array of shape (N, 3)."""
        p = np.asarray(points, dtype=float)
        return p @ self.rotation.T + self.translation

    def matrix(self) -> np.ndarray:
        m = np.eye(4)
        m[:3, :3] = self.rotation
        m[:3, 3] = self.translation
        return m

    def log(self) -> np.ndarray:
        """Tangent vector [upsilon, omega] of the transform."""
        omega = so3_log(self.rotation)
        theta = float(np.linalg.norm(omega))
        w = hat(omega)
        w2 = w @ w
        if theta < 1e-10:
            v_inv = np.eye(3) - 0.5 * w + w2 / 12.0
        else:
            half = theta * np.sin(theta) / (2.0 * (1.0 - np.cos(theta)))
            v_inv = np.eye(3) - 0.5 * w + (1.0 - half) / (theta * theta) * w2
        return np.concatenate([v_inv @ self.translation, omega])

    def __repr__(self) -> str:
        return f"Pose(translation={self.translation.tolist()}, rotvec={so3_log(self.rotation).tolist()})"


def _empty_or(values, size: int, dtype) -> np.ndarray:
    if values is None:
        return np.zeros(size, dtype=dtype)
    return np.asarray(values, dtype=dtype).reshape(-1)


@dataclass(eq=False)
class FullCloud:
    """A lidar scan with per-point intensity, ring index and time offset (ms)."""

    points: np.ndarray
    intensity: np.ndarray | None = None
    ring: np.ndarray | None = None
    time: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        n = len(self.points)
        self.intensity = _empty_or(self.intensity, n, float)
        self.ring = _empty_or(self.ring, n, int)
        self.time = _empty_or(self.time, n, float)
        for name in ("intensity", "ring", "time"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"{name} has {len(getattr(self, name))} entries, expected {n}")

    def __len__(self) -> int:
        return len(self.points)


def _as_points(points) -> np.ndarray:
    return np.asarray(points, dtype=float).reshape(-1, 3)


def cloud_center(points) -> np.ndarray:
    """Centroid of a cloud."""
    pts = _as_points(points)
    if len(pts) == 0:
        raise ValueError("cannot compute the center of an empty cloud")
    return pts.mean(axis=0)


def mean_and_cov(points) -> tuple[np.ndarray, np.ndarray]:
    """Sample mean and unbiased covariance of at least two points."""
    pts = _as_points(points)
    if len(pts) < 2:
        raise ValueError("at least two points are needed for a covariance")
    mean = pts.mean(axis=0)
    centered = pts - mean
    return mean, centered.T @ centered / (len(pts) - 1)


def fit_plane(points, eps: float = 1e-2) -> np.ndarray | None:
    """Fit a plane n.x + d = 0 with unit n; None if any point is farther than eps."""
    pts = _as_points(points)
    if len(pts) < 3:
        return None
    a = np.hstack([pts, np.ones((len(pts), 1))])
    _, _, vt = np.linalg.svd(a)
    coeffs = vt[-1]
    norm = np.linalg.norm(coeffs[:3])
    if norm < 1e-12:
        return None
    coeffs = coeffs / norm
    if np.any(np.abs(pts @ coeffs[:3] + coeffs[3]) > eps):
        return None
    return coeffs


def fit_line(points, eps: float = 0.2) -> tuple[np.ndarray, np.ndarray] | None:
    """Fit a line as (origin, unit direction); None if any point is farther than eps."""
    pts = _as_points(points)
    if len(pts) < 2:
        return None
    origin = pts.mean(axis=0)
    centered = pts - origin
    _, _, vt = np.linalg.svd(centered)
    direction = vt[0]
    if np.any(np.linalg.norm(np.cross(direction, centered), axis=1) > eps):
        return None
    return origin, direction


def voxel_filter(points, leaf_size: float) -> np.ndarray:
    """Replace the points of every cubic voxel of side leaf_size by their centroid."""
    if leaf_size <= 0:
        raise ValueError("leaf_size must be positive")
    pts = _as_points(points)
    if len(pts) == 0:
        return pts.copy()
    keys = np.floor(pts / leaf_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), 3))
    np.add.at(sums, inverse, pts)
    return sums / counts[:, None]