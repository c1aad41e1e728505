"""Normal distributions transform (NDT) registration against a voxelised target cloud."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from lidarodom.geometry import Pose, RegistrationError, cloud_center, so3_exp

logger = logging.getLogger(__name__)

_KEY_OFFSET = 1 << 20
_KEY_SPAN = 1 << 21


class NearbyType(Enum):
    """Which voxels around a query point contribute residuals."""

    CENTER = "center"
    NEARBY6 = "nearby6"

    @property
    def offsets(self) -> np.ndarray:
        if self is NearbyType.CENTER:
            return np.zeros((1, 3), dtype=np.int64)
        return np.array(
            [(0, 0, 0), (-1, 0, 0), (1, 0, 0), (0, 1, 0), (0, -1, 0), (0, 0, -1), (0, 0, 1)],
            dtype=np.int64,
        )


@dataclass
class NdtOptions:
    max_iteration: int = 20
    voxel_size: float = 1.0
    min_effective_pts: int = 10
    min_pts_in_voxel: int = 3
    eps: float = 1e-2
    res_outlier_th: float = 20.0
    remove_centroid: bool = False
    nearby_type: NearbyType = field(default=NearbyType.NEARBY6)

    @property
    def inv_voxel_size(self) -> float:
        return 1.0 / self.voxel_size


def _voxel_keys(points: np.ndarray, inv_voxel_size: float) -> np.ndarray:
    """Integer voxel keys, truncating toward zero."""
    return np.trunc(points * inv_voxel_size).astype(np.int64)


def _encode(keys: np.ndarray) -> np.ndarray:
    k = keys + _KEY_OFFSET
    return (k[:, 0] * _KEY_SPAN + k[:, 1]) * _KEY_SPAN + k[:, 2]


def _hat_batch(v: np.ndarray) -> np.ndarray:
    out = np.zeros((len(v), 3, 3))
    x, y, z = v[:, 0], v[:, 1], v[:, 2]
    out[:, 0, 1], out[:, 0, 2] = -z, y
    out[:, 1, 0], out[:, 1, 2] = z, -x
    out[:, 2, 0], out[:, 2, 1] = -y, x
    return out


def _as_cloud(points) -> np.ndarray:
    return np.asarray(points, dtype=float).reshape(-1, 3)


class Ndt3d:
    """Gauss-Newton NDT: registers a source cloud onto the voxel Gaussians of a target."""

    def __init__(self, options: NdtOptions | None = None):
        self.options = options or NdtOptions()
        self.target: np.ndarray | None = None
        self.source: np.ndarray | None = None
        self.target_center = np.zeros(3)
        self.source_center = np.zeros(3)
        self.gt_pose: Pose | None = None
        self.pose_errors: list[float] = []
        self._codes: np.ndarray | None = None
        self._mu = np.zeros((0, 3))
        self._info = np.zeros((0, 3, 3))

    @property
    def num_voxels(self) -> int:
        return 0 if self._codes is None else len(self._codes)

    def set_target(self, target) -> None:
        """Set the target cloud and build its voxel Gaussians."""
        pts = _as_cloud(target)
        if len(pts) == 0:
            raise ValueError("target cloud is empty")
        self.target = pts
        self._build_voxels()
        self.target_center = cloud_center(pts)

    def set_source(self, source) -> None:
        """Set the cloud to be registered."""
        pts = _as_cloud(source)
        self.source_center = cloud_center(pts)
        self.source = pts

    def set_ground_truth(self, pose: Pose) -> None:
        """Record a reference pose; alignment then logs and stores the error per iteration."""
        self.gt_pose = pose

    def _build_voxels(self) -> None:
        pts = self.target
        keys = _voxel_keys(pts, self.options.inv_voxel_size)
        codes = _encode(keys)
        unique, inverse, counts = np.unique(codes, return_inverse=True, return_counts=True)
        inverse = inverse.reshape(-1)

        sums = np.zeros((len(unique), 3))
        np.add.at(sums, inverse, pts)
        outer = np.zeros((len(unique), 3, 3))
        np.add.at(outer, inverse, pts[:, :, None] * pts[:, None, :])

        keep = counts > self.options.min_pts_in_voxel
        unique, sums, outer, n = unique[keep], sums[keep], outer[keep], counts[keep].astype(float)
        mu = sums / n[:, None]
        sigma = (outer - n[:, None, None] * mu[:, :, None] * mu[:, None, :]) / (n[:, None, None] - 1.0)

        if len(unique):
            u, s, vh = np.linalg.svd(sigma)
            floor = s[:, :1] * 1e-3
            s = np.where(s < floor, floor, s)
            with np.errstate(divide="ignore", invalid="ignore"):
                inv_s = 1.0 / s
            info = np.swapaxes(vh, 1, 2) @ (inv_s[:, :, None] * np.swapaxes(u, 1, 2))
        else:
            info = np.zeros((0, 3, 3))

        self._codes, self._mu, self._info = unique, mu, info

    def align(self, init_pose: Pose | None = None) -> Pose:
        """Register the source onto the target starting from init_pose; return the pose."""
        if self._codes is None or len(self._codes) == 0:
            raise RuntimeError("no target voxels; set a target with enough points first")
        if self.source is None:
            raise RuntimeError("no source cloud set")
        opts = self.options
        pose = Pose() if init_pose is None else init_pose
        if opts.remove_centroid:
            pose = pose.with_translation(self.target_center - self.source_center)
            logger.info("init trans set to %s", pose.translation)

        q = self.source
        offsets = opts.nearby_type.offsets
        n, k = len(q), len(offsets)
        point_idx = np.repeat(np.arange(n), k)
        hat_q = _hat_batch(q)
        self.pose_errors = []

        for iteration in range(opts.max_iteration):
            qs = pose.apply(q)
            keys = _voxel_keys(qs, opts.inv_voxel_size)
            cand = (keys[:, None, :] + offsets[None, :, :]).reshape(-1, 3)
            codes = _encode(cand)
            pos = np.searchsorted(self._codes, codes)
            pos_clipped = np.minimum(pos, len(self._codes) - 1)
            found = (pos < len(self._codes)) & (self._codes[pos_clipped] == codes)

            pi, vi = point_idx[found], pos_clipped[found]
            e = qs[pi] - self._mu[vi]
            info = self._info[vi]
            with np.errstate(invalid="ignore", over="ignore"):
                res = np.einsum("ki,kij,kj->k", e, info, e)
                keep = ~np.isnan(res) & (res <= opts.res_outlier_th)

            effective = int(keep.sum())
            if effective < opts.min_effective_pts:
                logger.warning("effective num too small: %d", effective)
                raise RegistrationError(f"only {effective} effective residuals")

            pi, e, info, res = pi[keep], e[keep], info[keep], res[keep]
            jac = np.zeros((effective, 3, 6))
            jac[:, :, :3] = -pose.rotation @ hat_q[pi]
            jac[:, :, 3:] = np.eye(3)

            h = np.einsum("kia,kij,kjb->ab", jac, info, jac)
            b = -np.einsum("kia,kij,kj->a", jac, info, e)
            dx = np.linalg.inv(h) @ b
            pose = Pose(pose.rotation @ so3_exp(dx[:3]), pose.translation + dx[3:])

            total_res = float(res.sum())
            logger.info(
                "iter %d total res: %g, eff: %d, mean res: %g, dxn: %g",
                iteration, total_res, effective, total_res / effective, np.linalg.norm(dx),
            )
            if self.gt_pose is not None:
                err = float(np.linalg.norm(self.gt_pose.inverse().compose(pose).log()))
                self.pose_errors.append(err)
                logger.info("iter %d pose error: %g", iteration, err)

            if np.linalg.norm(dx) < opts.eps:
                logger.info("converged, dx = %s", dx)
                break

        return pose