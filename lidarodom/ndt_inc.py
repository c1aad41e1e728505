"""Incremental NDT: a bounded, least-recently-updated voxel map whose Gaussians grow with new scans."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field

import numpy as np

from lidarodom.geometry import Pose, RegistrationError, mean_and_cov, so3_exp
from lidarodom.ndt3d import NearbyType, _encode, _hat_batch, _voxel_keys

logger = logging.getLogger(__name__)

INFO_RATIO = 0.01
SINGLE_POINT_INFO = 1e2
COV_REGULARIZATION = 1e-3
MIN_SINGULAR_RATIO = 1e-3


@dataclass
class IncNdtOptions:
    max_iteration: int = 4
    voxel_size: float = 1.0
    min_effective_pts: int = 10
    min_pts_in_voxel: int = 5
    max_pts_in_voxel: int = 50
    eps: float = 1e-3
    res_outlier_th: float = 5.0
    capacity: int = 100000
    nearby_type: NearbyType = field(default=NearbyType.NEARBY6)

    @property
    def inv_voxel_size(self) -> float:
        return 1.0 / self.voxel_size


def _zeros3() -> np.ndarray:
    return np.zeros(3)


def _zeros33() -> np.ndarray:
    return np.zeros((3, 3))


@dataclass(eq=False)
class VoxelData:
    """Points waiting in one voxel and the Gaussian estimated from them so far."""

    pts: list[np.ndarray] = field(default_factory=list)
    mu: np.ndarray = field(default_factory=_zeros3)
    sigma: np.ndarray = field(default_factory=_zeros33)
    info: np.ndarray = field(default_factory=_zeros33)
    ndt_estimated: bool = False
    num_pts: int = 0

    @classmethod
    def from_point(cls, point) -> "VoxelData":
        return cls(pts=[np.asarray(point, dtype=float).reshape(3)], num_pts=1)

    def add_point(self, point) -> None:
        """Queue a point; it counts toward num_pts only until the Gaussian is estimated."""
        self.pts.append(np.asarray(point, dtype=float).reshape(3))
        if not self.ndt_estimated:
            self.num_pts += 1


class IncompleteAlignment(RegistrationError):
    """Alignment stopped for lack of residuals; pose is the estimate reached so far."""

    def __init__(self, message: str, pose: Pose):
        super().__init__(message)
        self.pose = pose


def _merge_mean_and_cov(m: int, n: int, hist_mu, hist_var, cur_mu, cur_var):
    new_mu = (m * hist_mu + n * cur_mu) / (m + n)
    dh = hist_mu - new_mu
    dc = cur_mu - new_mu
    new_var = (m * (hist_var + np.outer(dh, dh)) + n * (cur_var + np.outer(dc, dc))) / (m + n)
    return new_mu, new_var


def _svd_info(sigma: np.ndarray) -> np.ndarray:
    u, s, vh = np.linalg.svd(sigma)
    floor = s[0] * MIN_SINGULAR_RATIO
    s = np.where(s < floor, floor, s)
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_s = 1.0 / s
    return vh.T @ np.diag(inv_s) @ u.T


class IncNdt3d:
    """NDT whose voxel map is built incrementally and capped at options.capacity voxels."""

    def __init__(self, options: IncNdtOptions | None = None):
        self.options = options or IncNdtOptions()
        # Ordered from least to most recently updated.
        self.grids: OrderedDict[tuple[int, int, int], VoxelData] = OrderedDict()
        self.source: np.ndarray | None = None
        self._first_scan = True

    def num_grids(self) -> int:
        return len(self.grids)

    def add_cloud(self, cloud_world) -> None:
        """Insert world-frame points into the voxel map and refresh the touched voxels."""
        pts = np.asarray(cloud_world, dtype=float).reshape(-1, 3)
        keys = _voxel_keys(pts, self.options.inv_voxel_size)
        active: set[tuple[int, int, int]] = set()
        for point, key in zip(pts, map(tuple, keys.tolist())):
            voxel = self.grids.get(key)
            if voxel is None:
                self.grids[key] = VoxelData.from_point(point)
                if len(self.grids) >= self.options.capacity:
                    self.grids.popitem(last=False)
            else:
                voxel.add_point(point)
                self.grids.move_to_end(key)
            active.add(key)

        for key in active:
            voxel = self.grids.get(key)
            if voxel is not None:
                self._update_voxel(voxel)
        self._first_scan = False

    def _update_voxel(self, v: VoxelData) -> None:
        opts = self.options
        if self._first_scan:
            if len(v.pts) > 1:
                v.mu, v.sigma = mean_and_cov(v.pts)
                v.info = np.linalg.inv(v.sigma + np.eye(3) * COV_REGULARIZATION)
            else:
                v.mu = v.pts[0].copy()
                v.info = np.eye(3) * SINGLE_POINT_INFO
            v.ndt_estimated = True
            v.pts.clear()
            return

        if v.ndt_estimated and v.num_pts > opts.max_pts_in_voxel:
            return

        if not v.ndt_estimated and len(v.pts) > opts.min_pts_in_voxel:
            v.mu, v.sigma = mean_and_cov(v.pts)
            v.info = np.linalg.inv(v.sigma + np.eye(3) * COV_REGULARIZATION)
            v.ndt_estimated = True
            v.pts.clear()
        elif v.ndt_estimated and len(v.pts) > opts.min_pts_in_voxel:
            cur_mu, cur_var = mean_and_cov(v.pts)
            v.mu, v.sigma = _merge_mean_and_cov(v.num_pts, len(v.pts), v.mu, v.sigma, cur_mu, cur_var)
            v.num_pts += len(v.pts)
            v.pts.clear()
            v.info = _svd_info(v.sigma)

    def set_source(self, source) -> None:
        """Set the cloud to be registered."""
        self.source = np.asarray(source, dtype=float).reshape(-1, 3)

    def _check_ready(self) -> None:
        if not self.grids:
            raise RuntimeError("voxel map is empty; add a cloud first")
        if self.source is None:
            raise RuntimeError("no source cloud set")

    def _snapshot(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        estimated = [(k, v) for k, v in self.grids.items() if v.ndt_estimated]
        if not estimated:
            return np.zeros(0, dtype=np.int64), np.zeros((0, 3)), np.zeros((0, 3, 3))
        keys = np.array([k for k, _ in estimated], dtype=np.int64)
        codes = _encode(keys)
        order = np.argsort(codes)
        mu = np.array([v.mu for _, v in estimated])[order]
        info = np.array([v.info for _, v in estimated])[order]
        return codes[order], mu, info

    def _correspondences(self, pose: Pose, snapshot):
        codes_sorted, mu, infos = snapshot
        opts = self.options
        qs = pose.apply(self.source)
        offsets = opts.nearby_type.offsets
        n, k = len(qs), len(offsets)
        if len(codes_sorted) == 0 or n == 0:
            return np.zeros(0, dtype=int), np.zeros((0, 3)), np.zeros((0, 3, 3)), np.zeros(0)

        keys = _voxel_keys(qs, opts.inv_voxel_size)
        codes = _encode((keys[:, None, :] + offsets[None, :, :]).reshape(-1, 3))
        point_idx = np.repeat(np.arange(n), k)
        pos = np.searchsorted(codes_sorted, codes)
        pos_clipped = np.minimum(pos, len(codes_sorted) - 1)
        found = (pos < len(codes_sorted)) & (codes_sorted[pos_clipped] == codes)

        pi, vi = point_idx[found], pos_clipped[found]
        e = qs[pi] - mu[vi]
        info = infos[vi]
        with np.errstate(invalid="ignore", over="ignore"):
            res = np.einsum("ki,kij,kj->k", e, info, e)
            keep = ~np.isnan(res) & (res <= opts.res_outlier_th)
        return pi[keep], e[keep], info[keep], res[keep]

    def align(self, init_pose: Pose | None = None) -> Pose:
        """Register the source onto the voxel map; raise IncompleteAlignment on too few residuals."""
        self._check_ready()
        opts = self.options
        logger.info("aligning with inc ndt, pts: %d, grids: %d", len(self.source), len(self.grids))
        pose = Pose() if init_pose is None else init_pose
        snapshot = self._snapshot()
        hat_q = _hat_batch(self.source)

        for iteration in range(opts.max_iteration):
            pi, e, info, res = self._correspondences(pose, snapshot)
            effective = len(pi)
            if effective < opts.min_effective_pts:
                logger.warning("effective num too small: %d", effective)
                raise IncompleteAlignment(f"only {effective} effective residuals", pose)

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
            if np.linalg.norm(dx) < opts.eps:
                logger.info("converged, dx = %s", dx)
                break
        return pose

    def compute_residual_and_jacobians(self, pose: Pose) -> tuple[np.ndarray, np.ndarray]:
        """Return (H^T V^-1 H, H^T V^-1 r) over the 18-dim error state (p, v, theta, bg, ba, g)."""
        self._check_ready()
        pi, e, info, _ = self._correspondences(pose, self._snapshot())
        hat_q = _hat_batch(self.source[pi])
        jac = np.zeros((len(pi), 3, 18))
        jac[:, :, 0:3] = np.eye(3)
        jac[:, :, 6:9] = -pose.rotation @ hat_q
        htvh = np.einsum("kia,kij,kjb->ab", jac, info, jac) * INFO_RATIO
        htvr = -np.einsum("kia,kij,kj->a", jac, info, e) * INFO_RATIO
        logger.info("effective: %d", len(pi))
        return htvh, htvr