"""Gauss-Newton ICP in three flavours: point-to-point, point-to-line and point-to-plane."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from lidarodom.geometry import Pose, RegistrationError, cloud_center, so3_exp
from lidarodom.ndt3d import _hat_batch

logger = logging.getLogger(__name__)

PLANE_NEIGHBORS = 5
LINE_NEIGHBORS = 5
PLANE_FIT_EPS = 1e-2


@dataclass
class IcpOptions:
    max_iteration: int = 20
    max_nn_distance: float = 1.0  # compared with the squared point distance
    max_plane_distance: float = 0.05
    max_line_distance: float = 0.5
    min_effective_pts: int = 10
    eps: float = 1e-2
    use_initial_translation: bool = False


def _fit_planes(neighbors: np.ndarray, eps: float) -> tuple[np.ndarray, np.ndarray]:
    """Fit one plane per neighbourhood; return (coefficients (N, 4), success mask)."""
    ones = np.ones(neighbors.shape[:2] + (1,))
    _, _, vt = np.linalg.svd(np.concatenate([neighbors, ones], axis=2))
    coeffs = vt[:, -1, :]
    norm = np.linalg.norm(coeffs[:, :3], axis=1)
    ok = norm >= 1e-12
    coeffs = coeffs / np.where(ok, norm, 1.0)[:, None]
    dist = np.einsum("kpi,ki->kp", neighbors, coeffs[:, :3]) + coeffs[:, 3:4]
    ok &= np.all(np.abs(dist) <= eps, axis=1)
    return coeffs, ok


def _fit_lines(neighbors: np.ndarray, eps: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Fit one line per neighbourhood; return (origins, unit directions, success mask)."""
    origins = neighbors.mean(axis=1)
    centered = neighbors - origins[:, None, :]
    _, _, vt = np.linalg.svd(centered)
    directions = vt[:, 0, :]
    off_line = np.linalg.norm(np.cross(directions[:, None, :], centered), axis=2)
    return origins, directions, np.all(off_line <= eps, axis=1)


def _empty(rows: int) -> tuple[np.ndarray, np.ndarray]:
    return np.zeros((0, rows, 6)), np.zeros((0, rows))


class Icp3d:
    """Registers a source cloud onto a target: pose.apply(source) lands on the target."""

    def __init__(self, options: IcpOptions | None = None):
        self.options = options or IcpOptions()
        self.target: np.ndarray | None = None
        self.source: np.ndarray | None = None
        self.target_center = np.zeros(3)
        self.source_center = np.zeros(3)
        self.gt_pose: Pose | None = None
        self.pose_errors: list[float] = []
        self._tree: cKDTree | None = None

    def set_target(self, target) -> None:
        """Set the target cloud and build its k-d tree."""
        pts = np.asarray(target, dtype=float).reshape(-1, 3)
        self.target_center = cloud_center(pts)
        self.target = pts
        self._tree = cKDTree(pts)
        logger.info("target center: %s", self.target_center)

    def set_source(self, source) -> None:
        """Set the cloud to be registered."""
        pts = np.asarray(source, dtype=float).reshape(-1, 3)
        self.source_center = cloud_center(pts)
        self.source = pts
        logger.info("source center: %s", self.source_center)

    def set_ground_truth(self, pose: Pose) -> None:
        """Record a reference pose; alignment then logs and stores the error per iteration."""
        self.gt_pose = pose

    def _check_ready(self) -> None:
        if self.target is None or self._tree is None:
            raise RuntimeError("no target cloud set")
        if self.source is None:
            raise RuntimeError("no source cloud set")

    def _neighbors(self, qs: np.ndarray, k: int) -> tuple[np.ndarray, int]:
        count = min(k, len(self.target))
        _, idx = self._tree.query(qs, k=count)
        idx = np.asarray(idx).reshape(len(qs), count)
        return self.target[idx], count

    def _start(self, init_pose: Pose | None, use_center: bool) -> Pose:
        self._check_ready()
        pose = Pose() if init_pose is None else init_pose
        if use_center:
            pose = pose.with_translation(self.target_center - self.source_center)
            logger.info("init trans set to %s", pose.translation)
        return pose

    def _solve(self, pose: Pose, residuals: Callable[[Pose], tuple[np.ndarray, np.ndarray]]) -> Pose:
        opts = self.options
        self.pose_errors = []
        for iteration in range(opts.max_iteration):
            jac, err = residuals(pose)
            effective = len(err)
            if effective < opts.min_effective_pts:
                logger.warning("effective num too small: %d", effective)
                raise RegistrationError(f"only {effective} effective residuals")

            h = np.einsum("kia,kib->ab", jac, jac)
            b = -np.einsum("kia,ki->a", jac, err)
            dx = np.linalg.inv(h) @ b
            pose = Pose(pose.rotation @ so3_exp(dx[:3]), pose.translation + dx[3:])

            total_res = float(np.sum(err * err))
            dxn = float(np.linalg.norm(dx))
            logger.info(
                "iter %d total res: %g, eff: %d, mean res: %g, dxn: %g",
                iteration, total_res, effective, total_res / effective, dxn,
            )
            if self.gt_pose is not None:
                pose_error = float(np.linalg.norm(self.gt_pose.inverse().compose(pose).log()))
                self.pose_errors.append(pose_error)
                logger.info("iter %d pose error: %g", iteration, pose_error)

            if dxn < opts.eps:
                logger.info("converged, dx = %s", dx)
                break
        return pose

    def align_p2p(self, init_pose: Pose | None = None) -> Pose:
        """Point-to-point ICP; raise RegistrationError when too few matches remain."""
        logger.info("aligning with point to point")
        pose = self._start(init_pose, not self.options.use_initial_translation)
        q = self.source
        hat_q = _hat_batch(q)

        def residuals(current: Pose) -> tuple[np.ndarray, np.ndarray]:
            qs = current.apply(q)
            nbrs, _ = self._neighbors(qs, 1)
            e = nbrs[:, 0, :] - qs
            keep = np.einsum("ki,ki->k", e, e) <= self.options.max_nn_distance
            jac = np.zeros((int(keep.sum()), 3, 6))
            jac[:, :, :3] = current.rotation @ hat_q[keep]
            jac[:, :, 3:] = -np.eye(3)
            return jac, e[keep]

        return self._solve(pose, residuals)

    def align_p2plane(self, init_pose: Pose | None = None) -> Pose:
        """Point-to-plane ICP over planes fitted to the five nearest target points."""
        logger.info("aligning with point to plane")
        pose = self._start(init_pose, not self.options.use_initial_translation)
        q = self.source
        hat_q = _hat_batch(q)

        def residuals(current: Pose) -> tuple[np.ndarray, np.ndarray]:
            qs = current.apply(q)
            nbrs, count = self._neighbors(qs, PLANE_NEIGHBORS)
            if count <= 3:
                return _empty(1)
            planes, ok = _fit_planes(nbrs, PLANE_FIT_EPS)
            dis = np.einsum("ki,ki->k", planes[:, :3], qs) + planes[:, 3]
            keep = ok & (np.abs(dis) <= self.options.max_plane_distance)
            normals = planes[keep, :3]
            jac = np.zeros((len(normals), 1, 6))
            jac[:, 0, :3] = -np.einsum("ki,ij,kjl->kl", normals, current.rotation, hat_q[keep])
            jac[:, 0, 3:] = normals
            return jac, dis[keep][:, None]

        return self._solve(pose, residuals)

    def align_p2line(self, init_pose: Pose | None = None) -> Pose:
        """Point-to-line ICP over lines fitted to the five nearest target points.

        Here the centroid difference seeds the translation only when
        use_initial_translation is set.
        """
        logger.info("aligning with point to line")
        pose = self._start(init_pose, self.options.use_initial_translation)
        q = self.source
        hat_q = _hat_batch(q)

        def residuals(current: Pose) -> tuple[np.ndarray, np.ndarray]:
            qs = current.apply(q)
            nbrs, count = self._neighbors(qs, LINE_NEIGHBORS)
            if count != LINE_NEIGHBORS:
                return _empty(3)
            max_dist = self.options.max_line_distance
            origins, directions, ok = _fit_lines(nbrs, max_dist)
            err = np.cross(directions, qs - origins)
            keep = ok & (np.linalg.norm(err, axis=1) <= max_dist)
            hd = _hat_batch(directions[keep])
            jac = np.zeros((len(hd), 3, 6))
            jac[:, :, :3] = -hd @ current.rotation @ hat_q[keep]
            jac[:, :, 3:] = hd
            return jac, err[keep]

        return self._solve(pose, residuals)