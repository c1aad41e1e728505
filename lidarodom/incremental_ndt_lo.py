"""Lidar odometry backed by the incremental NDT voxel map."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from lidarodom.geometry import Pose, so3_log
from lidarodom.ndt_inc import IncNdt3d, IncNdtOptions, IncompleteAlignment

logger = logging.getLogger(__name__)

MAX_FRAMES_BETWEEN_KEYFRAMES = 10


@dataclass
class IncrementalNdtLoOptions:
    kf_distance: float = 0.5
    kf_angle_deg: float = 30.0
    ndt_options: IncNdtOptions = field(default_factory=IncNdtOptions)


class IncrementalNdtLo:
    """Aligns each scan to the incremental NDT map and inserts keyframes into it."""

    def __init__(self, options: IncrementalNdtLoOptions | None = None):
        self.options = options or IncrementalNdtLoOptions()
        self.ndt = IncNdt3d(self.options.ndt_options)
        self.estimated_poses: list[Pose] = []
        self.last_kf_pose = Pose()
        self._first_frame = True
        self._cnt_frame = 0

    def add_cloud(self, scan, guess: Pose | None = None) -> Pose:
        """Add a sensor-frame scan and return its pose; guess replaces the motion extrapolation."""
        scan = np.asarray(scan, dtype=float).reshape(-1, 3)
        if self._first_frame:
            self.last_kf_pose = Pose()
            self.ndt.add_cloud(scan)
            self._first_frame = False
            return Pose()

        self.ndt.set_source(scan)
        initial = Pose()
        if len(self.estimated_poses) >= 2:
            if guess is None:
                t1, t2 = self.estimated_poses[-1], self.estimated_poses[-2]
                initial = t1.compose(t2.inverse().compose(t1))
            else:
                initial = guess

        try:
            pose = self.ndt.align(initial)
        except IncompleteAlignment as exc:
            logger.warning("alignment incomplete: %s", exc)
            pose = exc.pose

        self.estimated_poses.append(pose)
        scan_world = pose.apply(scan)

        if self._is_keyframe(pose):
            self.last_kf_pose = pose
            self._cnt_frame = 0
            self.ndt.add_cloud(scan_world)

        self._cnt_frame += 1
        return pose

    def _is_keyframe(self, current: Pose) -> bool:
        if self._cnt_frame > MAX_FRAMES_BETWEEN_KEYFRAMES:
            return True
        delta = self.last_kf_pose.inverse().compose(current)
        return bool(
            np.linalg.norm(delta.translation) > self.options.kf_distance
            or np.linalg.norm(so3_log(delta.rotation)) > np.deg2rad(self.options.kf_angle_deg)
        )