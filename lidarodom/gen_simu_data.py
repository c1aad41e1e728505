"""Synthetic box-shaped point clouds with a known rigid transform between them."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from lidarodom.geometry import Pose, so3_exp


@dataclass
class SimulationOptions:
    num_points: int = 2000
    width: float = 5.0  # half extent along y
    length: float = 10.0  # half extent along x
    height: float = 1.0  # half extent along z
    pose_rot_sigma: float = 0.05
    pose_trans_sigma: float = 0.3
    seed: int | None = 0


@dataclass(frozen=True, eq=False)
class SimulatedScene:
    """Target cloud, source cloud and the true pose mapping target into source."""

    target: np.ndarray
    source: np.ndarray
    pose: Pose


# (axis, sign) for each of the six faces of the box.
_FACES = ((2, -1.0), (2, 1.0), (0, -1.0), (0, 1.0), (1, -1.0), (1, 1.0))


class SimulationGenerator:
    """Samples points on the surface of a box and moves them by a random pose."""

    def __init__(self, options: SimulationOptions | None = None):
        self.options = options or SimulationOptions()
        self.target: np.ndarray | None = None
        self.source: np.ndarray | None = None
        self.pose: Pose = Pose()

    def _generate_target(self, rng: np.random.Generator) -> np.ndarray:
        o = self.options
        half = np.array([o.length, o.width, o.height])
        faces = rng.integers(0, 6, size=o.num_points)
        points = rng.uniform(-half, half, size=(o.num_points, 3))
        for face, (axis, sign) in enumerate(_FACES):
            points[faces == face, axis] = sign * half[axis]
        return points

    def generate(self) -> SimulatedScene:
        """Generate target and source clouds and the ground-truth pose."""
        o = self.options
        rng = np.random.default_rng(o.seed)
        target = self._generate_target(rng)
        rot = rng.normal(0.0, o.pose_rot_sigma, size=3)
        trans = rng.normal(0.0, o.pose_trans_sigma, size=3)
        pose = Pose(so3_exp(rot), trans)
        source = pose.apply(target)
        self.target, self.source, self.pose = target, source, pose
        return SimulatedScene(target=target, source=source, pose=pose)