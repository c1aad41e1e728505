import numpy as np
import pytest

from lidarodom.gen_simu_data import SimulationGenerator, SimulationOptions
from lidarodom.geometry import Pose, so3_exp
from lidarodom.incremental_ndt_lo import IncrementalNdtLo, IncrementalNdtLoOptions
from lidarodom.ndt3d import NearbyType
from lidarodom.ndt_inc import IncNdtOptions


@pytest.fixture(scope="module")
def box():
    return SimulationGenerator(SimulationOptions(num_points=10000, seed=2)).generate().target


def _make_lo() -> IncrementalNdtLo:
    return IncrementalNdtLo(
        IncrementalNdtLoOptions(ndt_options=IncNdtOptions(nearby_type=NearbyType.CENTER, max_iteration=10))
    )


def _pose_error(a: Pose, b: Pose) -> float:
    return float(np.linalg.norm(a.inverse().compose(b).log()))


def test_first_frame_is_identity(box):
    lo = _make_lo()
    pose = lo.add_cloud(box)
    np.testing.assert_allclose(pose.matrix(), np.eye(4))
    assert lo.ndt.num_grids() > 0
    assert lo.estimated_poses == []


def test_same_scan_stays_near_identity(box):
    lo = _make_lo()
    lo.add_cloud(box)
    poses = [lo.add_cloud(box) for _ in range(3)]
    assert len(lo.estimated_poses) == 3
    for pose in poses:
        assert _pose_error(Pose(), pose) < 1e-2


def test_motion_is_recovered_better_than_identity(box):
    lo = _make_lo()
    lo.add_cloud(box)
    truth = Pose(so3_exp([0.0, 0.0, 0.002]), [0.02, 0.01, 0.0])
    pose = lo.add_cloud(truth.inverse().apply(box))
    assert _pose_error(truth, pose) < _pose_error(truth, Pose())


def test_explicit_guess_is_used_after_two_frames(box):
    lo = _make_lo()
    lo.add_cloud(box)
    lo.add_cloud(box)
    lo.add_cloud(box)
    pose = lo.add_cloud(box, guess=Pose())
    assert _pose_error(Pose(), pose) < 1e-2


def test_failed_alignment_keeps_initial_pose(box):
    lo = _make_lo()
    lo.add_cloud(box)
    pose = lo.add_cloud(box + 1000.0)
    np.testing.assert_allclose(pose.matrix(), np.eye(4))
    assert len(lo.estimated_poses) == 1