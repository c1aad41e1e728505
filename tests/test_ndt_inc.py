import numpy as np
import pytest

from lidarodom.gen_simu_data import SimulationGenerator, SimulationOptions
from lidarodom.geometry import Pose, RegistrationError, so3_exp
from lidarodom.ndt3d import NearbyType
from lidarodom.ndt_inc import IncNdt3d, IncNdtOptions, IncompleteAlignment, VoxelData


@pytest.fixture(scope="module")
def box():
    return SimulationGenerator(SimulationOptions(num_points=10000, seed=1)).generate().target


def _pose_error(a: Pose, b: Pose) -> float:
    return float(np.linalg.norm(a.inverse().compose(b).log()))


def test_voxel_add_point_counts_until_estimated():
    v = VoxelData.from_point([0.1, 0.2, 0.3])
    v.add_point([0.2, 0.2, 0.2])
    assert v.num_pts == 2
    v.ndt_estimated = True
    v.add_point([0.3, 0.3, 0.3])
    assert v.num_pts == 2
    assert len(v.pts) == 3


def test_first_scan_single_point_voxel():
    ndt = IncNdt3d()
    ndt.add_cloud([[0.5, 0.5, 0.5], [3.5, 3.5, 3.5], [3.6, 3.4, 3.2]])
    assert ndt.num_grids() == 2
    single = ndt.grids[(0, 0, 0)]
    assert single.ndt_estimated
    np.testing.assert_allclose(single.mu, [0.5, 0.5, 0.5])
    np.testing.assert_allclose(single.info, np.eye(3) * 100.0)
    pair = ndt.grids[(3, 3, 3)]
    np.testing.assert_allclose(pair.mu, [3.55, 3.45, 3.35])
    assert pair.pts == []


def test_capacity_evicts_least_recent():
    ndt = IncNdt3d(IncNdtOptions(capacity=3))
    ndt.add_cloud([[0.5, 0.5, 0.5], [1.5, 0.5, 0.5], [0.6, 0.5, 0.5], [2.5, 0.5, 0.5]])
    assert ndt.num_grids() == 2
    assert (0, 0, 0) in ndt.grids
    assert (1, 0, 0) not in ndt.grids


def test_merge_gives_overall_mean():
    rng = np.random.default_rng(3)
    first = rng.uniform(0.1, 0.9, size=(10, 3))
    second = rng.uniform(0.1, 0.9, size=(8, 3))
    ndt = IncNdt3d()
    ndt.add_cloud(first)
    ndt.add_cloud(second)
    v = ndt.grids[(0, 0, 0)]
    np.testing.assert_allclose(v.mu, np.vstack([first, second]).mean(axis=0))
    assert v.num_pts == len(first) + len(second)
    np.testing.assert_allclose(v.sigma, v.sigma.T)


def test_new_voxel_waits_for_enough_points():
    rng = np.random.default_rng(4)
    ndt = IncNdt3d()
    ndt.add_cloud([[0.5, 0.5, 0.5]])
    batch1 = rng.uniform(2.1, 2.9, size=(3, 3))
    ndt.add_cloud(batch1)
    v = ndt.grids[(2, 2, 2)]
    assert not v.ndt_estimated
    assert v.num_pts == 3
    batch2 = rng.uniform(2.1, 2.9, size=(3, 3))
    ndt.add_cloud(batch2)
    assert v.ndt_estimated
    np.testing.assert_allclose(v.mu, np.vstack([batch1, batch2]).mean(axis=0))


def test_full_voxel_is_frozen():
    rng = np.random.default_rng(5)
    ndt = IncNdt3d()
    ndt.add_cloud(rng.uniform(0.1, 0.9, size=(60, 3)))
    v = ndt.grids[(0, 0, 0)]
    before = v.mu.copy()
    ndt.add_cloud(rng.uniform(0.1, 0.2, size=(10, 3)))
    np.testing.assert_array_equal(v.mu, before)


def test_align_reduces_pose_error(box):
    ndt = IncNdt3d(IncNdtOptions(nearby_type=NearbyType.CENTER, max_iteration=10))
    ndt.add_cloud(box)
    truth = Pose(so3_exp([0.0, 0.0, 0.002]), [0.02, -0.01, 0.01])
    ndt.set_source(truth.inverse().apply(box))
    result = ndt.align(Pose())
    assert _pose_error(truth, result) < _pose_error(truth, Pose())


def test_align_far_source_raises_with_pose(box):
    ndt = IncNdt3d()
    ndt.add_cloud(box)
    ndt.set_source(box + 1000.0)
    start = Pose(np.eye(3), [0.1, 0.0, 0.0])
    with pytest.raises(IncompleteAlignment) as info:
        ndt.align(start)
    assert isinstance(info.value, RegistrationError)
    np.testing.assert_allclose(info.value.pose.matrix(), start.matrix())


def test_align_requires_map():
    ndt = IncNdt3d()
    ndt.set_source([[0.0, 0.0, 0.0]])
    with pytest.raises(RuntimeError):
        ndt.align(Pose())


def test_residual_and_jacobians_structure(box):
    ndt = IncNdt3d()
    ndt.add_cloud(box)
    ndt.set_source(box[:2000])
    htvh, htvr = ndt.compute_residual_and_jacobians(Pose(np.eye(3), [0.01, 0.0, 0.0]))
    assert htvh.shape == (18, 18)
    assert htvr.shape == (18,)
    np.testing.assert_allclose(htvh, htvh.T, atol=1e-9)
    assert np.all(htvh[3:6] == 0) and np.all(htvh[9:] == 0)
    assert np.all(htvr[3:6] == 0) and np.all(htvr[9:] == 0)
    assert np.linalg.eigvalsh(htvh).min() > -1e-8
    assert htvh[:3, :3].diagonal().sum() > 0