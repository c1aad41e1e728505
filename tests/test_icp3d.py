import numpy as np
import pytest

from lidarodom.gen_simu_data import SimulationGenerator, SimulationOptions
from lidarodom.geometry import Pose, RegistrationError, so3_exp
from lidarodom.icp3d import Icp3d, IcpOptions


def _pose_error(expected: Pose, actual: Pose) -> float:
    return float(np.linalg.norm(expected.inverse().compose(actual).log()))


@pytest.fixture(scope="module")
def box_scene():
    options = SimulationOptions(num_points=3000, pose_rot_sigma=0.005, pose_trans_sigma=0.05, seed=1)
    return SimulationGenerator(options).generate()


def _wireframe(step: float = 0.1) -> np.ndarray:
    half = np.array([2.0, 1.5, 1.0])
    edges = []
    for axis in range(3):
        others = [a for a in range(3) if a != axis]
        samples = np.arange(-half[axis], half[axis] + 1e-9, step)
        for s1 in (-1.0, 1.0):
            for s2 in (-1.0, 1.0):
                pts = np.zeros((len(samples), 3))
                pts[:, axis] = samples
                pts[:, others[0]] = s1 * half[others[0]]
                pts[:, others[1]] = s2 * half[others[1]]
                edges.append(pts)
    return np.vstack(edges)


def _icp(source, target, options=None) -> Icp3d:
    icp = Icp3d(options)
    icp.set_source(source)
    icp.set_target(target)
    return icp


def test_p2p_identical_clouds_give_identity(box_scene):
    icp = _icp(box_scene.target, box_scene.target)
    pose = icp.align_p2p()
    assert _pose_error(Pose(), pose) < 1e-6


def test_p2p_recovers_ground_truth(box_scene):
    icp = _icp(box_scene.source, box_scene.target)
    expected = box_scene.pose.inverse()
    icp.set_ground_truth(expected)
    pose = icp.align_p2p()
    assert _pose_error(expected, pose) < 0.05
    assert len(icp.pose_errors) >= 1
    assert icp.pose_errors[-1] == pytest.approx(_pose_error(expected, pose))


def test_p2plane_recovers_ground_truth(box_scene):
    icp = _icp(box_scene.source, box_scene.target)
    expected = box_scene.pose.inverse()
    pose = icp.align_p2plane()
    assert _pose_error(expected, pose) < 0.03


def test_p2line_recovers_ground_truth_on_wireframe():
    target = _wireframe()
    gt = Pose(so3_exp([0.01, -0.005, 0.008]), [0.03, -0.02, 0.01])
    source = gt.apply(target)
    expected = gt.inverse()
    icp = _icp(source, target)
    icp.set_ground_truth(expected)
    pose = icp.align_p2line()
    assert _pose_error(expected, pose) < 0.05
    assert icp.pose_errors[-1] < _pose_error(expected, Pose())


def test_p2p_initial_translation_from_centers():
    target = _wireframe()
    source = target + np.array([1.0, -2.0, 0.5])
    icp = _icp(source, target, IcpOptions(max_iteration=0))
    pose = icp.align_p2p()
    np.testing.assert_allclose(pose.translation, [-1.0, 2.0, -0.5], atol=1e-9)


def test_p2p_use_initial_translation_keeps_given_pose():
    target = _wireframe()
    source = target + np.array([1.0, -2.0, 0.5])
    icp = _icp(source, target, IcpOptions(max_iteration=0, use_initial_translation=True))
    init = Pose(np.eye(3), [0.1, 0.2, 0.3])
    pose = icp.align_p2p(init)
    np.testing.assert_allclose(pose.translation, [0.1, 0.2, 0.3])


def test_p2line_centers_only_with_use_initial_translation():
    target = _wireframe()
    source = target + np.array([1.0, -2.0, 0.5])
    init = Pose(np.eye(3), [0.1, 0.2, 0.3])

    keep = _icp(source, target, IcpOptions(max_iteration=0)).align_p2line(init)
    np.testing.assert_allclose(keep.translation, [0.1, 0.2, 0.3])

    centered = _icp(source, target, IcpOptions(max_iteration=0, use_initial_translation=True)).align_p2line(init)
    np.testing.assert_allclose(centered.translation, [-1.0, 2.0, -0.5], atol=1e-9)


def test_p2p_far_source_raises_registration_error():
    target = _wireframe()
    source = target + 100.0
    icp = _icp(source, target, IcpOptions(use_initial_translation=True))
    with pytest.raises(RegistrationError):
        icp.align_p2p()


def test_p2plane_on_lines_raises_registration_error():
    target = _wireframe()
    icp = _icp(target, target)
    # Collinear neighbourhoods leave the plane direction undetermined only along a line,
    # but a very tight distance threshold rejects every residual once the source is shifted.
    icp.options.max_plane_distance = 1e-9
    with pytest.raises(RegistrationError):
        icp.align_p2plane(Pose(np.eye(3), [0.0, 0.0, 0.0]).with_translation([0.0, 0.0, 0.0]))


@pytest.mark.parametrize(
    "run",
    [
        lambda icp: icp.align_p2p(),
        lambda icp: icp.align_p2line(),
        lambda icp: icp.align_p2plane(),
    ],
    ids=["p2p", "p2line", "p2plane"],
)
def test_align_without_target_raises(run):
    icp = Icp3d()
    icp.set_source(_wireframe() + np.array([0.0, 0.0, 2.0]))
    np.testing.assert_allclose(icp.source_center, [0.0, 0.0, 2.0], atol=1e-9)
    with pytest.raises(RuntimeError):
        run(icp)


def test_set_target_rejects_empty_cloud():
    with pytest.raises(ValueError):
        Icp3d().set_target(np.zeros((0, 3)))


def test_centers_are_computed():
    target = _wireframe()
    icp = _icp(target + np.array([0.0, 0.0, 3.0]), target)
    np.testing.assert_allclose(icp.target_center, [0.0, 0.0, 0.0], atol=1e-9)
    np.testing.assert_allclose(icp.source_center, [0.0, 0.0, 3.0], atol=1e-9)