import numpy as np
import pytest

from lidarodom.geometry import (
    FullCloud,
    Pose,
    cloud_center,
    fit_line,
    fit_plane,
    hat,
    mean_and_cov,
    so3_exp,
    so3_log,
    voxel_filter,
)


def test_hat_matches_cross_product():
    v = np.array([0.3, -1.2, 2.0])
    w = np.array([1.5, 0.4, -0.7])
    assert np.allclose(hat(v) @ w, np.cross(v, w))
    assert np.allclose(hat(v), -hat(v).T)


@pytest.mark.parametrize("vec", [[0.1, 0.2, -0.3], [1.0, -0.5, 0.7], [0.0, 0.0, 1e-9]])
def test_exp_log_round_trip(vec):
    r = so3_exp(vec)
    assert np.allclose(r @ r.T, np.eye(3))
    assert np.isclose(np.linalg.det(r), 1.0)
    assert np.allclose(so3_log(r), vec, atol=1e-9)


def test_pose_inverse_compose_is_identity():
    pose = Pose(so3_exp([0.2, -0.1, 0.4]), [1.0, 2.0, -3.0])
    ident = pose.compose(pose.inverse())
    assert np.allclose(ident.matrix(), np.eye(4))
    assert np.allclose((pose.inverse() @ pose).matrix(), np.eye(4))


def test_pose_apply_matches_matrix():
    pose = Pose(so3_exp([0.5, 0.1, -0.2]), [0.3, -0.4, 1.1])
    pts = np.array([[1.0, 2.0, 3.0], [-1.0, 0.5, 0.0]])
    homo = np.hstack([pts, np.ones((2, 1))]) @ pose.matrix().T
    assert np.allclose(pose.apply(pts), homo[:, :3])
    assert np.allclose(pose.apply(pts[0]), homo[0, :3])


def test_pose_compose_associative_and_from_matrix():
    a = Pose(so3_exp([0.1, 0.0, 0.3]), [1, 0, 0])
    b = Pose(so3_exp([0.0, 0.4, 0.0]), [0, 2, 0])
    c = Pose(so3_exp([-0.2, 0.1, 0.0]), [0, 0, 3])
    assert np.allclose(((a @ b) @ c).matrix(), (a @ (b @ c)).matrix())
    assert np.allclose(Pose.from_matrix(a.matrix()).matrix(), a.matrix())


def test_pose_log_of_pure_translation_and_rotation():
    t = np.array([1.0, -2.0, 0.5])
    assert np.allclose(Pose(translation=t).log(), np.concatenate([t, np.zeros(3)]))
    omega = np.array([0.3, 0.2, -0.1])
    log = Pose(rotation=so3_exp(omega)).log()
    assert np.allclose(log[:3], 0.0)
    assert np.allclose(log[3:], omega)


def test_full_cloud_defaults_and_validation():
    cloud = FullCloud(np.zeros((4, 3)))
    assert len(cloud) == 4
    assert cloud.ring.shape == (4,)
    with pytest.raises(ValueError):
        FullCloud(np.zeros((4, 3)), ring=[0, 1])


def test_cloud_center_and_empty():
    pts = np.array([[0.0, 0.0, 0.0], [2.0, 4.0, 6.0]])
    assert np.allclose(cloud_center(pts), pts.mean(axis=0))
    with pytest.raises(ValueError):
        cloud_center(np.zeros((0, 3)))


def test_mean_and_cov_invariants():
    rng = np.random.default_rng(3)
    pts = rng.normal(size=(50, 3))
    mean, cov = mean_and_cov(pts)
    assert np.allclose(mean, pts.mean(axis=0))
    assert np.allclose(cov, cov.T)
    assert np.all(np.linalg.eigvalsh(cov) > 0)
    shifted_mean, shifted_cov = mean_and_cov(pts + 5.0)
    assert np.allclose(shifted_cov, cov)
    assert np.allclose(shifted_mean, mean + 5.0)
    with pytest.raises(ValueError):
        mean_and_cov(np.zeros((1, 3)))


def test_fit_plane_on_plane_and_failure():
    rng = np.random.default_rng(0)
    pts = np.column_stack([rng.uniform(-1, 1, 10), rng.uniform(-1, 1, 10), np.full(10, 2.0)])
    coeffs = fit_plane(pts)
    assert coeffs is not None
    assert np.isclose(abs(coeffs[2]), 1.0)
    assert np.allclose(pts @ coeffs[:3] + coeffs[3], 0.0, atol=1e-9)
    scattered = rng.uniform(-1, 1, size=(10, 3))
    assert fit_plane(scattered) is None


def test_fit_line_on_line_and_failure():
    direction = np.array([1.0, 2.0, 2.0]) / 3.0
    pts = np.outer(np.linspace(-1, 1, 6), direction) + np.array([0.5, 0.5, 0.5])
    result = fit_line(pts)
    assert result is not None
    origin, d = result
    assert np.isclose(abs(d @ direction), 1.0)
    assert np.allclose(origin, pts.mean(axis=0))
    rng = np.random.default_rng(1)
    assert fit_line(rng.uniform(-5, 5, size=(6, 3))) is None


def test_voxel_filter_merges_points_in_voxel():
    pts = np.array([[0.1, 0.1, 0.1], [0.3, 0.3, 0.3], [5.2, 5.2, 5.2]])
    out = voxel_filter(pts, 1.0)
    assert len(out) == 2
    assert any(np.allclose(p, pts[:2].mean(axis=0)) for p in out)
    assert any(np.allclose(p, pts[2]) for p in out)
    with pytest.raises(ValueError):
        voxel_filter(pts, 0.0)