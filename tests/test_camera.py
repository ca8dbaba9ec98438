import numpy as np
import pytest

from warpsplat.utils.camera_utils import Camera, focal_to_fov, fov_to_focal, quat_to_rotmat, rotmat_to_quat


def test_focal_fov_inverse():
    focal = fov_to_focal(1.2, 640)
    assert np.isclose(focal_to_fov(focal, 640), 1.2)


def test_quat_rotmat_round_trip():
    q = np.array([0.9, 0.1, -0.3, 0.2])
    q /= np.linalg.norm(q)
    R = quat_to_rotmat(q)
    assert np.allclose(R @ R.T, np.eye(3), atol=1e-12)
    q2 = rotmat_to_quat(R)
    assert np.allclose(q2 * np.sign(q2[0]), q * np.sign(q[0]))


def test_identity_camera_view_matrix():
    cam = Camera((1.0, 2.0, 3.0), (1.0, 0.0, 0.0, 0.0), 1.0, 1.0)
    view = cam.world_to_local()
    assert np.allclose(view @ np.array([1.0, 2.0, 4.0, 1.0]), [0.0, 0.0, 1.0, 1.0])
    assert np.allclose(view @ cam.local_to_world(), np.eye(4))


def test_look_at_puts_target_on_axis():
    cam = Camera.look_at((0.0, 0.0, -5.0), (0.0, 0.0, 0.0))
    p = cam.world_to_local() @ np.array([0.0, 0.0, 0.0, 1.0])
    assert np.allclose(p[:3], [0.0, 0.0, 5.0])


def test_look_at_rejects_parallel_up():
    with pytest.raises(ValueError):
        Camera.look_at((0.0, 0.0, 0.0), (0.0, 1.0, 0.0), up=(0.0, 1.0, 0.0))


def test_principal_point_and_focal():
    cam = Camera.from_focal((0.0, 0.0, 0.0), (1.0, 0.0, 0.0, 0.0), (100.0, 120.0), (64, 48))
    assert np.allclose(cam.focal((64, 48)), [100.0, 120.0])
    assert np.allclose(cam.center((64, 48)), [32.0, 24.0])
