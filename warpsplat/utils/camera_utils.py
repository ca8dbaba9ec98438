import numpy as np
import warp as wp


def fov_to_focal(fov_rad, pixels):
    return 0.5 * pixels / np.tan(fov_rad * 0.5)


def focal_to_fov(focal, pixels):
    return 2.0 * np.arctan(pixels / (2.0 * focal))


def quat_to_rotmat(q):
    """Rotation matrix of a (w, x, y, z) quaternion; normalizes first."""
    w, x, y, z = np.asarray(q, dtype=np.float64) / np.linalg.norm(q)
    return np.array([
        [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y)],
        [2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x)],
        [2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y)],
    ])


def rotmat_to_quat(R):
    """(w, x, y, z) quaternion of a rotation matrix."""
    R = np.asarray(R, dtype=np.float64)
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        q = [0.25 / s, (R[2, 1] - R[1, 2]) * s, (R[0, 2] - R[2, 0]) * s, (R[1, 0] - R[0, 1]) * s]
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q = [(R[2, 1] - R[1, 2]) / s, 0.25 * s, (R[0, 1] + R[1, 0]) / s, (R[0, 2] + R[2, 0]) / s]
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q = [(R[0, 2] - R[2, 0]) / s, (R[0, 1] + R[1, 0]) / s, 0.25 * s, (R[1, 2] + R[2, 1]) / s]
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q = [(R[1, 0] - R[0, 1]) / s, (R[0, 2] + R[2, 0]) / s, (R[1, 2] + R[2, 1]) / s, 0.25 * s]
    q = np.array(q)
    return q / np.linalg.norm(q)


# Y down, Z forward
class Camera:
    """Pinhole camera.

    Args:
        position: camera center in world space (3,).
        rotation: camera-to-world rotation as a (w, x, y, z) quaternion.
        fov_x, fov_y: full fields of view in radians.
        center_uv: principal point in normalized image coordinates.
    """

    def __init__(self, position, rotation, fov_x, fov_y, center_uv=(0.5, 0.5)):
        self.position = np.asarray(position, dtype=np.float64).reshape(3)
        self.rotation = np.asarray(rotation, dtype=np.float64).reshape(4)
        self.fov_x = float(fov_x)
        self.fov_y = float(fov_y)
        self.center_uv = np.asarray(center_uv, dtype=np.float64).reshape(2)

    @classmethod
    def from_focal(cls, position, rotation, focal, img_size, center_uv=(0.5, 0.5)):
        """Build from focal lengths in pixels, ``img_size`` is (width, height)."""
        fx, fy = (focal, focal) if np.isscalar(focal) else focal
        return cls(position, rotation,
                   focal_to_fov(fx, img_size[0]), focal_to_fov(fy, img_size[1]), center_uv)

    @classmethod
    def look_at(cls, position, target, up=(0.0, -1.0, 0.0), fov_x=1.0, fov_y=1.0):
        """Camera at ``position`` looking at ``target`` (+z forward, y down)."""
        position = np.asarray(position, dtype=np.float64)
        forward = np.asarray(target, dtype=np.float64) - position
        forward /= np.linalg.norm(forward)
        right = np.cross(forward, np.asarray(up, dtype=np.float64))
        if np.linalg.norm(right) < 1e-8:
            raise ValueError("Up vector is parallel to the viewing direction")
        right /= np.linalg.norm(right)
        down = np.cross(forward, right)
        R = np.stack([right, down, forward], axis=1)
        return cls(position, rotmat_to_quat(R), fov_x, fov_y)

    def focal(self, img_size):
        return np.array([fov_to_focal(self.fov_x, img_size[0]),
                         fov_to_focal(self.fov_y, img_size[1])])

    def center(self, img_size):
        return self.center_uv * np.asarray(img_size, dtype=np.float64)

    def local_to_world(self):
        M = np.eye(4)
        M[:3, :3] = quat_to_rotmat(self.rotation)
        M[:3, 3] = self.position
        return M

    def world_to_local(self):
        R = quat_to_rotmat(self.rotation)
        M = np.eye(4)
        M[:3, :3] = R.T
        M[:3, 3] = -R.T @ self.position
        return M

    def uniforms(self, img_size):
        """Per-render values the projection kernels take by value."""
        view = self.world_to_local()
        fx, fy = self.focal(img_size)
        cx, cy = self.center(img_size)
        return {
            'viewmat': wp.mat44(*view.flatten().tolist()),
            'cam_pos': wp.vec3(*self.position.tolist()),
            'focal': wp.vec2(float(fx), float(fy)),
            'pixel_center': wp.vec2(float(cx), float(cy)),
        }

    def __repr__(self):
        return (f"Camera(position={self.position.tolist()}, rotation={self.rotation.tolist()}, "
                f"fov_x={self.fov_x:.4f}, fov_y={self.fov_y:.4f})")
