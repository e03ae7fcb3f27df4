import numpy as np
from scipy.spatial.transform import Rotation

# SO(3) operations

def so3_hat(omega):
    """
    Maps a 3-vector omega to its corresponding skew-symmetric matrix (so(3)).
    omega: (3,) array
    Returns: (3,3) skew-symmetric matrix
    """
    omega = np.asarray(omega, dtype=float)
    if omega.shape != (3,):
        raise ValueError("Input omega must be a (3,) numpy array.")
    return np.array([
        [0, -omega[2], omega[1]],
        [omega[2], 0, -omega[0]],
        [-omega[1], omega[0], 0]
    ])

def so3_vee(Omega):
    """
    Maps a skew-symmetric matrix Omega (so(3)) to its corresponding 3-vector.
    """
    if not isinstance(Omega, np.ndarray) or Omega.shape != (3,3):
        raise ValueError("Input Omega must be a (3,3) numpy array.")
    if not np.allclose(Omega, -Omega.T, atol=1e-7):
        raise ValueError("Input Omega must be skew-symmetric.")
    return np.array([Omega[2,1], Omega[0,2], Omega[1,0]])


def so3_exp(rot_vec):
    """
    Rotation matrix of a rotation vector (axis scaled by angle).
    rot_vec: (3,) array
    Returns: (3,3) rotation matrix
    """
    rot_vec = np.asarray(rot_vec, dtype=float)
    if rot_vec.shape != (3,):
        raise ValueError("Input rot_vec must be a (3,) numpy array.")
    return Rotation.from_rotvec(rot_vec).as_matrix()

def so3_log(R):
    """
    Rotation vector of a rotation matrix, the inverse of so3_exp.
    R: (3,3) rotation matrix
    Returns: (3,) array with norm in [0, pi]
    """
    if not isinstance(R, np.ndarray) or R.shape != (3,3):
        raise ValueError("Input R must be a (3,3) numpy array.")
    return Rotation.from_matrix(R).as_rotvec()

def so3_normalize(R):
    """Projects a nearly orthogonal matrix back onto SO(3)."""
    U, _, Vt = np.linalg.svd(R)
    R_ortho = U @ Vt
    if np.linalg.det(R_ortho) < 0:
        U[:, -1] *= -1
        R_ortho = U @ Vt
    return R_ortho


# SE(3) operations (represented as 4x4 homogeneous matrices)

def se3_from_rt(R, t):
    """Builds a 4x4 transform from a rotation matrix and a translation."""
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = t
    return T

def se3_inverse(T):
    if not isinstance(T, np.ndarray) or T.shape != (4,4):
        raise ValueError("Input T must be a (4,4) numpy array.")
    R = T[:3, :3]
    return se3_from_rt(R.T, -R.T @ T[:3, 3])

def transform_points(T, points):
    """Applies a 4x4 transform to an (N,3) array (or a single (3,) point)."""
    points = np.asarray(points, dtype=float)
    return points @ T[:3, :3].T + T[:3, 3]

def pose_to_tum(T):
    """Returns [tx, ty, tz, qx, qy, qz, qw] for a 4x4 transform."""
    quat = Rotation.from_matrix(T[:3, :3]).as_quat()  # [x,y,z,w]
    return np.concatenate((T[:3, 3], quat))


# Frames and alignment

def gravity_aligned_world_to_ref(R_body_to_ref, gravity_ref):
    """
    Rotation from a gravity-aligned world frame to the reference frame.

    The world's negative z axis points along gravity; its x axis is the
    horizontal projection of the body x axis (body y axis if x is vertical).

    Args:
        R_body_to_ref (np.ndarray): (3,3) body orientation in the reference frame.
        gravity_ref (np.ndarray): (3,) gravity expressed in the reference frame.

    Returns:
        np.ndarray: (3,3) rotation, columns are the world axes in the reference frame.
    """
    norm = np.linalg.norm(gravity_ref)
    if norm < 1e-12:
        raise ValueError("gravity vector must be non-zero.")
    z_axis = -np.asarray(gravity_ref, dtype=float) / norm

    x_axis = None
    for candidate in (R_body_to_ref[:, 0], R_body_to_ref[:, 1]):
        horizontal = candidate - np.dot(candidate, z_axis) * z_axis
        if np.linalg.norm(horizontal) > 1e-6:
            x_axis = horizontal / np.linalg.norm(horizontal)
            break
    if x_axis is None:
        raise ValueError("cannot determine a horizontal axis from the body orientation.")

    y_axis = np.cross(z_axis, x_axis)
    return np.column_stack((x_axis, y_axis, z_axis))

def umeyama_alignment(src, dst, with_scale=True):
    """
    Least-squares similarity transform with dst ~= s * R @ src + t (Umeyama, 1991).

    Args:
        src (np.ndarray): (N,3) source points.
        dst (np.ndarray): (N,3) destination points.
        with_scale (bool): estimate s, otherwise s = 1.

    Returns:
        tuple: (R (3,3), t (3,), s float)
    """
    src = np.asarray(src, dtype=float)
    dst = np.asarray(dst, dtype=float)
    if src.shape != dst.shape or src.ndim != 2 or src.shape[1] != 3:
        raise ValueError("src and dst must be matching N x 3 arrays.")
    if src.shape[0] < 3:
        raise ValueError("at least three point pairs are required for alignment.")

    mu_src = src.mean(axis=0)
    mu_dst = dst.mean(axis=0)
    src_c = src - mu_src
    dst_c = dst - mu_dst

    cov = dst_c.T @ src_c / src.shape[0]
    U, D, Vt = np.linalg.svd(cov)
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1
    R = U @ S @ Vt

    if with_scale:
        var_src = np.mean(np.sum(src_c ** 2, axis=1))
        s = np.trace(np.diag(D) @ S) / var_src
    else:
        s = 1.0
    t = mu_dst - s * R @ mu_src
    return R, t, s
