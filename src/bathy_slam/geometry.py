import numpy as np
from scipy.spatial.transform import Rotation

# Below this angle the Jacobian coefficients switch to their Taylor expansions.
SMALL_ANGLE = 1e-2

# SO(3) operations

def so3_hat(omega):
    """
    Maps a 3-vector omega to its corresponding skew-symmetric matrix (so(3)).
    omega: (3,) array
    Returns: (3,3) skew-symmetric matrix
    """
    if not isinstance(omega, np.ndarray) or omega.shape != (3,):
        raise ValueError("Input omega must be a (3,) numpy array.")
    return np.array([
        [0, -omega[2], omega[1]],
        [omega[2], 0, -omega[0]],
        [-omega[1], omega[0], 0]
    ], dtype=float)

def so3_vee(Omega):
    """
    Maps a skew-symmetric matrix Omega (so(3)) to its corresponding 3-vector.
    Omega: (3,3) skew-symmetric matrix
    Returns: (3,) array
    """
    if not isinstance(Omega, np.ndarray) or Omega.shape != (3,3):
        raise ValueError("Input Omega must be a (3,3) numpy array.")
    if not np.allclose(Omega, -Omega.T, atol=1e-7):
        raise ValueError("Input Omega must be skew-symmetric.")
    return np.array([Omega[2,1], Omega[0,2], Omega[1,0]])


def so3_exp(omega_hat):
    """
    Computes the SO(3) matrix from an so(3) element omega_hat (a skew-symmetric matrix).
    omega_hat: (3,3) skew-symmetric matrix (so(3) element)
    Returns: (3,3) rotation matrix (SO(3) element)
    """
    if not isinstance(omega_hat, np.ndarray) or omega_hat.shape != (3,3):
        raise ValueError("Input omega_hat must be a (3,3) numpy array.")
    return Rotation.from_rotvec(so3_vee(omega_hat)).as_matrix()

def so3_log(R):
    """
    Computes the so(3) element (skew-symmetric matrix) from an SO(3) rotation matrix.

    The rotation vector is the minimal geodesic one (angle in [0, pi]), so the
    result has no branch jumps the way a wrapped Euler-angle difference does.
    R: (3,3) rotation matrix (SO(3) element)
    Returns: (3,3) skew-symmetric matrix (so(3) element)
    """
    if not isinstance(R, np.ndarray) or R.shape != (3,3):
        raise ValueError("Input R must be a (3,3) numpy array.")
    return so3_hat(Rotation.from_matrix(R).as_rotvec())


def so3_left_jacobian(phi):
    """Left Jacobian of SO(3) at the rotation vector phi."""
    theta = np.linalg.norm(phi)
    Phi = so3_hat(phi)
    if theta < SMALL_ANGLE:
        t2 = theta**2
        return (np.eye(3)
                + (0.5 - t2 / 24.0 + t2**2 / 720.0) * Phi
                + (1.0 / 6.0 - t2 / 120.0 + t2**2 / 5040.0) * Phi @ Phi)
    return (np.eye(3)
            + (1.0 - np.cos(theta)) / theta**2 * Phi
            + (theta - np.sin(theta)) / theta**3 * Phi @ Phi)


# SE(3) operations (represented as 4x4 homogeneous matrices)
# Twist coordinates are ordered [v (translation), omega (rotation)].

def se3_hat(xi):
    """
    Maps a 6-vector xi (twist coordinates: v, omega) to its corresponding
    4x4 matrix representation in se(3).
    xi: (6,) array [v_x, v_y, v_z, omega_x, omega_y, omega_z]
    Returns: (4,4) matrix in se(3)
    """
    if not isinstance(xi, np.ndarray) or xi.shape != (6,):
        raise ValueError("Input xi must be a (6,) numpy array.")
    T_xi = np.zeros((4,4))
    T_xi[:3,:3] = so3_hat(xi[3:])
    T_xi[:3,3] = xi[:3]
    return T_xi

def se3_vee(Xi_hat):
    """
    Maps a 4x4 matrix Xi_hat in se(3) back to its 6-vector twist coordinates.
    Xi_hat: (4,4) matrix in se(3)
    Returns: (6,) array [v_x, v_y, v_z, omega_x, omega_y, omega_z]
    """
    if not isinstance(Xi_hat, np.ndarray) or Xi_hat.shape != (4,4):
        raise ValueError("Input Xi_hat must be a (4,4) numpy array.")
    if not np.allclose(Xi_hat[3,:], 0):
        raise ValueError("Input Xi_hat must have its bottom row as zeros for se(3).")
    return np.concatenate((Xi_hat[:3,3], so3_vee(Xi_hat[:3,:3])))

def se3_exp(xi_hat):
    """
    Computes the SE(3) matrix from an se(3) element xi_hat (4x4 matrix).
    xi_hat: (4,4) matrix (se(3) element)
    Returns: (4,4) homogeneous transformation matrix (SE(3) element)
    """
    xi = se3_vee(xi_hat)
    T = np.eye(4)
    T[:3,:3] = Rotation.from_rotvec(xi[3:]).as_matrix()
    T[:3,3] = so3_left_jacobian(xi[3:]) @ xi[:3]
    return T

def se3_log(T):
    """
    Computes the se(3) element (4x4 matrix) from an SE(3) transformation matrix.
    T: (4,4) homogeneous transformation matrix (SE(3) element)
    Returns: (4,4) matrix (se(3) element)
    """
    if not isinstance(T, np.ndarray) or T.shape != (4,4):
        raise ValueError("Input T must be a (4,4) numpy array.")
    phi = Rotation.from_matrix(T[:3,:3]).as_rotvec()
    # V(phi) stays invertible for |phi| <= pi, so solve instead of the closed-form inverse
    v = np.linalg.solve(so3_left_jacobian(phi), T[:3,3])
    return se3_hat(np.concatenate((v, phi)))


def se3_exp_vec(xi):
    """Shorthand for se3_exp(se3_hat(xi))."""
    return se3_exp(se3_hat(np.asarray(xi, dtype=float)))

def se3_log_vec(T):
    """Shorthand for se3_vee(se3_log(T)), the 6-vector [v, omega]."""
    return se3_vee(se3_log(T))


def se3_inverse(T):
    """Closed-form inverse of a rigid transform."""
    R = T[:3,:3]
    T_inv = np.eye(4)
    T_inv[:3,:3] = R.T
    T_inv[:3,3] = -R.T @ T[:3,3]
    return T_inv

def se3_adjoint(T):
    """
    Adjoint of T acting on twists ordered [v, omega]:
        Ad(T) = [[R, t^ R], [0, R]]
    """
    R = T[:3,:3]
    Ad = np.zeros((6,6))
    Ad[:3,:3] = R
    Ad[:3,3:] = so3_hat(T[:3,3]) @ R
    Ad[3:,3:] = R
    return Ad

def _se3_q_matrix(rho, phi):
    # Coupling block of the SE(3) left Jacobian (Barfoot, eq. 7.86)
    theta = np.linalg.norm(phi)
    P = so3_hat(phi)
    Rh = so3_hat(rho)
    if theta < SMALL_ANGLE:
        t2 = theta**2
        a = 1.0 / 6.0 - t2 / 120.0 + t2**2 / 5040.0
        b = 1.0 / 24.0 - t2 / 720.0 + t2**2 / 40320.0
        c = 1.0 / 120.0 - t2 / 2520.0 + t2**2 / 120960.0
    else:
        s, co = np.sin(theta), np.cos(theta)
        a = (theta - s) / theta**3
        b = (theta**2 + 2.0 * co - 2.0) / (2.0 * theta**4)
        c = (2.0 * theta - 3.0 * s + theta * co) / (2.0 * theta**5)
    PR = P @ Rh
    RP = Rh @ P
    PRP = PR @ P
    return (0.5 * Rh
            + a * (PR + RP + PRP)
            + b * (P @ PR + RP @ P - 3.0 * PRP)
            + c * (PRP @ P + P @ PRP))

def se3_left_jacobian(xi):
    """Left Jacobian of SE(3) at the twist xi = [v, omega]."""
    if not isinstance(xi, np.ndarray) or xi.shape != (6,):
        raise ValueError("Input xi must be a (6,) numpy array.")
    J = np.zeros((6,6))
    Jso3 = so3_left_jacobian(xi[3:])
    J[:3,:3] = Jso3
    J[3:,3:] = Jso3
    J[:3,3:] = _se3_q_matrix(xi[:3], xi[3:])
    return J

def se3_right_jacobian_inverse(xi):
    """
    Inverse of the SE(3) right Jacobian, Jr(xi) = Jl(-xi).
    Maps a right perturbation delta to the first-order change of log(T exp(delta)).
    """
    return np.linalg.inv(se3_left_jacobian(-np.asarray(xi, dtype=float)))


# Conversions

def pose_from_translation_rotvec(translation, rotvec):
    """Builds a 4x4 pose from a translation and an axis-angle rotation vector."""
    T = np.eye(4)
    T[:3,:3] = Rotation.from_rotvec(np.asarray(rotvec, dtype=float)).as_matrix()
    T[:3,3] = translation
    return T

def pose_from_translation_quat(translation, quat_xyzw):
    """Builds a 4x4 pose from a translation and a [qx, qy, qz, qw] quaternion."""
    T = np.eye(4)
    T[:3,:3] = Rotation.from_quat(np.asarray(quat_xyzw, dtype=float)).as_matrix()
    T[:3,3] = translation
    return T

def pose_to_translation_quat(T):
    """Returns (translation (3,), quaternion [qx, qy, qz, qw] (4,)) for a 4x4 pose."""
    return np.copy(T[:3,3]), Rotation.from_matrix(T[:3,:3]).as_quat()

def transform_points(T, points):
    """Applies a 4x4 transform to an (N,3) point array."""
    points = np.asarray(points, dtype=float)
    return points @ T[:3,:3].T + T[:3,3]

def is_se3(T, atol=1e-6):
    if not isinstance(T, np.ndarray) or T.shape != (4,4):
        return False
    R = T[:3,:3]
    return (np.allclose(R @ R.T, np.eye(3), atol=atol)
            and np.isclose(np.linalg.det(R), 1.0, atol=atol)
            and np.allclose(T[3,:], [0, 0, 0, 1]))
