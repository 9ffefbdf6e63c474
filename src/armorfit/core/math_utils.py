"""NumPy-backed math utilities: Vec3, Quaternion, Mat4 operations.

Vectors are plain numpy arrays; quaternions are [x, y, z, w] arrays.
Matrices are 4x4 numpy arrays acting on column vectors (M @ p).
"""

import numpy as np
from numpy.typing import NDArray

# Type aliases
Vec3 = NDArray[np.float64]
Mat3 = NDArray[np.float64]
Mat4 = NDArray[np.float64]
Quat = NDArray[np.float64]  # [x, y, z, w]


def vec3(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> Vec3:
    return np.array([x, y, z], dtype=np.float64)


def mat4_identity() -> Mat4:
    return np.eye(4, dtype=np.float64)


def mat4_translation(x: float, y: float, z: float) -> Mat4:
    m = np.eye(4, dtype=np.float64)
    m[0, 3] = x
    m[1, 3] = y
    m[2, 3] = z
    return m


def mat4_from_quaternion(q: Quat) -> Mat4:
    """Convert quaternion [x,y,z,w] to 4x4 rotation matrix."""
    x, y, z, w = q
    m = np.eye(4, dtype=np.float64)
    m[0, 0] = 1 - 2 * (y * y + z * z)
    m[0, 1] = 2 * (x * y - z * w)
    m[0, 2] = 2 * (x * z + y * w)
    m[1, 0] = 2 * (x * y + z * w)
    m[1, 1] = 1 - 2 * (x * x + z * z)
    m[1, 2] = 2 * (y * z - x * w)
    m[2, 0] = 2 * (x * z - y * w)
    m[2, 1] = 2 * (y * z + x * w)
    m[2, 2] = 1 - 2 * (x * x + y * y)
    return m


def mat4_compose(position: Vec3, quaternion: Quat, scale: Vec3) -> Mat4:
    """Compose TRS matrix from position, quaternion rotation, and scale."""
    m = mat4_from_quaternion(quaternion)
    m[:3, 0] *= scale[0]
    m[:3, 1] *= scale[1]
    m[:3, 2] *= scale[2]
    m[0, 3] = position[0]
    m[1, 3] = position[1]
    m[2, 3] = position[2]
    return m


def mat4_decompose(m: Mat4) -> tuple[Vec3, Quat, Vec3]:
    """Split a TRS matrix into (position, quaternion, scale).

    Assumes no shear. A negative determinant is folded into the X scale.
    """
    position = m[:3, 3].copy()
    basis = m[:3, :3].copy()
    scale = np.linalg.norm(basis, axis=0)
    if np.linalg.det(basis) < 0:
        scale[0] = -scale[0]
    safe = np.where(np.abs(scale) < 1e-12, 1.0, scale)
    rot = basis / safe[np.newaxis, :]
    q = batch_mat3_to_quat(rot[np.newaxis])[0]
    return position, quat_normalize(q), scale


def mat4_inverse(m: Mat4) -> Mat4:
    return np.linalg.inv(m)


# Quaternion operations

def quat_identity() -> Quat:
    return np.array([0.0, 0.0, 0.0, 1.0], dtype=np.float64)


def quat_from_axis_angle(axis: Vec3, angle: float) -> Quat:
    """Create quaternion from axis-angle."""
    half = angle / 2
    s = np.sin(half)
    a = normalize(np.asarray(axis, dtype=np.float64))
    return np.array([a[0] * s, a[1] * s, a[2] * s, np.cos(half)], dtype=np.float64)


def quat_multiply(a: Quat, b: Quat) -> Quat:
    """Multiply two quaternions (a * b)."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ], dtype=np.float64)


def quat_normalize(q: Quat) -> Quat:
    n = np.linalg.norm(q)
    if n < 1e-10:
        return quat_identity()
    return q / n


def quat_rotate_vec3(q: Quat, v: Vec3) -> Vec3:
    """Rotate a vector by a quaternion."""
    qv = q[:3]
    w = q[3]
    t = 2.0 * np.cross(qv, v)
    return v + w * t + np.cross(qv, t)


# Vector operations

def normalize(v: Vec3) -> Vec3:
    n = np.linalg.norm(v)
    if n < 1e-10:
        return np.zeros_like(v)
    return v / n


def normalize_rows(v: NDArray) -> NDArray:
    """Normalize an (N, 3) array row-wise; zero rows stay zero."""
    lengths = np.linalg.norm(v, axis=1, keepdims=True)
    lengths = np.maximum(lengths, 1e-10)
    return v / lengths


def transform_points(m: Mat4, points: NDArray) -> NDArray:
    """Transform (N, 3) points by a 4x4 matrix."""
    return points @ m[:3, :3].T + m[:3, 3]


def transform_directions(m: Mat4, dirs: NDArray) -> NDArray:
    """Transform (N, 3) directions by a 4x4 matrix (ignores translation)."""
    return dirs @ m[:3, :3].T


# ── Batch (vectorized) operations ─────────────────────────────────────

def batch_mat3_to_quat(R: NDArray) -> NDArray:
    """Convert (N, 3, 3) rotation matrices to (N, 4) quaternions [x, y, z, w].

    Uses Shepperd's method with masked branching for numerical stability.
    """
    N = len(R)
    q = np.zeros((N, 4), dtype=np.float64)
    trace = R[:, 0, 0] + R[:, 1, 1] + R[:, 2, 2]

    # Case 1: trace > 0
    m1 = trace > 0
    if m1.any():
        s = 0.5 / np.sqrt(trace[m1] + 1.0)
        q[m1, 3] = 0.25 / s
        q[m1, 0] = (R[m1, 2, 1] - R[m1, 1, 2]) * s
        q[m1, 1] = (R[m1, 0, 2] - R[m1, 2, 0]) * s
        q[m1, 2] = (R[m1, 1, 0] - R[m1, 0, 1]) * s

    # Case 2: R[0,0] is largest diagonal
    m2 = ~m1 & (R[:, 0, 0] > R[:, 1, 1]) & (R[:, 0, 0] > R[:, 2, 2])
    if m2.any():
        s = 2.0 * np.sqrt(1.0 + R[m2, 0, 0] - R[m2, 1, 1] - R[m2, 2, 2])
        q[m2, 3] = (R[m2, 2, 1] - R[m2, 1, 2]) / s
        q[m2, 0] = 0.25 * s
        q[m2, 1] = (R[m2, 0, 1] + R[m2, 1, 0]) / s
        q[m2, 2] = (R[m2, 0, 2] + R[m2, 2, 0]) / s

    # Case 3: R[1,1] is largest diagonal
    m3 = ~m1 & ~m2 & (R[:, 1, 1] > R[:, 2, 2])
    if m3.any():
        s = 2.0 * np.sqrt(1.0 + R[m3, 1, 1] - R[m3, 0, 0] - R[m3, 2, 2])
        q[m3, 3] = (R[m3, 0, 2] - R[m3, 2, 0]) / s
        q[m3, 0] = (R[m3, 0, 1] + R[m3, 1, 0]) / s
        q[m3, 1] = 0.25 * s
        q[m3, 2] = (R[m3, 1, 2] + R[m3, 2, 1]) / s

    # Case 4: R[2,2] is largest diagonal
    m4 = ~m1 & ~m2 & ~m3
    if m4.any():
        s = 2.0 * np.sqrt(1.0 + R[m4, 2, 2] - R[m4, 0, 0] - R[m4, 1, 1])
        q[m4, 3] = (R[m4, 1, 0] - R[m4, 0, 1]) / s
        q[m4, 0] = (R[m4, 0, 2] + R[m4, 2, 0]) / s
        q[m4, 1] = (R[m4, 1, 2] + R[m4, 2, 1]) / s
        q[m4, 2] = 0.25 * s

    return q


def batch_blend_matrices(
    matrices: NDArray,
    indices: NDArray,
    weights: NDArray,
) -> NDArray:
    """Linear-blend per-vertex skinning matrices.

    Parameters
    ----------
    matrices : (B, 4, 4) per-bone skinning matrices
    indices : (N, K) bone indices per vertex
    weights : (N, K) weights per vertex

    Returns
    -------
    (N, 4, 4) blended matrices, sum_k w_k * M[idx_k].
    """
    return np.einsum("nk,nkij->nij", weights, matrices[indices])


def batch_skin_points(
    matrices: NDArray,
    indices: NDArray,
    weights: NDArray,
    points: NDArray,
) -> NDArray:
    """Apply linear blend skinning to (N, 3) points."""
    blended = batch_blend_matrices(matrices, indices, weights)
    return np.einsum("nij,nj->ni", blended[:, :3, :3], points) + blended[:, :3, 3]


def batch_mat3_condition(M: NDArray) -> NDArray:
    """2-norm condition number of (N, 3, 3) matrices; inf when singular."""
    s = np.linalg.svd(M, compute_uv=False)
    largest, smallest = s[:, 0], s[:, -1]
    cond = np.full(len(M), np.inf)
    ok = np.isfinite(largest) & (smallest > 0.0)
    cond[ok] = largest[ok] / smallest[ok]
    return cond


def batch_transform_normals(M: NDArray, normals: NDArray) -> NDArray:
    """Transform (N, 3) normals by the inverse-transpose of (N, 3, 3) matrices.

    Uses the cofactor matrix, sign-corrected by the determinant, so no
    inverse is taken: a singular matrix (e.g. a zero-scaled bone) still
    yields the normal of the collapsed surface, or zero if none exists.
    Output rows are unit length or zero.
    """
    a, b, c = M[:, :, 0], M[:, :, 1], M[:, :, 2]
    out = (
        normals[:, 0:1] * np.cross(b, c)
        + normals[:, 1:2] * np.cross(c, a)
        + normals[:, 2:3] * np.cross(a, b)
    )
    det = np.einsum("ni,ni->n", a, np.cross(b, c))
    out[det < 0.0] *= -1.0
    return normalize_rows(out)
