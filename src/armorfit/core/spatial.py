"""Spatial acceleration for point-to-surface queries against a triangle mesh."""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from armorfit.constants import SURFACE_K
from armorfit.core.math_utils import normalize_rows
from armorfit.core.mesh import BufferGeometry

logger = logging.getLogger(__name__)

# Below this many triangles every triangle is tested for every query point
BRUTE_FORCE_TRIANGLES = 64


def closest_point_on_triangle_batch(
    P: NDArray, A: NDArray, B: NDArray, C: NDArray,
) -> NDArray:
    """Compute closest point on triangle for N point-triangle pairs.

    Vectorized Ericson algorithm (Real-Time Collision Detection, Ch. 5.1.5).

    Parameters
    ----------
    P, A, B, C : (N, 3) float64
        Query points and triangle vertices.

    Returns
    -------
    (N, 3) float64
        Closest point on each triangle.
    """
    ab = B - A
    ac = C - A
    ap = P - A

    d1 = np.sum(ab * ap, axis=1)
    d2 = np.sum(ac * ap, axis=1)

    bp = P - B
    d3 = np.sum(ab * bp, axis=1)
    d4 = np.sum(ac * bp, axis=1)

    cp = P - C
    d5 = np.sum(ab * cp, axis=1)
    d6 = np.sum(ac * cp, axis=1)

    # Vertex regions
    reg_a = (d1 <= 0) & (d2 <= 0)
    reg_b = (d3 >= 0) & (d4 <= d3)
    reg_c = (d6 >= 0) & (d5 <= d6)

    # Edge AB
    vc = d1 * d4 - d3 * d2
    denom_ab = d1 - d3
    v_ab = d1 / np.where(np.abs(denom_ab) < 1e-30, 1.0, denom_ab)
    reg_ab = (vc <= 0) & (d1 >= 0) & (d3 <= 0)

    # Edge AC
    vb = d5 * d2 - d1 * d6
    denom_ac = d2 - d6
    w_ac = d2 / np.where(np.abs(denom_ac) < 1e-30, 1.0, denom_ac)
    reg_ac = (vb <= 0) & (d2 >= 0) & (d6 <= 0)

    # Edge BC
    va = d3 * d6 - d5 * d4
    denom_bc = (d4 - d3) + (d5 - d6)
    w_bc = (d4 - d3) / np.where(np.abs(denom_bc) < 1e-30, 1.0, denom_bc)
    reg_bc = (va <= 0) & ((d4 - d3) >= 0) & ((d5 - d6) >= 0)

    # Interior (guard against degenerate triangles)
    denom = va + vb + vc
    safe_denom = np.where(np.abs(denom) < 1e-30, 1.0, denom)
    v_int = vb / safe_denom
    w_int = vc / safe_denom

    # Later assignments overwrite earlier ones
    result = A + v_int[:, np.newaxis] * ab + w_int[:, np.newaxis] * ac
    result = np.where(reg_bc[:, np.newaxis], B + w_bc[:, np.newaxis] * (C - B), result)
    result = np.where(reg_ac[:, np.newaxis], A + w_ac[:, np.newaxis] * ac, result)
    result = np.where(reg_ab[:, np.newaxis], A + v_ab[:, np.newaxis] * ab, result)
    result = np.where(reg_c[:, np.newaxis], C, result)
    result = np.where(reg_b[:, np.newaxis], B, result)
    result = np.where(reg_a[:, np.newaxis], A, result)
    return result


@dataclass
class SurfaceHits:
    """Result of a nearest-surface query for Q points."""
    points: NDArray[np.float64]     # (Q, 3) closest surface points
    normals: NDArray[np.float64]    # (Q, 3) unit face normals at those points
    triangles: NDArray[np.int64]    # (Q,) triangle index hit
    distances: NDArray[np.float64]  # (Q,) unsigned distance

    def signed_distances(self, query_pts: NDArray) -> NDArray[np.float64]:
        """Distance along the face normal; negative means behind the surface."""
        return np.sum((query_pts - self.points) * self.normals, axis=1)


class SurfaceIndex:
    """KDTree-accelerated point-to-surface projection onto a fixed mesh.

    Candidate triangles are the ``k`` nearest by centroid; the exact
    closest point is then taken over those candidates. Small meshes are
    searched exhaustively.
    """

    def __init__(self, geometry: BufferGeometry, k: int = SURFACE_K):
        self.positions = geometry.positions_3d()
        self.tris = geometry.triangles()
        self.triangle_count = len(self.tris)
        if self.triangle_count == 0:
            raise ValueError("SurfaceIndex requires at least one triangle")

        tri_verts = self.positions[self.tris]  # (F, 3, 3)
        self.face_normals = normalize_rows(np.cross(
            tri_verts[:, 1] - tri_verts[:, 0],
            tri_verts[:, 2] - tri_verts[:, 0],
        ))
        if self.triangle_count <= BRUTE_FORCE_TRIANGLES:
            self.k = self.triangle_count
        else:
            self.k = min(k, self.triangle_count)
        self._tree = cKDTree(tri_verts.mean(axis=1))

    def query(self, query_pts: NDArray, workers: int = 1) -> SurfaceHits:
        """Closest surface point for every row of *query_pts* (Q, 3)."""
        query_pts = np.asarray(query_pts, dtype=np.float64)
        Q = len(query_pts)

        if self.k == self.triangle_count:
            cand_idx = np.broadcast_to(
                np.arange(self.triangle_count), (Q, self.triangle_count),
            )
        else:
            _, cand_idx = self._tree.query(query_pts, k=self.k, workers=workers)
            if cand_idx.ndim == 1:
                cand_idx = cand_idx[:, np.newaxis]

        best_pts = np.zeros((Q, 3), dtype=np.float64)
        best_sq = np.full(Q, np.inf, dtype=np.float64)
        best_tri = np.zeros(Q, dtype=np.int64)

        for ci in range(cand_idx.shape[1]):
            tri_idx = cand_idx[:, ci]
            A = self.positions[self.tris[tri_idx, 0]]
            B = self.positions[self.tris[tri_idx, 1]]
            C = self.positions[self.tris[tri_idx, 2]]

            cp = closest_point_on_triangle_batch(query_pts, A, B, C)
            diff = cp - query_pts
            sq = np.sum(diff * diff, axis=1)

            better = sq < best_sq
            if better.any():
                best_pts[better] = cp[better]
                best_sq[better] = sq[better]
                best_tri[better] = tri_idx[better]

        return SurfaceHits(
            points=best_pts,
            normals=self.face_normals[best_tri],
            triangles=best_tri,
            distances=np.sqrt(best_sq),
        )
