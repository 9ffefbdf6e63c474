"""Mesh data structures for geometry storage."""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.constants import MAX_INFLUENCES, WEIGHT_EPSILON
from armorfit.core.skeleton import Skeleton


@dataclass
class BufferGeometry:
    """Stores vertex attribute arrays for a mesh.

    positions: Nx3 flat float32 array (x,y,z per vertex)
    normals: Nx3 flat float32 array
    indices: triangle index array (uint32), optional for non-indexed geometry
    uvs: optional Nx2 flat float32 array
    skin_indices: optional Nx4 flat uint16 bone indices
    skin_weights: optional Nx4 flat float32 bone weights; unused slots
        carry index 0 and weight 0
    """
    positions: NDArray[np.float32]
    normals: NDArray[np.float32]
    indices: Optional[NDArray[np.uint32]] = None
    vertex_count: int = 0
    uvs: Optional[NDArray[np.float32]] = None
    skin_indices: Optional[NDArray[np.uint16]] = None
    skin_weights: Optional[NDArray[np.float32]] = None

    def __post_init__(self):
        if self.vertex_count == 0:
            self.vertex_count = len(self.positions) // 3

    @property
    def triangle_count(self) -> int:
        if self.indices is not None:
            return len(self.indices) // 3
        return self.vertex_count // 3

    @property
    def has_indices(self) -> bool:
        return self.indices is not None and len(self.indices) > 0

    @property
    def has_skin(self) -> bool:
        """True if any vertex carries a nonzero bone weight."""
        if self.skin_weights is None or self.skin_indices is None:
            return False
        return bool(np.any(self.skin_weights > 0.0))

    def positions_3d(self) -> NDArray[np.float64]:
        return self.positions.reshape(-1, 3).astype(np.float64)

    def set_positions_3d(self, pos: NDArray) -> None:
        self.positions = np.ascontiguousarray(pos, dtype=np.float32).ravel()

    def triangles(self) -> NDArray[np.int64]:
        """(T, 3) triangle vertex indices (sequential if non-indexed)."""
        if self.has_indices:
            return self.indices.reshape(-1, 3).astype(np.int64)
        return np.arange(self.triangle_count * 3, dtype=np.int64).reshape(-1, 3)

    def skin_arrays(self) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
        """(N, 4) bone indices and (N, 4) weights."""
        if self.skin_indices is None or self.skin_weights is None:
            raise ValueError("Geometry has no skin attributes")
        return (
            self.skin_indices.reshape(-1, MAX_INFLUENCES).astype(np.int64),
            self.skin_weights.reshape(-1, MAX_INFLUENCES).astype(np.float64),
        )

    def compute_normals(self) -> None:
        """Compute per-vertex normals from area-weighted face normals."""
        tris = self.triangles()
        if len(tris) == 0:
            return  # point cloud: keep whatever normals were supplied

        pos = self.positions_3d()
        norms = np.zeros_like(pos)
        v0, v1, v2 = pos[tris[:, 0]], pos[tris[:, 1]], pos[tris[:, 2]]
        face_n = np.cross(v1 - v0, v2 - v0)
        np.add.at(norms, tris[:, 0], face_n)
        np.add.at(norms, tris[:, 1], face_n)
        np.add.at(norms, tris[:, 2], face_n)

        lengths = np.linalg.norm(norms, axis=1, keepdims=True)
        lengths = np.maximum(lengths, 1e-10)
        norms /= lengths
        self.normals = norms.ravel().astype(np.float32)

    def bounding_box(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Axis-aligned (min, max) corners."""
        pos = self.positions_3d()
        if len(pos) == 0:
            zero = np.zeros(3, dtype=np.float64)
            return zero, zero.copy()
        return pos.min(axis=0), pos.max(axis=0)

    def bounding_diagonal(self) -> float:
        lo, hi = self.bounding_box()
        return float(np.linalg.norm(hi - lo))

    def get_bounding_center(self) -> NDArray[np.float64]:
        """Center of the axis-aligned bounding box."""
        lo, hi = self.bounding_box()
        return (lo + hi) * 0.5

    def validate_skin_weights(self, epsilon: float = WEIGHT_EPSILON) -> NDArray[np.bool_]:
        """Return a per-vertex mask of rows whose weights do not sum to 1."""
        _, weights = self.skin_arrays()
        sums = weights.sum(axis=1)
        return np.abs(sums - 1.0) > epsilon

    def clone(self) -> "BufferGeometry":
        """Create a deep copy."""
        def _copy(a):
            return a.copy() if a is not None else None

        return BufferGeometry(
            positions=self.positions.copy(),
            normals=self.normals.copy(),
            indices=_copy(self.indices),
            vertex_count=self.vertex_count,
            uvs=_copy(self.uvs),
            skin_indices=_copy(self.skin_indices),
            skin_weights=_copy(self.skin_weights),
        )


@dataclass
class MeshInstance:
    """A named mesh, optionally skinned to a skeleton.

    A mesh is owned by the pipeline stage currently processing it; stages
    hand the same instance back to the caller when they finish.
    """
    name: str
    geometry: BufferGeometry
    skeleton: Optional[Skeleton] = None

    # Optional: rest positions for deformation systems
    rest_positions: Optional[NDArray[np.float32]] = None
    rest_normals: Optional[NDArray[np.float32]] = None

    def store_rest_pose(self) -> None:
        """Save current positions/normals as rest pose for deformation."""
        self.rest_positions = self.positions.copy()
        self.rest_normals = self.normals.copy()

    @property
    def is_skinned(self) -> bool:
        return self.skeleton is not None and self.geometry.has_skin

    @property
    def vertex_count(self) -> int:
        return self.geometry.vertex_count

    @property
    def positions(self) -> NDArray[np.float32]:
        return self.geometry.positions

    @positions.setter
    def positions(self, value: NDArray[np.float32]):
        self.geometry.positions = value

    @property
    def normals(self) -> NDArray[np.float32]:
        return self.geometry.normals

    @normals.setter
    def normals(self, value: NDArray[np.float32]):
        self.geometry.normals = value

    def clone(self) -> "MeshInstance":
        """Deep-copy the geometry; the skeleton is shared (it is immutable)."""
        return MeshInstance(
            name=self.name,
            geometry=self.geometry.clone(),
            skeleton=self.skeleton,
        )


@dataclass
class SkinnedGarment:
    """A garment mesh carrying transferred skin weights."""
    mesh: MeshInstance
    skeleton: Skeleton
    fallback_vertex_count: int = 0  # vertices bound via nearest-vertex fallback

    @property
    def vertex_count(self) -> int:
        return self.mesh.vertex_count

    def influence_counts(self) -> NDArray[np.int64]:
        """Number of nonzero bone weights per vertex."""
        _, weights = self.mesh.geometry.skin_arrays()
        return np.count_nonzero(weights > 0.0, axis=1)
