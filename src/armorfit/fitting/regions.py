"""Body region extraction: group avatar vertices by their dominant bone."""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from armorfit.constants import DEGENERATE_EXTENT
from armorfit.core.events import EventBus, FittingEvent, publish
from armorfit.core.math_utils import Quat, Vec3, batch_mat3_to_quat, quat_normalize
from armorfit.core.mesh import MeshInstance
from armorfit.core.skeleton import Skeleton

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class BodyRegion:
    """Avatar vertices dominated by one bone, summarised as a box.

    Valid only for the skeleton + mesh pair that produced it.
    """
    name: str
    bone_id: int
    vertex_indices: NDArray[np.int64]
    box_min: Vec3
    box_max: Vec3
    centroid: Vec3
    orientation: Quat  # bone bind-pose world rotation [x, y, z, w]

    @property
    def vertex_count(self) -> int:
        return len(self.vertex_indices)

    @property
    def size(self) -> Vec3:
        return self.box_max - self.box_min

    @property
    def center(self) -> Vec3:
        return (self.box_min + self.box_max) * 0.5

    @property
    def volume(self) -> float:
        return float(np.prod(self.size))

    @property
    def is_degenerate(self) -> bool:
        """True if the box is flat along any axis."""
        return bool(np.any(self.size < DEGENERATE_EXTENT))

    def expanded(self, margin: float) -> tuple[Vec3, Vec3]:
        """Box corners grown outward by *margin* on every axis."""
        return self.box_min - margin, self.box_max + margin

    def contains(self, points: NDArray, margin: float = 0.0, tol: float = 1e-6) -> bool:
        lo, hi = self.expanded(margin)
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return bool(np.all(pts >= lo - tol) and np.all(pts <= hi + tol))


def _bone_world_rotations(skeleton: Skeleton) -> NDArray[np.float64]:
    """(B, 4) bind-pose world rotations with scale removed."""
    basis = skeleton.bind_world_matrices()[:, :3, :3]
    scale = np.linalg.norm(basis, axis=1)  # column norms
    scale = np.where(scale < 1e-12, 1.0, scale)
    rot = basis / scale[:, np.newaxis, :]
    return batch_mat3_to_quat(rot)


def compute_body_regions(
    avatar_mesh: MeshInstance,
    skeleton: Skeleton,
    events: EventBus | None = None,
) -> dict[str, BodyRegion]:
    """Derive one region per bone that dominates at least one vertex.

    Each avatar vertex is assigned to its single highest-weight bone.
    Bones that win no vertex are omitted. An avatar without skin weights
    yields an empty mapping, which callers treat as "no fit possible".

    Returns
    -------
    dict mapping bone name -> BodyRegion
    """
    geom = avatar_mesh.geometry
    if not geom.has_skin:
        logger.warning("Avatar '%s' has no skin weights; no body regions", avatar_mesh.name)
        publish(events, FittingEvent.NO_BODY_REGIONS, avatar=avatar_mesh.name)
        return {}

    positions = geom.positions_3d()
    skin_idx, skin_w = geom.skin_arrays()

    # Dominant bone per vertex; rows with no weight at all are ignored
    weighted = skin_w.max(axis=1) > 0.0
    dominant = skin_idx[np.arange(len(skin_idx)), np.argmax(skin_w, axis=1)]

    out_of_range = weighted & (dominant >= len(skeleton))
    if np.any(out_of_range):
        logger.warning(
            "Avatar '%s': %d vertices reference bones outside the skeleton; ignored",
            avatar_mesh.name, int(out_of_range.sum()),
        )
        weighted &= ~out_of_range

    vert_idx = np.nonzero(weighted)[0]
    bones = dominant[vert_idx]
    rotations = _bone_world_rotations(skeleton)

    regions: dict[str, BodyRegion] = {}
    order = np.argsort(bones, kind="stable")
    sorted_bones = bones[order]
    unique_bones, starts = np.unique(sorted_bones, return_index=True)
    ends = np.append(starts[1:], len(sorted_bones))

    for bone_id, start, end in zip(unique_bones, starts, ends):
        members = vert_idx[order[start:end]]
        pts = positions[members]
        bone = skeleton[int(bone_id)]
        regions[bone.name] = BodyRegion(
            name=bone.name,
            bone_id=int(bone_id),
            vertex_indices=members,
            box_min=pts.min(axis=0),
            box_max=pts.max(axis=0),
            centroid=pts.mean(axis=0),
            orientation=quat_normalize(rotations[int(bone_id)]),
        )

    if not regions:
        publish(events, FittingEvent.NO_BODY_REGIONS, avatar=avatar_mesh.name)
    logger.info("Found %d body regions on '%s'", len(regions), avatar_mesh.name)
    return regions
