"""Immutable bone hierarchy with bind-pose transforms.

A :class:`Skeleton` is owned by the caller and only read by the pipeline.
World matrices are composed parent-first, the same way a scene node
computes ``world = parent.world @ local``.
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.core.math_utils import (
    Mat4, Quat, Vec3,
    mat4_compose, mat4_inverse, quat_identity, quat_normalize, vec3,
)


@dataclass(frozen=True, eq=False)
class BoneTransform:
    """Local translation/rotation/scale of a bone relative to its parent."""
    position: Vec3 = field(default_factory=vec3)
    rotation: Quat = field(default_factory=quat_identity)  # [x, y, z, w]
    scale: Vec3 = field(default_factory=lambda: vec3(1, 1, 1))

    def matrix(self) -> Mat4:
        return mat4_compose(
            np.asarray(self.position, dtype=np.float64),
            quat_normalize(np.asarray(self.rotation, dtype=np.float64)),
            np.asarray(self.scale, dtype=np.float64),
        )


@dataclass(frozen=True)
class Bone:
    """A single joint. ``id`` is the bone's index inside its skeleton."""
    id: int
    name: str
    parent_id: Optional[int] = None
    bind: BoneTransform = field(default_factory=BoneTransform)


class Skeleton:
    """The immutable set of bones for one avatar.

    Parameters
    ----------
    bones : sequence of Bone
        Bone ``i`` must have ``id == i``. Parents must exist and the
        hierarchy must be a forest (no cycles).
    pose : dict of bone id -> BoneTransform, optional
        Current local transforms overriding the bind pose. Bones missing
        from the mapping stay at their bind transform.
    """

    def __init__(self, bones, pose: Optional[dict[int, BoneTransform]] = None):
        self._bones: tuple[Bone, ...] = tuple(bones)
        self._pose: dict[int, BoneTransform] = dict(pose or {})
        self._validate()
        self._by_name = {b.name: b for b in self._bones}
        self._order = self._topological_order()
        self._bind_world = self._compose_world(posed=False)
        self._bind_world.setflags(write=False)
        self._pose_world = (
            self._compose_world(posed=True) if self._pose else self._bind_world
        )
        self._pose_world.setflags(write=False)

    # ── Construction checks ──────────────────────────────────────────

    def _validate(self) -> None:
        count = len(self._bones)
        for i, bone in enumerate(self._bones):
            if bone.id != i:
                raise ValueError(f"Bone '{bone.name}' has id {bone.id}, expected {i}")
            if bone.parent_id is not None and not (0 <= bone.parent_id < count):
                raise ValueError(f"Bone '{bone.name}' has unknown parent {bone.parent_id}")
        for bone_id in self._pose:
            if not (0 <= bone_id < count):
                raise ValueError(f"Pose references unknown bone {bone_id}")

    def _topological_order(self) -> list[int]:
        """Bone ids ordered so every parent precedes its children."""
        order: list[int] = []
        state = [0] * len(self._bones)  # 0=unvisited, 1=visiting, 2=done

        def visit(i: int) -> None:
            if state[i] == 2:
                return
            if state[i] == 1:
                raise ValueError(f"Bone hierarchy has a cycle at '{self._bones[i].name}'")
            state[i] = 1
            parent = self._bones[i].parent_id
            if parent is not None:
                visit(parent)
            state[i] = 2
            order.append(i)

        for i in range(len(self._bones)):
            visit(i)
        return order

    def _compose_world(self, posed: bool) -> NDArray[np.float64]:
        world = np.zeros((len(self._bones), 4, 4), dtype=np.float64)
        for i in self._order:
            bone = self._bones[i]
            local_tf = self._pose.get(i, bone.bind) if posed else bone.bind
            local = local_tf.matrix()
            if bone.parent_id is None:
                world[i] = local
            else:
                world[i] = world[bone.parent_id] @ local
        return world

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def bones(self) -> tuple[Bone, ...]:
        return self._bones

    @property
    def bone_names(self) -> list[str]:
        return [b.name for b in self._bones]

    @property
    def is_posed(self) -> bool:
        return bool(self._pose)

    @property
    def pose(self) -> dict[int, BoneTransform]:
        return dict(self._pose)

    def __len__(self) -> int:
        return len(self._bones)

    def __iter__(self):
        return iter(self._bones)

    def __getitem__(self, bone_id: int) -> Bone:
        return self._bones[bone_id]

    def find(self, name: str) -> Optional[Bone]:
        """Find a bone by name."""
        return self._by_name.get(name)

    def children_of(self, bone_id: int) -> list[Bone]:
        return [b for b in self._bones if b.parent_id == bone_id]

    def roots(self) -> list[Bone]:
        return [b for b in self._bones if b.parent_id is None]

    def bind_world_matrices(self) -> NDArray[np.float64]:
        """(B, 4, 4) bind-pose world matrices (read-only)."""
        return self._bind_world

    def pose_world_matrices(self) -> NDArray[np.float64]:
        """(B, 4, 4) current-pose world matrices (bind pose if unposed)."""
        return self._pose_world

    def inverse_bind_matrices(self) -> NDArray[np.float64]:
        return np.array([mat4_inverse(m) for m in self._bind_world])

    def skinning_matrices(self) -> NDArray[np.float64]:
        """(B, 4, 4) pose-vs-bind delta per bone: pose_world @ bind_world^-1."""
        if not self._pose:
            return np.tile(np.eye(4), (len(self._bones), 1, 1))
        return self.pose_world_matrices() @ self.inverse_bind_matrices()

    def with_pose(self, pose: dict[int, BoneTransform]) -> "Skeleton":
        """Return a copy of this skeleton with a current pose attached."""
        return Skeleton(self._bones, pose=pose)

    def without_pose(self) -> "Skeleton":
        return Skeleton(self._bones)

    def __repr__(self) -> str:
        return f"Skeleton({len(self._bones)} bones, posed={self.is_posed})"
