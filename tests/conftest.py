"""Shared synthetic avatars and garments for the fitting tests."""

import numpy as np
import pytest

from armorfit.core.math_utils import vec3
from armorfit.core.skeleton import Bone, BoneTransform, Skeleton

from mesh_builders import decagon, grid, make_mesh, rigid_skin, uv_sphere


@pytest.fixture
def spine_skeleton():
    return Skeleton([Bone(0, "Spine2")])


@pytest.fixture
def sphere_avatar(spine_skeleton):
    """100-vertex sphere, every vertex owned by the single bone 'Spine2'."""
    pos, tris = uv_sphere()
    mesh = make_mesh("avatar", pos, tris)
    return rigid_skin(mesh, spine_skeleton, np.zeros(len(pos), dtype=np.int64))


@pytest.fixture
def two_bone_skeleton():
    return Skeleton([
        Bone(0, "Hips"),
        Bone(1, "Spine2", parent_id=0, bind=BoneTransform(position=vec3(0, 0, 1.2))),
    ])


@pytest.fixture
def two_bone_avatar(two_bone_skeleton):
    """Hips sphere at the origin stacked under a Spine2 sphere at z=1.2."""
    hips_pos, hips_tris = uv_sphere(radius=0.5)
    chest_pos, chest_tris = uv_sphere(radius=0.4, center=(0.0, 0.0, 1.2))
    pos = np.vstack([hips_pos, chest_pos])
    tris = np.vstack([hips_tris, chest_tris + len(hips_pos)])
    mesh = make_mesh("avatar", pos, tris)
    bones = np.concatenate([
        np.zeros(len(hips_pos), dtype=np.int64),
        np.ones(len(chest_pos), dtype=np.int64),
    ])
    return rigid_skin(mesh, two_bone_skeleton, bones)


@pytest.fixture
def plane_avatar(spine_skeleton):
    pos, tris = grid(size=2.0, n=5)
    mesh = make_mesh("floor", pos, tris)
    return rigid_skin(mesh, spine_skeleton, np.zeros(len(pos), dtype=np.int64))


@pytest.fixture
def decagon_garment():
    pos, tris = decagon()
    return make_mesh("band", pos, tris)
