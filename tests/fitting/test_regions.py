"""Tests for body region extraction."""

import numpy as np
import pytest

from armorfit.core.events import EventBus, FittingEvent
from armorfit.core.math_utils import quat_from_axis_angle, vec3
from armorfit.core.skeleton import Bone, BoneTransform, Skeleton
from armorfit.fitting.regions import compute_body_regions

from mesh_builders import make_mesh, skin, uv_sphere


def test_single_bone_owns_everything(sphere_avatar):
    regions = compute_body_regions(sphere_avatar, sphere_avatar.skeleton)
    assert list(regions) == ["Spine2"]
    region = regions["Spine2"]
    assert region.vertex_count == 100
    assert region.bone_id == 0
    np.testing.assert_array_almost_equal(region.box_min, [-0.5, -0.5, -0.5], decimal=1)
    np.testing.assert_array_almost_equal(region.box_max, [0.5, 0.5, 0.5], decimal=1)


def test_regions_split_by_dominant_bone(two_bone_avatar):
    regions = compute_body_regions(two_bone_avatar, two_bone_avatar.skeleton)
    assert set(regions) == {"Hips", "Spine2"}
    assert regions["Hips"].vertex_count == 100
    assert regions["Spine2"].vertex_count == 100
    np.testing.assert_array_almost_equal(regions["Spine2"].center, [0, 0, 1.2], decimal=2)
    assert regions["Hips"].box_max[2] < regions["Spine2"].box_min[2]


def test_every_region_non_empty_with_non_negative_volume(two_bone_avatar):
    for region in compute_body_regions(two_bone_avatar, two_bone_avatar.skeleton).values():
        assert region.vertex_count > 0
        assert region.volume >= 0.0
        assert region.contains(two_bone_avatar.geometry.positions_3d()[region.vertex_indices])


def test_dominant_weight_wins():
    skel = Skeleton([Bone(0, "A"), Bone(1, "B"), Bone(2, "C")])
    pos = np.array([[0, 0, 0], [1, 0, 0], [2, 0, 0]], dtype=np.float64)
    mesh = skin(
        make_mesh("m", pos), skel,
        [[0, 1, 0, 0], [0, 1, 2, 0], [2, 0, 0, 0]],
        [[0.6, 0.4, 0, 0], [0.2, 0.3, 0.5, 0], [1.0, 0, 0, 0]],
    )
    regions = compute_body_regions(mesh, skel)
    assert set(regions) == {"A", "C"}  # B never dominates
    np.testing.assert_array_equal(regions["A"].vertex_indices, [0])
    np.testing.assert_array_equal(regions["C"].vertex_indices, [1, 2])


def test_unweighted_and_out_of_range_vertices_ignored():
    skel = Skeleton([Bone(0, "A")])
    pos = np.array([[0, 0, 0], [1, 1, 1], [5, 5, 5]], dtype=np.float64)
    mesh = skin(
        make_mesh("m", pos), skel,
        [[0, 0, 0, 0], [0, 0, 0, 0], [9, 0, 0, 0]],
        [[1.0, 0, 0, 0], [0, 0, 0, 0], [1.0, 0, 0, 0]],
    )
    regions = compute_body_regions(mesh, skel)
    np.testing.assert_array_equal(regions["A"].vertex_indices, [0])


def test_no_skin_returns_empty_and_signals():
    pos, tris = uv_sphere()
    mesh = make_mesh("bare", pos, tris)
    skel = Skeleton([Bone(0, "Spine2")])
    bus = EventBus()
    seen = []
    bus.subscribe(FittingEvent.NO_BODY_REGIONS, lambda **kw: seen.append(kw))

    assert compute_body_regions(mesh, skel, events=bus) == {}
    assert seen == [{"avatar": "bare"}]


def test_orientation_from_bone_bind_rotation():
    turn = quat_from_axis_angle(vec3(0, 0, 1), np.pi / 2)
    skel = Skeleton([Bone(0, "Arm", bind=BoneTransform(rotation=turn, scale=vec3(2, 2, 2)))])
    pos = np.array([[0, 0, 0], [1, 1, 1]], dtype=np.float64)
    mesh = skin(make_mesh("m", pos), skel, np.zeros((2, 4)), [[1, 0, 0, 0]] * 2)
    region = compute_body_regions(mesh, skel)["Arm"]
    assert abs(np.dot(region.orientation, turn)) == pytest.approx(1.0, abs=1e-9)


def test_degenerate_region_detected():
    skel = Skeleton([Bone(0, "Flat")])
    pos = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float64)
    mesh = skin(make_mesh("m", pos), skel, np.zeros((3, 4)), [[1, 0, 0, 0]] * 3)
    region = compute_body_regions(mesh, skel)["Flat"]
    assert region.is_degenerate
    assert region.volume == 0.0
