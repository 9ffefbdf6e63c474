"""Tests for the coarse bounding-box fit."""

import numpy as np
import pytest

from armorfit.core.events import EventBus, FittingEvent
from armorfit.core.math_utils import quat_from_axis_angle, quat_identity, vec3
from armorfit.core.skeleton import Bone, BoneTransform, Skeleton
from armorfit.fitting.bounding_box import fit_armor_to_bounding_box
from armorfit.fitting.regions import BodyRegion, compute_body_regions

from mesh_builders import grid, make_mesh, rigid_skin


def _region(lo, hi, orientation=None) -> BodyRegion:
    lo = np.asarray(lo, dtype=np.float64)
    hi = np.asarray(hi, dtype=np.float64)
    return BodyRegion(
        name="Spine2",
        bone_id=0,
        vertex_indices=np.arange(8),
        box_min=lo,
        box_max=hi,
        centroid=(lo + hi) / 2,
        orientation=quat_identity() if orientation is None else orientation,
    )


def _box_mesh(size, center=(0.0, 0.0, 0.0)):
    corners = np.array([[x, y, z] for x in (-0.5, 0.5) for y in (-0.5, 0.5) for z in (-0.5, 0.5)])
    return make_mesh("box", corners * np.asarray(size) + np.asarray(center))


def test_fits_inside_expanded_region(sphere_avatar, decagon_garment):
    region = compute_body_regions(sphere_avatar, sphere_avatar.skeleton)["Spine2"]
    margin = 0.02
    fitted = fit_armor_to_bounding_box(decagon_garment, region, margin)

    assert fitted is decagon_garment
    pts = fitted.geometry.positions_3d()
    lo, hi = region.expanded(margin)
    assert np.all(pts >= lo - 1e-5)
    assert np.all(pts <= hi + 1e-5)
    g_lo, g_hi = pts.min(axis=0), pts.max(axis=0)
    np.testing.assert_array_almost_equal((g_lo + g_hi) / 2, region.center, decimal=5)


def test_small_garment_scaled_up_to_tightest_axis():
    region = _region([-1, -2, -3], [1, 2, 3])
    garment = _box_mesh([0.1, 0.1, 0.1], center=(5, 5, 5))
    fit_armor_to_bounding_box(garment, region, margin=0.0)
    g_lo, g_hi = garment.geometry.bounding_box()
    # Uniform scale: the x axis (size 2) limits the fit
    np.testing.assert_array_almost_equal(g_hi - g_lo, [2, 2, 2], decimal=5)
    np.testing.assert_array_almost_equal((g_lo + g_hi) / 2, [0, 0, 0], decimal=5)


def test_large_garment_scaled_down():
    region = _region([0, 0, 0], [1, 1, 1])
    garment = _box_mesh([4, 2, 2])
    fit_armor_to_bounding_box(garment, region, margin=0.1)
    g_lo, g_hi = garment.geometry.bounding_box()
    np.testing.assert_array_almost_equal(g_hi - g_lo, [1.2, 0.6, 0.6], decimal=5)
    assert region.contains(garment.geometry.positions_3d(), margin=0.1, tol=1e-5)


def test_topology_untouched():
    pos, tris = grid(n=4)
    garment = make_mesh("plate", pos, tris)
    before = garment.geometry.indices.copy()
    fit_armor_to_bounding_box(garment, _region([0, 0, 0], [1, 1, 1]), margin=0.02)
    assert garment.vertex_count == 16
    np.testing.assert_array_equal(garment.geometry.indices, before)


def test_flat_garment_axis_does_not_vote():
    region = _region([-1, -1, -1], [1, 1, 1])
    pos, tris = grid(size=1.0, n=3)  # flat in Z
    garment = make_mesh("plate", pos, tris)
    fit_armor_to_bounding_box(garment, region, margin=0.0)
    g_lo, g_hi = garment.geometry.bounding_box()
    np.testing.assert_array_almost_equal(g_hi - g_lo, [2, 2, 0], decimal=5)


def test_degenerate_region_translates_only():
    region = _region([1, 1, 1], [1, 3, 3])  # zero extent in X
    garment = _box_mesh([0.5, 0.5, 0.5])
    bus = EventBus()
    seen = []
    bus.subscribe(FittingEvent.DEGENERATE_REGION, lambda **kw: seen.append(kw))

    fit_armor_to_bounding_box(garment, region, margin=0.02, events=bus)

    g_lo, g_hi = garment.geometry.bounding_box()
    np.testing.assert_array_almost_equal(g_hi - g_lo, [0.5, 0.5, 0.5], decimal=6)
    np.testing.assert_array_almost_equal((g_lo + g_hi) / 2, [1, 2, 2], decimal=6)
    assert len(seen) == 1
    assert seen[0]["region"] == "Spine2"


def test_rotates_into_bone_orientation():
    turn = quat_from_axis_angle(vec3(0, 0, 1), np.pi / 2)
    skel = Skeleton([Bone(0, "Arm", bind=BoneTransform(rotation=turn))])
    # Avatar limb long along Y
    body = _box_mesh([0.5, 4.0, 0.5])
    rigid_skin(body, skel, np.zeros(body.vertex_count, dtype=np.int64))
    region = compute_body_regions(body, skel)["Arm"]

    # Sleeve modelled along X in its own space
    sleeve = _box_mesh([4.0, 0.5, 0.5])
    fit_armor_to_bounding_box(sleeve, region, margin=0.0)
    g_lo, g_hi = sleeve.geometry.bounding_box()
    np.testing.assert_array_almost_equal(g_hi - g_lo, [0.5, 4.0, 0.5], decimal=5)


def test_empty_garment_is_noop():
    garment = make_mesh("empty", np.zeros((0, 3)))
    assert fit_armor_to_bounding_box(garment, _region([0, 0, 0], [1, 1, 1]), 0.02) is garment
