"""Skin-weight transfer from the avatar body to a fitted garment."""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from armorfit.constants import (
    DEFAULT_SEARCH_RADIUS, MAX_INFLUENCES, MAX_SKIN_CONDITION, WEIGHT_EPSILON,
)
from armorfit.core.errors import InvariantViolationError
from armorfit.core.events import EventBus, FittingEvent, publish
from armorfit.core.math_utils import (
    batch_blend_matrices, batch_mat3_condition, batch_skin_points, normalize_rows,
)
from armorfit.core.mesh import MeshInstance, SkinnedGarment

logger = logging.getLogger(__name__)

# Distances below this count as coincident for inverse-distance weighting
_MIN_DISTANCE = 1e-8


@dataclass(frozen=True)
class BindOptions:
    search_radius: float = DEFAULT_SEARCH_RADIUS
    apply_geometry_transform: bool = True
    workers: int = 1


def _normalized_avatar_weights(
    avatar: MeshInstance, bone_count: int,
) -> tuple[NDArray, NDArray, NDArray]:
    """Avatar skin arrays with out-of-range bones dropped and rows renormalized.

    Returns (weighted_vertex_ids, indices (W, 4), weights (W, 4)) for the
    vertices that keep at least one influence.
    """
    idx, w = avatar.geometry.skin_arrays()
    w = np.where(idx < bone_count, w, 0.0)
    idx = np.where(idx < bone_count, idx, 0)
    sums = w.sum(axis=1)
    weighted = np.nonzero(sums > 0.0)[0]
    w = w[weighted] / sums[weighted, np.newaxis]
    return weighted, idx[weighted], w


def _top_influences(acc: NDArray, k: int = MAX_INFLUENCES) -> tuple[NDArray, NDArray]:
    """Keep the *k* largest bone weights per row and renormalize.

    Returns (indices (N, k) int64, weights (N, k) float64); unused slots
    hold index 0 and weight 0.
    """
    N, B = acc.shape
    keep = min(k, B)
    order = np.argsort(-acc, axis=1, kind="stable")[:, :keep]
    top_w = np.take_along_axis(acc, order, axis=1)
    sums = top_w.sum(axis=1, keepdims=True)
    top_w = top_w / np.where(sums > 0.0, sums, 1.0)

    indices = np.zeros((N, k), dtype=np.int64)
    weights = np.zeros((N, k), dtype=np.float64)
    indices[:, :keep] = order
    weights[:, :keep] = top_w
    indices[weights <= 0.0] = 0
    weights[weights < 0.0] = 0.0
    return indices, weights


def _unpose(
    garment: MeshInstance,
    skin_mats: NDArray,
    indices: NDArray,
    weights: NDArray,
    events: EventBus | None,
) -> None:
    """Move garment vertices from the posed body back into bind space.

    Vertices whose blended skinning matrix is singular or ill-conditioned
    (zero-scaled bones, opposing rotations blended 50/50) keep their
    posed position.
    """
    geom = garment.geometry
    g_pos = geom.positions_3d()
    blended = batch_blend_matrices(skin_mats, indices, weights)
    cond = batch_mat3_condition(blended[:, :3, :3])
    good = cond <= MAX_SKIN_CONDITION
    skipped = int(len(good) - good.sum())

    rest = g_pos.copy()
    if np.any(good):
        inv = np.linalg.inv(blended[good])
        rest[good] = np.einsum("nij,nj->ni", inv[:, :3, :3], g_pos[good]) + inv[:, :3, 3]
    if not np.all(np.isfinite(rest)):
        raise InvariantViolationError(
            f"Un-posing '{garment.name}' produced non-finite vertex positions"
        )
    geom.set_positions_3d(rest)

    if geom.triangle_count > 0:
        geom.compute_normals()
    elif np.any(good):
        n = geom.normals.reshape(-1, 3).astype(np.float64)
        # Inverse-transpose of the inverse is the transpose
        n[good] = normalize_rows(
            np.einsum("nji,nj->ni", blended[good][:, :3, :3], n[good])
        )
        geom.normals = n.ravel().astype(np.float32)

    if skipped:
        logger.warning(
            "%d of %d vertices of '%s' have a degenerate blended skin transform; "
            "left in posed position", skipped, len(good), garment.name,
        )
        publish(events, FittingEvent.DEGENERATE_SKIN_TRANSFORM, mesh=garment.name, count=skipped)
    logger.info("Baked avatar pose delta into '%s' rest positions", garment.name)


def bind_armor_to_skeleton(
    garment: MeshInstance,
    avatar: MeshInstance,
    options: BindOptions = BindOptions(),
    events: EventBus | None = None,
) -> Optional[SkinnedGarment]:
    """Transfer skin weights from *avatar* onto *garment*.

    Every garment vertex blends the bone weights of the avatar vertices
    within ``search_radius`` by inverse distance; vertices with no
    neighbor in range fall back to the single nearest avatar vertex. The
    result keeps at most four influences per vertex, each row summing to 1.

    With ``apply_geometry_transform`` and a posed avatar skeleton, the
    neighbor search runs against the posed body and the garment is then
    moved back into the bind pose through the inverse of its blended
    skinning matrix. Vertices whose blended matrix cannot be safely
    inverted stay where they are and are reported as a warning.

    Returns None when the avatar has no skeleton or no skin weights.
    """
    skeleton = avatar.skeleton
    if skeleton is None or len(skeleton) == 0:
        logger.warning("Avatar '%s' has no skeleton; cannot bind '%s'", avatar.name, garment.name)
        publish(events, FittingEvent.BIND_UNAVAILABLE, avatar=avatar.name, reason="no skeleton")
        return None
    if not avatar.geometry.has_skin:
        logger.warning("Avatar '%s' has no skin weights; cannot bind '%s'", avatar.name, garment.name)
        publish(events, FittingEvent.BIND_UNAVAILABLE, avatar=avatar.name, reason="no skin weights")
        return None

    bone_count = len(skeleton)
    weighted, a_idx, a_w = _normalized_avatar_weights(avatar, bone_count)
    if len(weighted) == 0:
        logger.warning("Avatar '%s' has no usable skin weights; cannot bind", avatar.name)
        publish(events, FittingEvent.BIND_UNAVAILABLE, avatar=avatar.name, reason="no skin weights")
        return None

    a_pos = avatar.geometry.positions_3d()[weighted]
    posed = options.apply_geometry_transform and skeleton.is_posed
    skin_mats = skeleton.skinning_matrices() if posed else None
    if posed:
        a_pos = batch_skin_points(skin_mats, a_idx, a_w, a_pos)

    geom = garment.geometry
    g_pos = geom.positions_3d()
    G = len(g_pos)

    tree = cKDTree(a_pos)
    neighbors = tree.query_ball_point(
        g_pos, r=options.search_radius, workers=options.workers,
    )
    lengths = np.fromiter((len(n) for n in neighbors), dtype=np.int64, count=G)

    pair_g = [np.repeat(np.arange(G), lengths)]
    pair_a = [np.fromiter(
        (a for n in neighbors for a in n), dtype=np.int64, count=int(lengths.sum()),
    )]

    lonely = np.nonzero(lengths == 0)[0]
    if len(lonely):
        _, nearest = tree.query(g_pos[lonely], k=1, workers=options.workers)
        pair_g.append(lonely)
        pair_a.append(np.asarray(nearest, dtype=np.int64).reshape(-1))
        logger.warning(
            "%d of %d garment vertices had no avatar vertex within %.4f; "
            "using nearest vertex", len(lonely), G, options.search_radius,
        )
        publish(
            events, FittingEvent.NEAREST_VERTEX_FALLBACK,
            count=int(len(lonely)), search_radius=options.search_radius,
        )

    pg = np.concatenate(pair_g)
    pa = np.concatenate(pair_a)

    dist = np.linalg.norm(g_pos[pg] - a_pos[pa], axis=1)
    idw = 1.0 / np.maximum(dist, _MIN_DISTANCE)

    # Accumulate inverse-distance-weighted bone influences per garment vertex
    acc = np.zeros((G, bone_count), dtype=np.float64)
    rows = np.repeat(pg, MAX_INFLUENCES)
    cols = a_idx[pa].ravel()
    vals = (idw[:, np.newaxis] * a_w[pa]).ravel()
    np.add.at(acc, (rows, cols), vals)
    totals = acc.sum(axis=1, keepdims=True)
    acc /= np.where(totals > 0.0, totals, 1.0)

    indices, weights = _top_influences(acc)

    sums = weights.sum(axis=1)
    bad = ~np.isfinite(sums) | (np.abs(sums - 1.0) > WEIGHT_EPSILON)
    if G and np.any(bad):
        raise InvariantViolationError(
            f"Weight transfer left {int(bad.sum())} vertices of '{garment.name}' "
            f"with weights not summing to 1"
        )

    if posed:
        _unpose(garment, skin_mats, indices, weights, events)

    geom.skin_indices = indices.astype(np.uint16).ravel()
    geom.skin_weights = weights.astype(np.float32).ravel()
    garment.skeleton = skeleton

    logger.info(
        "Bound '%s' to %d-bone skeleton: %d vertices, radius %.4f, %d fallbacks",
        garment.name, bone_count, G, options.search_radius, len(lonely),
    )
    publish(events, FittingEvent.STAGE_COMPLETE, stage="bind", fallbacks=int(len(lonely)))
    return SkinnedGarment(mesh=garment, skeleton=skeleton, fallback_vertex_count=int(len(lonely)))
