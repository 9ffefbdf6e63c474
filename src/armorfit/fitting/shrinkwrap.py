"""Iterative shrinkwrap: pull garment vertices onto the avatar surface."""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from armorfit.constants import MAX_STEP_DIAGONALS, SMOOTH_STRENGTH
from armorfit.core.errors import InvariantViolationError
from armorfit.core.events import EventBus, FittingEvent, publish
from armorfit.core.mesh import BufferGeometry, MeshInstance
from armorfit.core.spatial import SurfaceIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShrinkwrapOptions:
    iterations: int
    target_offset: float
    rigidity: float
    smoothing_passes: int
    resolve_collisions: bool = False
    workers: int = 1


@dataclass
class ShrinkwrapResult:
    mesh: MeshInstance
    iterations_run: int
    mean_surface_distance: float  # NaN when the avatar has no surface


def extract_edges(indices: NDArray) -> NDArray:
    """Extract unique undirected edges from triangle indices.

    Parameters
    ----------
    indices : (F*3,) int array
        Triangle index buffer.

    Returns
    -------
    (E, 2) int array
        Unique undirected edge pairs.
    """
    tri = np.asarray(indices).reshape(-1, 3).astype(np.int64)
    if len(tri) == 0:
        return np.empty((0, 2), dtype=np.int64)
    e01 = np.column_stack([tri[:, 0], tri[:, 1]])
    e12 = np.column_stack([tri[:, 1], tri[:, 2]])
    e20 = np.column_stack([tri[:, 2], tri[:, 0]])
    all_edges = np.concatenate([e01, e12, e20], axis=0)
    sorted_edges = np.sort(all_edges, axis=1)
    sorted_edges = sorted_edges[sorted_edges[:, 0] != sorted_edges[:, 1]]
    return np.unique(sorted_edges, axis=0)


def laplacian_smooth_displacements(
    edges: NDArray,
    disp: NDArray,
    iterations: int,
    strength: float = SMOOTH_STRENGTH,
) -> NDArray:
    """Laplacian-smooth a displacement field over mesh edges.

    Each pass moves every connected vertex's displacement a fraction
    *strength* toward its neighbors' average. Vertices without neighbors
    keep their displacement. Smoothing displacements rather than positions
    keeps the garment's own surface detail from shrinking.

    Parameters
    ----------
    edges : (E, 2) int array
    disp : (V, 3) float64
    iterations : int
    strength : float
        Blend factor toward neighbor average (0-1).
    """
    V = len(disp)
    d = disp.copy()
    if iterations <= 0 or len(edges) == 0:
        return d

    counts = np.zeros(V, dtype=np.float64)
    np.add.at(counts, edges[:, 0], 1.0)
    np.add.at(counts, edges[:, 1], 1.0)
    has_nbrs = counts > 0

    for _ in range(iterations):
        nbr_sum = np.zeros_like(d)
        np.add.at(nbr_sum, edges[:, 0], d[edges[:, 1]])
        np.add.at(nbr_sum, edges[:, 1], d[edges[:, 0]])
        avg = d.copy()
        avg[has_nbrs] = nbr_sum[has_nbrs] / counts[has_nbrs, np.newaxis]
        d = (1.0 - strength) * d + strength * avg

    return d


def _clamp_steps(step: NDArray, max_len: float) -> NDArray:
    """Scale down any per-vertex step longer than *max_len*."""
    lengths = np.linalg.norm(step, axis=1)
    too_far = lengths > max_len
    if np.any(too_far):
        step = step.copy()
        step[too_far] *= (max_len / lengths[too_far])[:, np.newaxis]
    return step


def _check_finite(geom: BufferGeometry, name: str) -> None:
    if not np.all(np.isfinite(geom.positions)):
        bad = int(np.sum(~np.isfinite(geom.positions.reshape(-1, 3)).all(axis=1)))
        raise InvariantViolationError(
            f"Shrinkwrap produced {bad} non-finite vertex positions on '{name}'"
        )


def fit_armor_to_body(
    garment: MeshInstance,
    avatar: MeshInstance,
    options: ShrinkwrapOptions,
    events: EventBus | None = None,
) -> ShrinkwrapResult:
    """Conform *garment* to the surface of *avatar*.

    Each iteration projects every garment vertex (positions captured at the
    start of the iteration) onto the closest avatar triangle, offsets the
    hit outward along the face normal by ``target_offset`` and moves the
    vertex ``1 - rigidity`` of the way there. Steps are clamped to a
    multiple of the meshes' bounding diagonal. Normals are recomputed after
    every iteration.

    After all iterations the accumulated displacement is relaxed
    ``smoothing_passes`` times over the garment's edges. With
    ``resolve_collisions`` set, vertices left behind the avatar surface are
    finally pushed back out to the standoff distance.

    An avatar without triangles leaves the garment unchanged.
    """
    geom = garment.geometry
    avatar_geom = avatar.geometry

    if avatar_geom.triangle_count == 0 or avatar_geom.vertex_count == 0:
        logger.warning(
            "Avatar '%s' has no triangles; shrinkwrap skipped for '%s'",
            avatar.name, garment.name,
        )
        publish(events, FittingEvent.EMPTY_AVATAR_SURFACE, avatar=avatar.name)
        return ShrinkwrapResult(garment, iterations_run=0, mean_surface_distance=float("nan"))

    if geom.vertex_count == 0:
        return ShrinkwrapResult(garment, iterations_run=0, mean_surface_distance=float("nan"))

    surface = SurfaceIndex(avatar_geom)
    original = geom.positions_3d()
    pos = original.copy()

    max_step = MAX_STEP_DIAGONALS * max(
        geom.bounding_diagonal(), avatar_geom.bounding_diagonal(), 1e-9,
    )
    blend = 1.0 - options.rigidity
    iterations_run = 0

    for it in range(options.iterations):
        if blend <= 0.0:
            break
        current = pos.copy()  # barrier: all reads come from this snapshot
        hits = surface.query(current, workers=options.workers)
        targets = hits.points + hits.normals * options.target_offset
        step = _clamp_steps((targets - current) * blend, max_step)
        pos = current + step
        geom.set_positions_3d(pos)
        geom.compute_normals()
        logger.debug(
            "Shrinkwrap '%s' iteration %d: mean step %.5f",
            garment.name, it + 1, float(np.linalg.norm(step, axis=1).mean()),
        )
        iterations_run += 1

    if options.smoothing_passes > 0 and geom.has_indices:
        edges = extract_edges(geom.indices)
        disp = laplacian_smooth_displacements(
            edges, pos - original, iterations=options.smoothing_passes,
        )
        pos = original + disp
        geom.set_positions_3d(pos)
        geom.compute_normals()

    if options.resolve_collisions and blend > 0.0:
        hits = surface.query(pos, workers=options.workers)
        inside = hits.signed_distances(pos) < 0.0
        if np.any(inside):
            pos = pos.copy()
            pos[inside] = hits.points[inside] + hits.normals[inside] * options.target_offset
            geom.set_positions_3d(pos)
            geom.compute_normals()
            logger.info(
                "Collision pass pushed %d vertices of '%s' outside the body",
                int(inside.sum()), garment.name,
            )

    _check_finite(geom, garment.name)

    final_hits = surface.query(geom.positions_3d(), workers=options.workers)
    mean_dist = float(final_hits.distances.mean())
    logger.info(
        "Shrinkwrap '%s': %d iterations, rigidity=%.2f, mean surface distance %.5f",
        garment.name, iterations_run, options.rigidity, mean_dist,
    )
    publish(
        events, FittingEvent.STAGE_COMPLETE,
        stage="shrinkwrap", iterations=iterations_run, mean_surface_distance=mean_dist,
    )
    return ShrinkwrapResult(garment, iterations_run=iterations_run, mean_surface_distance=mean_dist)
