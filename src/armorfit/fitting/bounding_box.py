"""Coarse rigid fit of a garment into a body region's volume."""

import logging

import numpy as np

from armorfit.constants import DEGENERATE_EXTENT
from armorfit.core.events import EventBus, FittingEvent, publish
from armorfit.core.math_utils import mat4_from_quaternion
from armorfit.core.mesh import MeshInstance
from armorfit.fitting.regions import BodyRegion

logger = logging.getLogger(__name__)


def _is_identity_rotation(q: np.ndarray, tol: float = 1e-6) -> bool:
    return abs(abs(float(q[3])) - 1.0) < tol


def fit_armor_to_bounding_box(
    garment: MeshInstance,
    region: BodyRegion,
    margin: float,
    events: EventBus | None = None,
) -> MeshInstance:
    """Align, scale and center *garment* inside *region*'s box.

    The garment is rotated into the region's orientation about its own box
    center, uniformly scaled so its box fits the region box grown by
    *margin* on every axis, then translated so both box centers coincide.
    Only an affine transform is applied; vertex count and topology are
    untouched.

    A degenerate (zero-extent) region gets translation only.

    Returns the same garment instance.
    """
    geom = garment.geometry
    pos = geom.positions_3d()
    if len(pos) == 0:
        return garment

    if region.is_degenerate:
        offset = region.center - geom.get_bounding_center()
        geom.set_positions_3d(pos + offset)
        logger.warning(
            "Region '%s' is degenerate (size %s); translating garment only",
            region.name, np.round(region.size, 6).tolist(),
        )
        publish(
            events, FittingEvent.DEGENERATE_REGION,
            region=region.name, size=tuple(float(s) for s in region.size),
        )
        return garment

    # Orientation: rotate about the garment's box center
    rotated = not _is_identity_rotation(region.orientation)
    if rotated:
        rot = mat4_from_quaternion(region.orientation)[:3, :3]
        pivot = geom.get_bounding_center()
        pos = (pos - pivot) @ rot.T + pivot

    g_lo, g_hi = pos.min(axis=0), pos.max(axis=0)
    g_size = g_hi - g_lo
    g_center = (g_lo + g_hi) * 0.5

    t_lo, t_hi = region.expanded(margin)
    t_size = t_hi - t_lo
    t_center = (t_lo + t_hi) * 0.5

    # Uniform scale: the tightest axis decides; flat garment axes don't vote
    valid = g_size > DEGENERATE_EXTENT
    if np.any(valid):
        scale = float(np.min(t_size[valid] / g_size[valid]))
    else:
        scale = 1.0

    geom.set_positions_3d((pos - g_center) * scale + t_center)

    if geom.triangle_count > 0:
        geom.compute_normals()
    elif rotated:
        normals = geom.normals.reshape(-1, 3).astype(np.float64) @ rot.T
        geom.normals = normals.ravel().astype(np.float32)

    logger.info(
        "Bounding-box fit '%s' -> '%s': scale=%.4f, offset=%s",
        garment.name, region.name, scale,
        np.round(t_center - g_center, 4).tolist(),
    )
    return garment
