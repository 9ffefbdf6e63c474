"""Armor fitting service: runs the pipeline stages for one request.

Each request clones the caller's garment once, then hands that private
copy from stage to stage. The avatar mesh and its skeleton are only read.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from armorfit.core.config import ExportMethod, FittingConfig
from armorfit.core.errors import (
    FailureCode,
    FittingInputError,
    InvalidConfigError,
    NoBodyRegionsError,
    NoGarmentMeshError,
    NoSkinnedMeshError,
)
from armorfit.core.events import WARNING_EVENTS, EventBus, FittingEvent, publish
from armorfit.core.mesh import MeshInstance, SkinnedGarment
from armorfit.export.glb_exporter import export_fitted_armor
from armorfit.fitting.binder import BindOptions, bind_armor_to_skeleton
from armorfit.fitting.bounding_box import fit_armor_to_bounding_box
from armorfit.fitting.regions import BodyRegion, compute_body_regions
from armorfit.fitting.shrinkwrap import ShrinkwrapOptions, fit_armor_to_body

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FittingWarning:
    """A degenerate-geometry fallback that reduced output quality."""
    event: FittingEvent
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.data.items())
        return f"{self.event.name.lower()}: {details}" if details else self.event.name.lower()


@dataclass(frozen=True)
class FittingFailure:
    code: FailureCode
    message: str


@dataclass(frozen=True)
class FittingStats:
    body_regions: int = 0
    vertex_count: int = 0
    method: str = ""
    iterations: int = 0  # shrinkwrap iterations actually executed


@dataclass
class FittingResult:
    """Outcome of one fitting request.

    Exactly one of ``skinned`` / ``failure`` is set, except when the avatar
    cannot be bound (``skinned`` None, ``failure`` None, and a
    BIND_UNAVAILABLE warning recorded); ``fitted`` then still holds the
    deformed, unskinned garment.
    """
    fitted: Optional[MeshInstance] = None
    skinned: Optional[SkinnedGarment] = None
    stats: FittingStats = field(default_factory=FittingStats)
    warnings: list[FittingWarning] = field(default_factory=list)
    failure: Optional[FittingFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.skinned is not None


class _WarningCollector:
    """Subscribes to the warning events of one request's bus."""

    def __init__(self, bus: EventBus):
        self.warnings: list[FittingWarning] = []
        for event in WARNING_EVENTS:
            bus.subscribe(event, self._make_handler(event))

    def _make_handler(self, event: FittingEvent):
        def handler(**data):
            self.warnings.append(FittingWarning(event, dict(data)))
        return handler


def _validate_inputs(
    avatar: Optional[MeshInstance],
    garment: Optional[MeshInstance],
) -> None:
    if avatar is None or avatar.skeleton is None or avatar.vertex_count == 0:
        name = avatar.name if avatar is not None else None
        raise NoSkinnedMeshError(f"No skinned mesh in avatar {name!r}")
    if garment is None or garment.vertex_count == 0:
        name = garment.name if garment is not None else None
        raise NoGarmentMeshError(f"No mesh in garment {name!r}")
    if not np.all(np.isfinite(garment.geometry.positions)):
        raise NoGarmentMeshError(f"Garment {garment.name!r} has non-finite vertex positions")


def _select_region(regions: dict[str, BodyRegion], target: str) -> BodyRegion:
    if not regions:
        raise NoBodyRegionsError("No body regions found on avatar")
    region = regions.get(target)
    if region is None:
        raise NoBodyRegionsError(
            f"No body region found for target {target!r} "
            f"(available: {', '.join(sorted(regions))})"
        )
    return region


class ArmorFittingService:
    """Fits garments onto skinned avatars.

    The service holds no per-request state; one instance can serve
    concurrent requests. Pass an EventBus to observe stage progress
    alongside the warnings collected on each result.
    """

    def __init__(self, events: EventBus | None = None):
        self._observer = events

    def _request_bus(self) -> EventBus:
        bus = EventBus()
        if self._observer is not None:
            for event in FittingEvent:
                bus.subscribe(event, self._forwarder(event))
        return bus

    def _forwarder(self, event: FittingEvent):
        def forward(**data):
            self._observer.publish(event, **data)
        return forward

    # ── Full pipeline ────────────────────────────────────────────────

    def fit_equipment(
        self,
        avatar: Optional[MeshInstance],
        garment: Optional[MeshInstance],
        config: "FittingConfig | dict | None" = None,
    ) -> FittingResult:
        """Fit *garment* to *avatar* and bind it to the avatar's skeleton.

        Stages: region extraction, bounding-box fit into
        ``config.target_region``, shrinkwrap (all methods except
        ``boundingBox``), weight transfer. The caller's garment is not
        modified; the result holds a fitted copy.

        Input problems (no skinned avatar, no garment mesh, missing target
        region, invalid config) are reported through ``result.failure``.
        Internal invariant violations raise.
        """
        bus = self._request_bus()
        collector = _WarningCollector(bus)
        result = FittingResult()

        try:
            if not isinstance(config, FittingConfig):
                config = FittingConfig.from_dict(config or {})
            _validate_inputs(avatar, garment)
            regions = compute_body_regions(avatar, avatar.skeleton, events=bus)
            region = _select_region(regions, config.target_region)
        except FittingInputError as exc:
            logger.warning("Fitting rejected (%s): %s", exc.code.value, exc.message)
            result.failure = FittingFailure(exc.code, exc.message)
            result.warnings = collector.warnings
            return result

        method = config.method
        stats = {"body_regions": len(regions), "method": method.value, "iterations": 0}
        logger.info(
            "Fitting '%s' onto '%s' region '%s' (method=%s)",
            garment.name, avatar.name, region.name, method.value,
        )

        fitted = garment.clone()

        publish(bus, FittingEvent.STAGE_STARTED, stage="bounding_box")
        fitted = fit_armor_to_bounding_box(fitted, region, config.margin, events=bus)
        publish(bus, FittingEvent.STAGE_COMPLETE, stage="bounding_box")

        if method.uses_shrinkwrap:
            publish(bus, FittingEvent.STAGE_STARTED, stage="shrinkwrap")
            wrap = fit_armor_to_body(
                fitted, avatar,
                ShrinkwrapOptions(
                    iterations=config.iterations,
                    target_offset=config.target_offset,
                    rigidity=config.rigidity,
                    smoothing_passes=config.smoothing_passes,
                    resolve_collisions=method.resolves_collisions,
                    workers=config.workers,
                ),
                events=bus,
            )
            fitted = wrap.mesh
            stats["iterations"] = wrap.iterations_run

        publish(bus, FittingEvent.STAGE_STARTED, stage="bind")
        skinned = bind_armor_to_skeleton(
            fitted, avatar,
            BindOptions(
                search_radius=config.search_radius,
                apply_geometry_transform=config.apply_geometry_transform,
                workers=config.workers,
            ),
            events=bus,
        )

        result.fitted = fitted
        result.skinned = skinned
        result.stats = FittingStats(vertex_count=fitted.vertex_count, **stats)
        result.warnings = collector.warnings
        logger.info(
            "Fitting complete: %d regions, %d vertices, %d iterations, %d warnings",
            result.stats.body_regions, result.stats.vertex_count,
            result.stats.iterations, len(result.warnings),
        )
        return result

    # ── Individual operations ────────────────────────────────────────

    def equip_armor(
        self,
        avatar: Optional[MeshInstance],
        garment: Optional[MeshInstance],
        options: BindOptions = BindOptions(),
    ) -> FittingResult:
        """Bind *garment* to *avatar* as-is, skipping both fit stages."""
        bus = self._request_bus()
        collector = _WarningCollector(bus)
        result = FittingResult()
        try:
            _validate_inputs(avatar, garment)
        except FittingInputError as exc:
            result.failure = FittingFailure(exc.code, exc.message)
            return result

        equipped = garment.clone()
        result.fitted = equipped
        result.skinned = bind_armor_to_skeleton(equipped, avatar, options, events=bus)
        result.stats = FittingStats(
            body_regions=0, vertex_count=equipped.vertex_count, method="equip", iterations=0,
        )
        result.warnings = collector.warnings
        return result

    def export(
        self,
        result: "FittingResult | SkinnedGarment",
        method: "str | ExportMethod" = ExportMethod.FULL,
    ) -> bytes:
        """Serialize a fitted result (or a SkinnedGarment) to GLB bytes."""
        skinned = result.skinned if isinstance(result, FittingResult) else result
        if skinned is None:
            raise InvalidConfigError("Nothing to export: the garment was not bound")
        return export_fitted_armor(skinned, method)
