"""Fitting configuration: one explicit, validated struct per request."""

import math
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any

from armorfit.constants import (
    DEFAULT_EXPORT_METHOD,
    DEFAULT_ITERATIONS,
    DEFAULT_MARGIN,
    DEFAULT_METHOD,
    DEFAULT_RIGIDITY,
    DEFAULT_SEARCH_RADIUS,
    DEFAULT_SMOOTHING_PASSES,
    DEFAULT_TARGET_OFFSET,
    DEFAULT_TARGET_REGION,
)
from armorfit.core.errors import InvalidConfigError


class FitMethod(Enum):
    BOUNDING_BOX = "boundingBox"
    SHRINKWRAP = "shrinkwrap"
    HULL = "hull"
    COLLISION = "collision"

    @property
    def uses_shrinkwrap(self) -> bool:
        return self is not FitMethod.BOUNDING_BOX

    @property
    def resolves_collisions(self) -> bool:
        return self is FitMethod.COLLISION

    @classmethod
    def parse(cls, value: "str | FitMethod") -> "FitMethod":
        if isinstance(value, cls):
            return value
        key = str(value).strip()
        method = _METHOD_ALIASES.get(key.lower())
        if method is None:
            raise InvalidConfigError(f"Unknown fitting method: {value!r}")
        return method


_METHOD_ALIASES = {
    "boundingbox": FitMethod.BOUNDING_BOX,
    "bounding-box": FitMethod.BOUNDING_BOX,
    "bounding_box": FitMethod.BOUNDING_BOX,
    "shrinkwrap": FitMethod.SHRINKWRAP,
    "hull": FitMethod.HULL,
    "collision": FitMethod.COLLISION,
    "collision-aware": FitMethod.COLLISION,
    "collision_aware": FitMethod.COLLISION,
    # Older request names, both plain shrinkwrap passes
    "smooth": FitMethod.SHRINKWRAP,
    "iterative": FitMethod.SHRINKWRAP,
}


class ExportMethod(Enum):
    MINIMAL = "minimal"
    FULL = "full"
    STATIC = "static"

    @classmethod
    def parse(cls, value: "str | ExportMethod") -> "ExportMethod":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        # Request aliases: "game" exports minimal, "skinned" exports full
        key = {"game": "minimal", "skinned": "full"}.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise InvalidConfigError(f"Unknown export method: {value!r}") from None


# Request keys as the HTTP layer sends them -> field names
_CAMEL_KEYS = {
    "targetOffset": "target_offset",
    "smoothingPasses": "smoothing_passes",
    "smoothingIterations": "smoothing_passes",
    "searchRadius": "search_radius",
    "equipmentSlot": "target_region",
    "targetRegion": "target_region",
    "applyGeometryTransform": "apply_geometry_transform",
    "exportMethod": "export_method",
}


@dataclass(frozen=True)
class FittingConfig:
    """Every knob of a fitting request, validated at construction.

    method: how far to deform (bounding box only, or shrinkwrap variants)
    margin: world-unit gap kept around the target region's box
    target_offset: desired standoff between garment and body surface
    iterations: shrinkwrap passes (>= 0)
    rigidity: 0 = hug the body, 1 = keep the garment's shape
    smoothing_passes: relaxation rounds after shrinkwrap (>= 0)
    search_radius: neighbor radius for weight transfer
    target_region: bone/region name the coarse fit aims at
    workers: parallel workers for spatial queries (-1 = all cores)
    """
    method: FitMethod = FitMethod(DEFAULT_METHOD)
    margin: float = DEFAULT_MARGIN
    target_offset: float = DEFAULT_TARGET_OFFSET
    iterations: int = DEFAULT_ITERATIONS
    rigidity: float = DEFAULT_RIGIDITY
    smoothing_passes: int = DEFAULT_SMOOTHING_PASSES
    search_radius: float = DEFAULT_SEARCH_RADIUS
    target_region: str = DEFAULT_TARGET_REGION
    apply_geometry_transform: bool = True
    export_method: ExportMethod = ExportMethod(DEFAULT_EXPORT_METHOD)
    workers: int = 1

    def __post_init__(self):
        object.__setattr__(self, "method", FitMethod.parse(self.method))
        object.__setattr__(self, "export_method", ExportMethod.parse(self.export_method))

        for name in ("margin", "target_offset", "rigidity", "search_radius"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidConfigError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise InvalidConfigError(f"{name} must be finite, got {value!r}")
            object.__setattr__(self, name, float(value))

        for name in ("iterations", "smoothing_passes", "workers"):
            value = getattr(self, name)
            if isinstance(value, float) and value.is_integer():
                value = int(value)
                object.__setattr__(self, name, value)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidConfigError(f"{name} must be an integer, got {value!r}")

        if self.margin < 0:
            raise InvalidConfigError(f"margin must be >= 0, got {self.margin}")
        if self.target_offset < 0:
            raise InvalidConfigError(f"target_offset must be >= 0, got {self.target_offset}")
        if not 0.0 <= self.rigidity <= 1.0:
            raise InvalidConfigError(f"rigidity must be within [0, 1], got {self.rigidity}")
        if self.search_radius <= 0:
            raise InvalidConfigError(f"search_radius must be > 0, got {self.search_radius}")
        if self.iterations < 0:
            raise InvalidConfigError(f"iterations must be >= 0, got {self.iterations}")
        if self.smoothing_passes < 0:
            raise InvalidConfigError(f"smoothing_passes must be >= 0, got {self.smoothing_passes}")
        if self.workers == 0 or self.workers < -1:
            raise InvalidConfigError(f"workers must be >= 1 or -1, got {self.workers}")
        if not isinstance(self.target_region, str) or not self.target_region:
            raise InvalidConfigError("target_region must be a non-empty string")
        object.__setattr__(self, "apply_geometry_transform", bool(self.apply_geometry_transform))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FittingConfig":
        """Build a config from a request/JSON mapping.

        Accepts snake_case field names and the camelCase request keys.
        Missing keys take the defaults; unknown keys are rejected.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in known:
                raise InvalidConfigError(f"Unknown config key: {key!r}")
            if value is None:
                continue
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = value.value if isinstance(value, Enum) else value
        return out

    def merged(self, **overrides: Any) -> "FittingConfig":
        """Copy with some fields replaced (re-validated)."""
        return replace(self, **overrides)
