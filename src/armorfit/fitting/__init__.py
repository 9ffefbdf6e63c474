"""Fitting pipeline: region extraction, coarse fit, shrinkwrap, weight transfer."""

from armorfit.fitting.regions import BodyRegion, compute_body_regions
from armorfit.fitting.bounding_box import fit_armor_to_bounding_box
from armorfit.fitting.shrinkwrap import ShrinkwrapOptions, ShrinkwrapResult, fit_armor_to_body
from armorfit.fitting.binder import BindOptions, bind_armor_to_skeleton
from armorfit.fitting.service import (
    ArmorFittingService,
    FittingFailure,
    FittingResult,
    FittingStats,
    FittingWarning,
)

__all__ = [
    "ArmorFittingService",
    "BindOptions",
    "BodyRegion",
    "FittingFailure",
    "FittingResult",
    "FittingStats",
    "FittingWarning",
    "ShrinkwrapOptions",
    "ShrinkwrapResult",
    "bind_armor_to_skeleton",
    "compute_body_regions",
    "fit_armor_to_body",
    "fit_armor_to_bounding_box",
]
