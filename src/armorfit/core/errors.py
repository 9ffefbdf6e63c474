"""Exception hierarchy for the fitting pipeline.

Input failures carry a :class:`FailureCode` so the service can report them
to callers as structured failures. Invariant violations are fatal.
"""

from enum import Enum


class FailureCode(Enum):
    NO_SKINNED_MESH = "no_skinned_mesh"
    NO_GARMENT_MESH = "no_garment_mesh"
    NO_BODY_REGIONS = "no_body_regions"
    INVALID_CONFIG = "invalid_config"


class FittingError(Exception):
    """Base class for all armorfit errors."""


class FittingInputError(FittingError, ValueError):
    """Input rejected before any geometry was touched."""

    code: FailureCode = FailureCode.INVALID_CONFIG

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoSkinnedMeshError(FittingInputError):
    code = FailureCode.NO_SKINNED_MESH


class NoGarmentMeshError(FittingInputError):
    code = FailureCode.NO_GARMENT_MESH


class NoBodyRegionsError(FittingInputError):
    code = FailureCode.NO_BODY_REGIONS


class InvalidConfigError(FittingInputError):
    code = FailureCode.INVALID_CONFIG


class InvariantViolationError(FittingError, RuntimeError):
    """A normalization or clamping step produced invalid output."""
