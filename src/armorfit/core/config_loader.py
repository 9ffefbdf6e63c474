"""JSON config file loading utilities."""

import json
from pathlib import Path
from typing import Any

from armorfit.constants import PRESETS_FILE
from armorfit.core.config import FittingConfig
from armorfit.core.errors import InvalidConfigError


def load_json(path: Path) -> Any:
    """Load and return parsed JSON from a file."""
    with open(path) as f:
        return json.load(f)


def load_presets(path: Path = PRESETS_FILE) -> dict[str, dict[str, Any]]:
    """Load the named fitting presets from assets/config/."""
    return load_json(path)


def load_preset(name: str, path: Path = PRESETS_FILE) -> FittingConfig:
    """Build a FittingConfig from a named preset."""
    presets = load_presets(path)
    if name not in presets:
        raise InvalidConfigError(
            f"Unknown preset {name!r} (available: {', '.join(sorted(presets))})"
        )
    return FittingConfig.from_dict(presets[name])


def load_fitting_config(path: Path, preset: str | None = None) -> FittingConfig:
    """Load a FittingConfig from a JSON file, optionally layered on a preset."""
    data = load_json(Path(path))
    if not isinstance(data, dict):
        raise InvalidConfigError(f"Config file {path} must contain a JSON object")
    if preset is not None:
        base = load_preset(preset)
        return FittingConfig.from_dict({**base.to_dict(), **data})
    return FittingConfig.from_dict(data)
