"""Shared constants, defaults and paths for armorfit."""

from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
ASSETS_DIR = PROJECT_ROOT / "assets"
CONFIG_DIR = ASSETS_DIR / "config"
PRESETS_FILE = CONFIG_DIR / "fitting_presets.json"

# Fitting defaults (applied once, in FittingConfig)
DEFAULT_METHOD = "hull"
DEFAULT_MARGIN = 0.02
DEFAULT_TARGET_OFFSET = 0.02
DEFAULT_ITERATIONS = 10
DEFAULT_RIGIDITY = 0.7
DEFAULT_SMOOTHING_PASSES = 3
DEFAULT_SEARCH_RADIUS = 0.05
DEFAULT_TARGET_REGION = "Spine2"
DEFAULT_EXPORT_METHOD = "full"

# Skinning
MAX_INFLUENCES = 4          # bone influences kept per vertex
WEIGHT_EPSILON = 1e-5       # tolerance for "weights sum to 1"
MAX_SKIN_CONDITION = 1e6    # blended skin matrices beyond this are not inverted

# Geometry guards
DEGENERATE_EXTENT = 1e-6    # region/garment box extent treated as zero
MAX_STEP_DIAGONALS = 1.0    # per-iteration move cap, in bounding diagonals
SURFACE_K = 16              # candidate triangles per nearest-point query
SMOOTH_STRENGTH = 0.3       # blend toward neighbor average per smoothing pass
