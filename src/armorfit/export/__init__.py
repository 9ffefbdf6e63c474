"""GLB export and import of fitted garments."""

from armorfit.export.glb_exporter import export_fitted_armor, write_glb
from armorfit.export.glb_loader import load_glb, load_glb_file

__all__ = ["export_fitted_armor", "load_glb", "load_glb_file", "write_glb"]
