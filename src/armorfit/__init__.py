"""armorfit: fit armor and clothing meshes onto skinned avatars."""

from armorfit.core.config import ExportMethod, FitMethod, FittingConfig
from armorfit.core.mesh import BufferGeometry, MeshInstance, SkinnedGarment
from armorfit.core.skeleton import Bone, BoneTransform, Skeleton
from armorfit.fitting.service import ArmorFittingService, FittingResult

__version__ = "0.1.0"

__all__ = [
    "ArmorFittingService",
    "Bone",
    "BoneTransform",
    "BufferGeometry",
    "ExportMethod",
    "FitMethod",
    "FittingConfig",
    "FittingResult",
    "MeshInstance",
    "Skeleton",
    "SkinnedGarment",
]
