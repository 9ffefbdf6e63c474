"""Export a skinned garment to GLB (binary glTF 2.0).

GLB format:
  12-byte header | JSON chunk | BIN chunk

Export methods:
  - minimal: POSITION, NORMAL, TEXCOORD_0 (if present), indices, JOINTS_0
    and WEIGHTS_0. Bone names are stored in the primitive's ``extras`` so
    the consumer can map joint slots onto its own skeleton. No joint nodes.
  - full: minimal plus one node per bone (bind-pose local TRS and parent
    hierarchy), a ``skin`` with inverse bind matrices, and a mesh node
    referencing that skin.
  - static: positions and normals baked through the skeleton's current
    pose; no skin attributes.

Vertex count and index order are written exactly as stored.
"""

import json
import struct
import logging
from pathlib import Path

import numpy as np
from numpy.typing import NDArray

from armorfit.core.config import ExportMethod
from armorfit.core.errors import NoGarmentMeshError
from armorfit.core.math_utils import batch_blend_matrices, batch_transform_normals
from armorfit.core.mesh import SkinnedGarment
from armorfit.core.skeleton import Skeleton

logger = logging.getLogger(__name__)

# glTF constants
GLTF_FLOAT = 5126           # GL_FLOAT
GLTF_UNSIGNED_INT = 5125    # GL_UNSIGNED_INT
GLTF_UNSIGNED_SHORT = 5123  # GL_UNSIGNED_SHORT
GLTF_ARRAY_BUFFER = 34962
GLTF_ELEMENT_ARRAY_BUFFER = 34963

GLB_MAGIC = 0x46546C67      # "glTF"
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

GENERATOR = "armorfit"


class _BufferBuilder:
    """Accumulates buffer views and accessors over one binary buffer."""

    def __init__(self):
        self.chunks: list[bytes] = []
        self.buffer_views: list[dict] = []
        self.accessors: list[dict] = []
        self.byte_offset = 0

    def add(
        self,
        data: NDArray,
        component_type: int,
        accessor_type: str,
        target: int | None = None,
        bounds: bool = False,
    ) -> int:
        """Append *data* as a new buffer view + accessor; return the accessor index."""
        raw = np.ascontiguousarray(data).tobytes()
        view = {
            "buffer": 0,
            "byteOffset": self.byte_offset,
            "byteLength": len(raw),
        }
        if target is not None:
            view["target"] = target
        view_idx = len(self.buffer_views)
        self.buffer_views.append(view)

        # Keep every view 4-byte aligned
        pad = (4 - len(raw) % 4) % 4
        self.chunks.append(raw + b"\x00" * pad)
        self.byte_offset += len(raw) + pad

        accessor = {
            "bufferView": view_idx,
            "componentType": component_type,
            "count": len(data),
            "type": accessor_type,
        }
        if bounds:
            flat = data.reshape(len(data), -1)
            accessor["min"] = flat.min(axis=0).tolist()
            accessor["max"] = flat.max(axis=0).tolist()
        acc_idx = len(self.accessors)
        self.accessors.append(accessor)
        return acc_idx

    def data(self) -> bytes:
        return b"".join(self.chunks)


def _baked_pose(
    skeleton: Skeleton, positions: NDArray, normals: NDArray,
    skin_idx: NDArray, skin_w: NDArray,
) -> tuple[NDArray, NDArray]:
    """Skin positions/normals through the skeleton's current pose."""
    blended = batch_blend_matrices(skeleton.skinning_matrices(), skin_idx, skin_w)
    pos = np.einsum("nij,nj->ni", blended[:, :3, :3], positions) + blended[:, :3, 3]
    # Normals: N' = (M^-T)[:3,:3] * N, singular matrices included
    nrm = batch_transform_normals(blended[:, :3, :3], normals)
    return pos, nrm


def _joint_nodes(skeleton: Skeleton) -> list[dict]:
    """One glTF node per bone, node index == bone id."""
    nodes = []
    for bone in skeleton:
        node = {
            "name": bone.name,
            "translation": np.asarray(bone.bind.position, dtype=float).tolist(),
            "rotation": np.asarray(bone.bind.rotation, dtype=float).tolist(),
            "scale": np.asarray(bone.bind.scale, dtype=float).tolist(),
        }
        children = [c.id for c in skeleton.children_of(bone.id)]
        if children:
            node["children"] = children
        nodes.append(node)
    return nodes


def _build_gltf(skinned: SkinnedGarment, method: ExportMethod) -> tuple[dict, bytes]:
    """Build glTF JSON document and binary buffer for one skinned garment."""
    mesh = skinned.mesh
    geom = mesh.geometry
    skeleton = skinned.skeleton
    builder = _BufferBuilder()

    positions = geom.positions_3d()
    normals = geom.normals.reshape(-1, 3).astype(np.float64)
    skin_idx, skin_w = geom.skin_arrays()

    if method is ExportMethod.STATIC:
        positions, normals = _baked_pose(skeleton, positions, normals, skin_idx, skin_w)

    attributes = {
        "POSITION": builder.add(
            positions.astype(np.float32), GLTF_FLOAT, "VEC3",
            GLTF_ARRAY_BUFFER, bounds=True,
        ),
        "NORMAL": builder.add(
            normals.astype(np.float32), GLTF_FLOAT, "VEC3", GLTF_ARRAY_BUFFER,
        ),
    }
    if geom.uvs is not None and len(geom.uvs) == geom.vertex_count * 2:
        attributes["TEXCOORD_0"] = builder.add(
            geom.uvs.reshape(-1, 2).astype(np.float32), GLTF_FLOAT, "VEC2",
            GLTF_ARRAY_BUFFER,
        )
    if method is not ExportMethod.STATIC:
        attributes["JOINTS_0"] = builder.add(
            skin_idx.astype(np.uint16), GLTF_UNSIGNED_SHORT, "VEC4", GLTF_ARRAY_BUFFER,
        )
        attributes["WEIGHTS_0"] = builder.add(
            skin_w.astype(np.float32), GLTF_FLOAT, "VEC4", GLTF_ARRAY_BUFFER,
        )

    primitive: dict = {"attributes": attributes}
    if geom.has_indices:
        primitive["indices"] = builder.add(
            geom.indices.astype(np.uint32), GLTF_UNSIGNED_INT, "SCALAR",
            GLTF_ELEMENT_ARRAY_BUFFER, bounds=True,
        )
    if method is ExportMethod.MINIMAL:
        primitive["extras"] = {"boneNames": skeleton.bone_names}

    meshes = [{"name": mesh.name or "armor", "primitives": [primitive]}]
    mesh_node: dict = {"name": mesh.name or "armor", "mesh": 0}
    skins = []

    if method is ExportMethod.FULL:
        nodes = _joint_nodes(skeleton)
        ibm = skeleton.inverse_bind_matrices()
        # glTF matrices are column-major
        ibm_acc = builder.add(
            np.ascontiguousarray(ibm.transpose(0, 2, 1)).reshape(-1, 16).astype(np.float32),
            GLTF_FLOAT, "MAT4",
        )
        roots = [b.id for b in skeleton.roots()]
        skin = {
            "name": f"{mesh.name or 'armor'}_skin",
            "joints": list(range(len(skeleton))),
            "inverseBindMatrices": ibm_acc,
        }
        # skin.skeleton must be a common root; a forest has none
        if len(roots) == 1:
            skin["skeleton"] = roots[0]
        skins.append(skin)
        mesh_node["skin"] = 0
        nodes.append(mesh_node)
        scene_nodes = roots + [len(nodes) - 1]
    else:
        nodes = [mesh_node]
        scene_nodes = [0]

    bin_data = builder.data()
    gltf = {
        "asset": {
            "version": "2.0",
            "generator": GENERATOR,
            "extras": {"exportMethod": method.value},
        },
        "scene": 0,
        "scenes": [{"nodes": scene_nodes}],
        "nodes": nodes,
        "meshes": meshes,
        "accessors": builder.accessors,
        "bufferViews": builder.buffer_views,
        "buffers": [{"byteLength": len(bin_data)}],
    }
    if skins:
        gltf["skins"] = skins
    return gltf, bin_data


def pack_glb(gltf: dict, bin_data: bytes) -> bytes:
    """Wrap a glTF JSON document and its binary buffer in a GLB container."""
    json_bytes = json.dumps(gltf, separators=(",", ":")).encode("utf-8")
    # Pad JSON with spaces and BIN with zeros to 4-byte alignment
    json_bytes += b" " * ((4 - len(json_bytes) % 4) % 4)
    bin_data += b"\x00" * ((4 - len(bin_data) % 4) % 4)

    total_length = 12 + 8 + len(json_bytes) + 8 + len(bin_data)
    return b"".join([
        struct.pack("<III", GLB_MAGIC, GLB_VERSION, total_length),
        struct.pack("<II", len(json_bytes), CHUNK_JSON),
        json_bytes,
        struct.pack("<II", len(bin_data), CHUNK_BIN),
        bin_data,
    ])


def export_fitted_armor(
    skinned: SkinnedGarment,
    method: "str | ExportMethod" = ExportMethod.FULL,
) -> bytes:
    """Serialize a skinned garment to GLB bytes.

    Parameters
    ----------
    skinned : SkinnedGarment
        Output of the skeletal binder.
    method : str or ExportMethod
        ``"minimal"``, ``"full"``, ``"static"`` (``"game"`` is an alias of
        minimal). Anything else raises InvalidConfigError.
    """
    method = ExportMethod.parse(method)
    if skinned.mesh.vertex_count == 0:
        raise NoGarmentMeshError(f"Garment '{skinned.mesh.name}' has no vertices to export")

    gltf, bin_data = _build_gltf(skinned, method)
    payload = pack_glb(gltf, bin_data)
    logger.info(
        "Exported '%s' as %s GLB: %d vertices, %d bones, %.1f KB",
        skinned.mesh.name, method.value, skinned.mesh.vertex_count,
        len(skinned.skeleton), len(payload) / 1024,
    )
    return payload


def write_glb(payload: bytes, path: str | Path) -> Path:
    """Write GLB bytes to *path*, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(payload)
    logger.info("Wrote %s (%.1f MB)", path, len(payload) / (1024 * 1024))
    return path
