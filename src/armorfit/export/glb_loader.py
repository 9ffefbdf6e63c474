"""Binary glTF (GLB) reader for skinned meshes.

Reads the first primitive of the first mesh, plus the skin attached to the
node that instances it. Node transforms on the mesh node are not applied;
vertex data is returned as stored.
"""

import json
import logging
import struct
from pathlib import Path

import numpy as np
from numpy.typing import NDArray

from armorfit.constants import MAX_INFLUENCES
from armorfit.core.math_utils import Mat4, mat4_compose, mat4_decompose, mat4_inverse
from armorfit.core.mesh import BufferGeometry, MeshInstance
from armorfit.core.skeleton import Bone, BoneTransform, Skeleton
from armorfit.export.glb_exporter import CHUNK_BIN, CHUNK_JSON, GLB_MAGIC

logger = logging.getLogger(__name__)

_COMPONENT_DTYPES = {
    5120: np.int8,
    5121: np.uint8,
    5122: np.int16,
    5123: np.uint16,
    5125: np.uint32,
    5126: np.float32,
}

_TYPE_COMPONENTS = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT4": 16,
}


def _split_chunks(data: bytes) -> tuple[dict, bytes]:
    """Parse the GLB header and return (json document, bin chunk)."""
    if len(data) < 20:
        raise ValueError("Invalid GLB: too short")
    magic, version, length = struct.unpack_from("<III", data, 0)
    if magic != GLB_MAGIC:
        raise ValueError("Invalid GLB: bad magic")
    if version != 2:
        raise ValueError(f"Unsupported GLB version {version}")
    if length > len(data):
        raise ValueError(f"Invalid GLB: header says {length} bytes, got {len(data)}")

    gltf = None
    bin_chunk = b""
    offset = 12
    while offset + 8 <= length:
        chunk_len, chunk_type = struct.unpack_from("<II", data, offset)
        offset += 8
        chunk = data[offset:offset + chunk_len]
        if chunk_type == CHUNK_JSON:
            gltf = json.loads(chunk.decode("utf-8"))
        elif chunk_type == CHUNK_BIN and not bin_chunk:
            bin_chunk = bytes(chunk)
        offset += chunk_len

    if gltf is None:
        raise ValueError("Invalid GLB: missing JSON chunk")
    return gltf, bin_chunk


def _read_accessor(gltf: dict, bin_chunk: bytes, index: int) -> NDArray:
    """Read accessor *index* as a (count, components) array (copied)."""
    accessor = gltf["accessors"][index]
    dtype = np.dtype(_COMPONENT_DTYPES[accessor["componentType"]]).newbyteorder("<")
    ncomp = _TYPE_COMPONENTS[accessor["type"]]
    count = accessor["count"]

    if "bufferView" not in accessor:
        return np.zeros((count, ncomp), dtype=dtype)

    view = gltf["bufferViews"][accessor["bufferView"]]
    if view.get("buffer", 0) != 0:
        raise ValueError("Only the GLB-embedded buffer is supported")
    offset = view.get("byteOffset", 0) + accessor.get("byteOffset", 0)
    item_size = dtype.itemsize * ncomp
    stride = view.get("byteStride") or item_size

    arr = np.ndarray(
        shape=(count, ncomp),
        dtype=dtype,
        buffer=bin_chunk,
        offset=offset,
        strides=(stride, dtype.itemsize),
    ).copy()

    if accessor.get("normalized") and np.issubdtype(dtype, np.integer):
        arr = arr.astype(np.float32) / np.iinfo(dtype).max
        if np.issubdtype(dtype, np.signedinteger):
            # The most negative value would otherwise decode below -1
            arr = np.maximum(arr, -1.0)
    return arr


def _node_local_matrix(node: dict) -> Mat4:
    if "matrix" in node:
        return np.asarray(node["matrix"], dtype=np.float64).reshape(4, 4).T
    return mat4_compose(
        np.asarray(node.get("translation", [0.0, 0.0, 0.0]), dtype=np.float64),
        np.asarray(node.get("rotation", [0.0, 0.0, 0.0, 1.0]), dtype=np.float64),
        np.asarray(node.get("scale", [1.0, 1.0, 1.0]), dtype=np.float64),
    )


def _node_world_matrices(nodes: list[dict]) -> tuple[list[Mat4], dict[int, int]]:
    """World matrix per node and the child -> parent node map."""
    parents: dict[int, int] = {}
    for i, node in enumerate(nodes):
        for child in node.get("children", []):
            parents[child] = i

    world: dict[int, Mat4] = {}

    def resolve(i: int) -> Mat4:
        if i not in world:
            local = _node_local_matrix(nodes[i])
            parent = parents.get(i)
            world[i] = local if parent is None else resolve(parent) @ local
        return world[i]

    return [resolve(i) for i in range(len(nodes))], parents


def _build_skeleton(gltf: dict, bin_chunk: bytes, skin: dict) -> Skeleton:
    """Rebuild a Skeleton whose bone ids are the skin's joint slots."""
    nodes = gltf.get("nodes", [])
    joints: list[int] = skin["joints"]
    slot_of = {node_idx: slot for slot, node_idx in enumerate(joints)}
    node_world, node_parent = _node_world_matrices(nodes)

    if "inverseBindMatrices" in skin:
        ibm = _read_accessor(gltf, bin_chunk, skin["inverseBindMatrices"])
        # Column-major on disk
        bind_world = [mat4_inverse(m.reshape(4, 4).T.astype(np.float64)) for m in ibm]
    else:
        bind_world = [node_world[n] for n in joints]

    bones = []
    for slot, node_idx in enumerate(joints):
        # Nearest ancestor that is itself a joint
        parent_slot = None
        ancestor = node_parent.get(node_idx)
        while ancestor is not None:
            if ancestor in slot_of:
                parent_slot = slot_of[ancestor]
                break
            ancestor = node_parent.get(ancestor)

        if parent_slot is None:
            local = bind_world[slot]
        else:
            local = mat4_inverse(bind_world[parent_slot]) @ bind_world[slot]
        position, rotation, scale = mat4_decompose(local)
        bones.append(Bone(
            id=slot,
            name=nodes[node_idx].get("name", f"joint_{slot}"),
            parent_id=parent_slot,
            bind=BoneTransform(position=position, rotation=rotation, scale=scale),
        ))

    return Skeleton(bones)


def load_glb(data: bytes) -> tuple[MeshInstance, Skeleton | None]:
    """Parse GLB bytes into a mesh and (if the mesh is skinned) its skeleton.

    Parameters
    ----------
    data : bytes
        Complete GLB file contents.

    Returns
    -------
    (MeshInstance, Skeleton or None)
        Skin indices refer to the skeleton's bone ids (the skin's joint
        order). The mesh's ``skeleton`` attribute is set to the same object.
    """
    gltf, bin_chunk = _split_chunks(data)
    meshes = gltf.get("meshes", [])
    if not meshes or not meshes[0].get("primitives"):
        raise ValueError("GLB contains no mesh primitives")

    mesh_def = meshes[0]
    prim = mesh_def["primitives"][0]
    attrs = prim["attributes"]
    if "POSITION" not in attrs:
        raise ValueError("Mesh primitive has no POSITION attribute")

    positions = _read_accessor(gltf, bin_chunk, attrs["POSITION"]).astype(np.float32)
    vert_count = len(positions)

    indices = None
    if "indices" in prim:
        indices = _read_accessor(gltf, bin_chunk, prim["indices"]).astype(np.uint32).ravel()

    geom = BufferGeometry(
        positions=positions.ravel(),
        normals=np.zeros(vert_count * 3, dtype=np.float32),
        indices=indices,
        vertex_count=vert_count,
    )
    if "NORMAL" in attrs:
        geom.normals = _read_accessor(gltf, bin_chunk, attrs["NORMAL"]).astype(np.float32).ravel()
    else:
        geom.compute_normals()
    if "TEXCOORD_0" in attrs:
        geom.uvs = _read_accessor(gltf, bin_chunk, attrs["TEXCOORD_0"]).astype(np.float32).ravel()
    if "JOINTS_0" in attrs and "WEIGHTS_0" in attrs:
        joints = _read_accessor(gltf, bin_chunk, attrs["JOINTS_0"])
        weights = _read_accessor(gltf, bin_chunk, attrs["WEIGHTS_0"])
        if joints.shape[1] != MAX_INFLUENCES or weights.shape[1] != MAX_INFLUENCES:
            raise ValueError("JOINTS_0/WEIGHTS_0 must be VEC4")
        geom.skin_indices = joints.astype(np.uint16).ravel()
        geom.skin_weights = weights.astype(np.float32).ravel()

    # Node that instances mesh 0 carries the name and the skin
    mesh_node = next(
        (n for n in gltf.get("nodes", []) if n.get("mesh") == 0), {},
    )
    name = mesh_node.get("name") or mesh_def.get("name") or "mesh"

    skeleton = None
    if "skin" in mesh_node:
        skeleton = _build_skeleton(gltf, bin_chunk, gltf["skins"][mesh_node["skin"]])

    mesh = MeshInstance(name=name, geometry=geom, skeleton=skeleton)
    logger.info(
        "Loaded GLB mesh '%s': %d vertices, %d triangles, %s",
        name, vert_count, geom.triangle_count,
        f"{len(skeleton)} bones" if skeleton is not None else "no skeleton",
    )
    return mesh, skeleton


def load_glb_file(path: str | Path) -> tuple[MeshInstance, Skeleton | None]:
    """Load a .glb file from disk."""
    path = Path(path)
    with open(path, "rb") as f:
        data = f.read()
    return load_glb(data)
