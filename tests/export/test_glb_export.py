"""Tests for GLB export and re-import of skinned garments."""

import json
import struct

import numpy as np
import pytest

from armorfit.core.errors import InvalidConfigError, NoGarmentMeshError
from armorfit.core.math_utils import quat_from_axis_angle, vec3
from armorfit.core.mesh import SkinnedGarment
from armorfit.core.skeleton import Bone, BoneTransform, Skeleton
from armorfit.export.glb_exporter import (
    CHUNK_BIN,
    CHUNK_JSON,
    GLB_MAGIC,
    GLTF_FLOAT,
    GLTF_UNSIGNED_SHORT,
    export_fitted_armor,
    pack_glb,
    write_glb,
)
from armorfit.export.glb_loader import load_glb, load_glb_file

from mesh_builders import grid, make_mesh, rigid_skin, skin


def _skeleton() -> Skeleton:
    return Skeleton([
        Bone(0, "Hips", bind=BoneTransform(position=vec3(0, 0, 1))),
        Bone(1, "Spine", parent_id=0, bind=BoneTransform(
            position=vec3(0, 0, 0.3),
            rotation=quat_from_axis_angle(vec3(1, 0, 0), 0.2),
        )),
        Bone(2, "Spine2", parent_id=1, bind=BoneTransform(
            position=vec3(0, 0, 0.3), scale=vec3(1.1, 1.1, 1.1),
        )),
    ])


def _skinned(skeleton=None, indexed=True) -> SkinnedGarment:
    skeleton = skeleton or _skeleton()
    pos, tris = grid(size=0.6, n=4, z=1.5)
    mesh = make_mesh("vest", pos, tris if indexed else None)
    rng = np.random.default_rng(11)
    idx = np.array([rng.permutation(3).tolist() + [0] for _ in range(len(pos))])
    w = np.zeros((len(pos), 4))
    w[:, :3] = rng.uniform(0.1, 1.0, size=(len(pos), 3))
    w /= w.sum(axis=1, keepdims=True)
    skin(mesh, skeleton, idx, w)
    mesh.geometry.uvs = rng.uniform(size=len(pos) * 2).astype(np.float32)
    return SkinnedGarment(mesh=mesh, skeleton=skeleton)


def _document(payload: bytes) -> dict:
    length, kind = struct.unpack_from("<II", payload, 12)
    assert kind == CHUNK_JSON
    return json.loads(payload[20:20 + length])


def test_glb_container_layout():
    payload = export_fitted_armor(_skinned(), "full")
    magic, version, total = struct.unpack_from("<III", payload, 0)
    assert magic == GLB_MAGIC
    assert version == 2
    assert total == len(payload)
    assert total % 4 == 0

    json_len, _ = struct.unpack_from("<II", payload, 12)
    bin_len, bin_kind = struct.unpack_from("<II", payload, 20 + json_len)
    assert bin_kind == CHUNK_BIN
    assert 20 + json_len + 8 + bin_len == total


def test_full_round_trip():
    original = _skinned()
    mesh, skeleton = load_glb(export_fitted_armor(original, "full"))
    src = original.mesh.geometry

    assert mesh.vertex_count == src.vertex_count
    np.testing.assert_array_equal(mesh.geometry.indices, src.indices)
    np.testing.assert_array_equal(mesh.geometry.skin_indices, src.skin_indices)
    np.testing.assert_array_equal(mesh.geometry.skin_weights, src.skin_weights)
    np.testing.assert_array_equal(mesh.geometry.positions, src.positions)
    np.testing.assert_array_equal(mesh.geometry.uvs, src.uvs)

    assert mesh.skeleton is skeleton
    assert skeleton.bone_names == ["Hips", "Spine", "Spine2"]
    assert [b.parent_id for b in skeleton] == [None, 0, 1]
    np.testing.assert_allclose(
        skeleton.bind_world_matrices(), original.skeleton.bind_world_matrices(), atol=1e-5,
    )


def test_full_document_has_skin():
    doc = _document(export_fitted_armor(_skinned(), "full"))
    assert doc["skins"][0]["joints"] == [0, 1, 2]
    assert doc["skins"][0]["skeleton"] == 0
    assert doc["nodes"][0]["children"] == [1]
    mesh_node = doc["nodes"][-1]
    assert mesh_node["skin"] == 0
    assert mesh_node["mesh"] == 0
    attrs = doc["meshes"][0]["primitives"][0]["attributes"]
    assert doc["accessors"][attrs["JOINTS_0"]]["componentType"] == GLTF_UNSIGNED_SHORT
    assert doc["accessors"][attrs["WEIGHTS_0"]]["componentType"] == GLTF_FLOAT


def test_minimal_has_weights_but_no_skeleton():
    original = _skinned()
    payload = export_fitted_armor(original, "minimal")
    doc = _document(payload)
    assert "skins" not in doc
    assert len(doc["nodes"]) == 1
    prim = doc["meshes"][0]["primitives"][0]
    assert prim["extras"]["boneNames"] == ["Hips", "Spine", "Spine2"]

    mesh, skeleton = load_glb(payload)
    assert skeleton is None
    np.testing.assert_array_equal(mesh.geometry.skin_weights, original.mesh.geometry.skin_weights)


def test_game_is_minimal():
    skinned = _skinned()
    assert export_fitted_armor(skinned, "game") == export_fitted_armor(skinned, "minimal")


def test_static_drops_skin_and_bakes_pose():
    skeleton = _skeleton()
    lifted = skeleton.with_pose({0: BoneTransform(position=vec3(0, 0, 2))})
    original = _skinned(skeleton=lifted)

    payload = export_fitted_armor(original, "static")
    attrs = _document(payload)["meshes"][0]["primitives"][0]["attributes"]
    assert "JOINTS_0" not in attrs
    assert "WEIGHTS_0" not in attrs

    mesh, skeleton_out = load_glb(payload)
    assert skeleton_out is None
    assert mesh.geometry.skin_weights is None
    np.testing.assert_array_equal(mesh.geometry.indices, original.mesh.geometry.indices)
    # Root moved up by one unit: every bone follows it
    shift = mesh.geometry.positions_3d() - original.mesh.geometry.positions_3d()
    np.testing.assert_allclose(shift, np.tile([0, 0, 1], (16, 1)), atol=1e-5)


def test_static_unposed_is_identity():
    original = _skinned()
    mesh, _ = load_glb(export_fitted_armor(original, "static"))
    np.testing.assert_allclose(
        mesh.geometry.positions, original.mesh.geometry.positions, atol=1e-6,
    )


def test_non_indexed_stays_non_indexed():
    original = _skinned(indexed=False)
    doc = _document(export_fitted_armor(original, "full"))
    assert "indices" not in doc["meshes"][0]["primitives"][0]
    mesh, _ = load_glb(export_fitted_armor(original, "full"))
    assert mesh.geometry.indices is None
    assert mesh.vertex_count == 16


def test_unknown_method_rejected():
    with pytest.raises(InvalidConfigError):
        export_fitted_armor(_skinned(), "fbx")


def test_empty_garment_rejected():
    skinned = _skinned()
    skinned.mesh.geometry = make_mesh("empty", np.zeros((0, 3))).geometry
    with pytest.raises(NoGarmentMeshError):
        export_fitted_armor(skinned, "full")


def test_write_and_load_file(tmp_path):
    original = _skinned()
    path = write_glb(export_fitted_armor(original, "full"), tmp_path / "out" / "vest.glb")
    assert path.exists()
    mesh, skeleton = load_glb_file(path)
    assert mesh.name == "vest"
    assert len(skeleton) == 3


def test_loader_reads_interleaved_normalized_data():
    """Third-party layout: interleaved POSITION/NORMAL, uint8 weights, node matrix joints."""
    pos = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)
    nrm = np.tile(np.array([0, 0, 1], dtype=np.float32), (3, 1))
    interleaved = np.hstack([pos, nrm]).astype(np.float32).tobytes()
    joints = np.array([[0, 1, 0, 0]] * 3, dtype=np.uint8).tobytes()
    weights = np.array([[255, 0, 0, 0], [128, 127, 0, 0], [0, 255, 0, 0]], dtype=np.uint8).tobytes()
    bin_data = interleaved + joints + weights

    child_matrix = np.eye(4)
    child_matrix[:3, 3] = [0, 2, 0]
    gltf = {
        "asset": {"version": "2.0"},
        "nodes": [
            {"name": "root", "children": [1]},
            {"name": "tip", "matrix": child_matrix.T.ravel().tolist()},
            {"name": "thing", "mesh": 0, "skin": 0},
        ],
        "skins": [{"joints": [0, 1]}],
        "meshes": [{"primitives": [{"attributes": {
            "POSITION": 0, "NORMAL": 1, "JOINTS_0": 2, "WEIGHTS_0": 3,
        }}]}],
        "bufferViews": [
            {"buffer": 0, "byteOffset": 0, "byteLength": 72, "byteStride": 24},
            {"buffer": 0, "byteOffset": 72, "byteLength": 12},
            {"buffer": 0, "byteOffset": 84, "byteLength": 12},
        ],
        "accessors": [
            {"bufferView": 0, "componentType": 5126, "count": 3, "type": "VEC3"},
            {"bufferView": 0, "byteOffset": 12, "componentType": 5126, "count": 3, "type": "VEC3"},
            {"bufferView": 1, "componentType": 5121, "count": 3, "type": "VEC4"},
            {"bufferView": 2, "componentType": 5121, "count": 3, "type": "VEC4",
             "normalized": True},
        ],
        "buffers": [{"byteLength": len(bin_data)}],
    }

    mesh, skeleton = load_glb(pack_glb(gltf, bin_data))

    assert mesh.name == "thing"
    np.testing.assert_array_equal(mesh.geometry.positions.reshape(-1, 3), pos)
    np.testing.assert_array_equal(mesh.geometry.normals.reshape(-1, 3), nrm)
    _, w = mesh.geometry.skin_arrays()
    np.testing.assert_allclose(w[:, :2], [[1, 0], [128 / 255, 127 / 255], [0, 1]], atol=1e-6)
    assert skeleton.bone_names == ["root", "tip"]
    assert skeleton[1].parent_id == 0
    np.testing.assert_allclose(skeleton.bind_world_matrices()[1][:3, 3], [0, 2, 0])


def test_loader_rejects_garbage():
    with pytest.raises(ValueError):
        load_glb(b"not a glb file at all")


def test_skin_skeleton_omitted_for_forest():
    forest = Skeleton([
        Bone(0, "LeftPauldron", bind=BoneTransform(position=vec3(-0.3, 0, 1.5))),
        Bone(1, "RightPauldron", bind=BoneTransform(position=vec3(0.3, 0, 1.5))),
    ])
    pos, tris = grid(size=0.6, n=4, z=1.5)
    mesh = rigid_skin(make_mesh("pauldrons", pos, tris), forest, np.arange(16) % 2)
    skinned = SkinnedGarment(mesh=mesh, skeleton=forest)

    payload = export_fitted_armor(skinned, "full")
    doc = _document(payload)
    assert "skeleton" not in doc["skins"][0]
    assert doc["scenes"][0]["nodes"] == [0, 1, 2]

    _, skeleton = load_glb(payload)
    assert [b.parent_id for b in skeleton] == [None, None]


def test_static_export_through_zero_scaled_bone():
    # Collapsing a bone to hide it must not break the bake
    skeleton = _skeleton()
    hidden = skeleton.with_pose({
        2: BoneTransform(position=vec3(0, 0, 0.3), scale=vec3(0, 1, 1)),
    })
    skinned = _skinned(skeleton=hidden)
    rigid_skin(skinned.mesh, hidden, np.full(16, 2))

    mesh, _ = load_glb(export_fitted_armor(skinned, "static"))

    normals = mesh.geometry.normals.reshape(-1, 3)
    assert np.all(np.isfinite(normals))
    lengths = np.linalg.norm(normals, axis=1)
    assert np.all(np.isclose(lengths, 0.0, atol=1e-5) | np.isclose(lengths, 1.0, atol=1e-5))
    np.testing.assert_allclose(mesh.geometry.positions_3d()[:, 0], 0.0, atol=1e-5)


def test_loader_clamps_signed_normalized():
    pos = np.zeros((2, 3), dtype=np.float32).tobytes()
    uvs = np.array([[-128, 127], [0, -127]], dtype=np.int8).tobytes()
    bin_data = pos + uvs
    gltf = {
        "asset": {"version": "2.0"},
        "meshes": [{"primitives": [{"attributes": {"POSITION": 0, "TEXCOORD_0": 1}}]}],
        "bufferViews": [
            {"buffer": 0, "byteOffset": 0, "byteLength": 24},
            {"buffer": 0, "byteOffset": 24, "byteLength": 4},
        ],
        "accessors": [
            {"bufferView": 0, "componentType": 5126, "count": 2, "type": "VEC3"},
            {"bufferView": 1, "componentType": 5120, "count": 2, "type": "VEC2",
             "normalized": True},
        ],
        "buffers": [{"byteLength": len(bin_data)}],
    }

    mesh, _ = load_glb(pack_glb(gltf, bin_data))

    np.testing.assert_allclose(mesh.geometry.uvs.reshape(-1, 2), [[-1, 1], [0, -1]], atol=1e-6)
