"""
Shared fixtures: small in-memory models in each supported source format.
"""

import base64
import json
import struct

import numpy as np
import pytest

from xkt_convert.xkt_model import XKTModel

CUBE_VERTICES = np.array([
    [0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0],
    [0, 0, 1], [1, 0, 1], [1, 1, 1], [0, 1, 1],
], dtype=np.float64)

# Outward-facing, counter-clockwise
CUBE_TRIANGLES = np.array([
    [0, 2, 1], [0, 3, 2],
    [4, 5, 6], [4, 6, 7],
    [0, 1, 5], [0, 5, 4],
    [3, 7, 6], [3, 6, 2],
    [0, 4, 7], [0, 7, 3],
    [1, 2, 6], [1, 6, 5],
], dtype=np.uint32)


def ascii_stl(vertices: np.ndarray, triangles: np.ndarray, name: str = "cube") -> bytes:
    lines = [f"solid {name}"]
    for tri in triangles:
        a, b, c = vertices[tri]
        normal = np.cross(b - a, c - a)
        normal = normal / np.linalg.norm(normal)
        lines.append(f"  facet normal {normal[0]} {normal[1]} {normal[2]}")
        lines.append("    outer loop")
        for corner in (a, b, c):
            lines.append(f"      vertex {corner[0]} {corner[1]} {corner[2]}")
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append(f"endsolid {name}")
    return ("\n".join(lines) + "\n").encode("ascii")


def binary_stl(vertices: np.ndarray, triangles: np.ndarray) -> bytes:
    content = bytearray(b"\0" * 80)
    content += struct.pack("<I", len(triangles))
    for tri in triangles:
        a, b, c = vertices[tri]
        normal = np.cross(b - a, c - a)
        normal = normal / np.linalg.norm(normal)
        content += struct.pack("<12fH", *normal, *a, *b, *c, 0)
    return bytes(content)


@pytest.fixture
def cube_stl() -> bytes:
    return ascii_stl(CUBE_VERTICES, CUBE_TRIANGLES)


@pytest.fixture
def cube_stl_binary() -> bytes:
    return binary_stl(CUBE_VERTICES, CUBE_TRIANGLES)


@pytest.fixture
def triangle_gltf() -> dict:
    """One triangle mesh instanced by two named nodes, buffer embedded as a data URI."""
    positions = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)
    indices = np.array([0, 1, 2, 0], dtype=np.uint16)  # padded to 4-byte alignment
    blob = positions.tobytes() + indices.tobytes()
    return {
        "asset": {"version": "2.0"},
        "scene": 0,
        "scenes": [{"nodes": [0, 1]}],
        "nodes": [
            {"name": "left", "mesh": 0},
            {"name": "right", "mesh": 0, "translation": [5.0, 0.0, 0.0]},
        ],
        "meshes": [{"primitives": [{"attributes": {"POSITION": 0}, "indices": 1, "material": 0}]}],
        "materials": [{"pbrMetallicRoughness": {"baseColorFactor": [1.0, 0.0, 0.0, 0.5]}}],
        "accessors": [
            {"bufferView": 0, "componentType": 5126, "count": 3, "type": "VEC3",
             "min": [0, 0, 0], "max": [1, 1, 0]},
            {"bufferView": 1, "componentType": 5123, "count": 3, "type": "SCALAR"},
        ],
        "bufferViews": [
            {"buffer": 0, "byteOffset": 0, "byteLength": 36},
            {"buffer": 0, "byteOffset": 36, "byteLength": 6},
        ],
        "buffers": [{
            "byteLength": len(blob),
            "uri": "data:application/octet-stream;base64," + base64.b64encode(blob).decode("ascii"),
        }],
    }


def pcd_header(data: str, points: int, fields="x y z rgb", size="4 4 4 4", type_="F F F F") -> bytes:
    return (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\n"
        f"FIELDS {fields}\n"
        f"SIZE {size}\n"
        f"TYPE {type_}\n"
        f"COUNT {' '.join('1' for _ in fields.split())}\n"
        f"WIDTH {points}\n"
        "HEIGHT 1\n"
        "VIEWPOINT 0 0 0 1 0 0 0\n"
        f"POINTS {points}\n"
        f"DATA {data}\n"
    ).encode("ascii")


@pytest.fixture
def pcd_ascii() -> bytes:
    body = "0 0 0 4278190080\n1 0 0 16711680\n0 1 0 65280\n"
    return pcd_header("ascii", 3, type_="F F F U") + body.encode("ascii")


@pytest.fixture
def pcd_binary() -> bytes:
    records = np.zeros(2, dtype=[("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])
    records["x"] = [1.0, 2.0]
    records["y"] = [3.0, 4.0]
    records["z"] = [5.0, 6.0]
    records["rgb"] = [0x00FF0000, 0x000000FF]
    return pcd_header("binary", 2, type_="F F F U") + records.tobytes()


@pytest.fixture
def cityjson_cube() -> dict:
    """A building with a unit cube Solid, stored with a vertex transform."""
    return {
        "type": "CityJSON",
        "version": "1.1",
        "transform": {"scale": [0.001, 0.001, 0.001], "translate": [100.0, 200.0, 0.0]},
        "vertices": [
            [0, 0, 0], [1000, 0, 0], [1000, 1000, 0], [0, 1000, 0],
            [0, 0, 1000], [1000, 0, 1000], [1000, 1000, 1000], [0, 1000, 1000],
        ],
        "CityObjects": {
            "building-1": {
                "type": "Building",
                "attributes": {"yearOfConstruction": 1990},
                "geometry": [{
                    "type": "Solid",
                    "lod": "2",
                    "boundaries": [[
                        [[0, 3, 2, 1]],
                        [[4, 5, 6, 7]],
                        [[0, 1, 5, 4]],
                        [[1, 2, 6, 5]],
                        [[2, 3, 7, 6]],
                        [[3, 0, 4, 7]],
                    ]],
                    "semantics": {
                        "surfaces": [{"type": "GroundSurface"}, {"type": "RoofSurface"}, {"type": "WallSurface"}],
                        "values": [[0, 1, 2, 2, 2, 2]],
                    },
                }],
            },
            "group-1": {"type": "CityObjectGroup"},
        },
    }


@pytest.fixture
def metamodel() -> dict:
    return {
        "id": "office",
        "projectId": "project-7",
        "revisionId": "rev-3",
        "author": "Jane",
        "createdAt": "2024-01-01",
        "creatingApplication": "Some Modeller",
        "schema": "IFC4",
        "propertySets": [{
            "id": "pset-1",
            "type": "Pset_WallCommon",
            "name": "Pset_WallCommon",
            "properties": [{"name": "IsExternal", "value": True}],
        }],
        "metaObjects": [
            {"id": "office", "type": "IfcProject", "name": "Office"},
            {"id": "stl-entity", "type": "IfcWall", "name": "Wall", "parent": "office",
             "propertySetIds": ["pset-1"]},
            {"id": "space-1", "type": "IfcSpace", "name": "Room", "parent": "office"},
        ],
    }


@pytest.fixture
def write_file(tmp_path):
    """Write bytes or JSON to a file under tmp_path and return its path."""
    def _write(name: str, content):
        path = tmp_path / name
        if isinstance(content, (dict, list)):
            content = json.dumps(content).encode("utf-8")
        path.write_bytes(content)
        return path
    return _write


def add_box(model: XKTModel, name: str, offset=(0.0, 0.0, 0.0), size=1.0):
    """Add a single-use cube entity to the model."""
    positions = CUBE_VERTICES * size + np.asarray(offset, dtype=np.float64)
    model.create_geometry(f"{name}-geometry", "triangles", positions=positions, indices=CUBE_TRIANGLES)
    model.create_mesh(f"{name}-mesh", f"{name}-geometry", color=(0.5, 0.5, 0.5))
    return model.create_entity(name, [f"{name}-mesh"])
