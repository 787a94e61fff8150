"""
XKT Writer

Serializes a finalized XKTModel into the XKT v8 binary layout:

    uint32 version
    uint32 number of elements
    uint32 byte length of each element
    zlib-deflated elements, in ELEMENT_NAMES order
"""

import json
import logging
import struct
import zlib
from typing import Dict, List, Tuple

import numpy as np

from xkt_convert import geometry_utils as gu
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)

XKT_VERSION = 8

ELEMENT_NAMES = (
    "metadata",
    "positions",
    "normals",
    "colors",
    "indices",
    "edgeIndices",
    "matrices",
    "reusedGeometriesDecodeMatrix",
    "eachGeometryPrimitiveType",
    "eachGeometryPositionsPortion",
    "eachGeometryNormalsPortion",
    "eachGeometryColorsPortion",
    "eachGeometryIndicesPortion",
    "eachGeometryEdgeIndicesPortion",
    "eachMeshGeometriesPortion",
    "eachMeshMatricesPortion",
    "eachMeshMaterial",
    "eachEntityId",
    "eachEntityMeshesPortion",
    "eachTileAABB",
    "eachTileEntitiesPortion",
)

# Primitive type codes stored per geometry
PRIMITIVE_SOLID = 0
PRIMITIVE_SURFACE = 1
PRIMITIVE_POINTS = 2
PRIMITIVE_LINES = 3


def _primitive_code(geometry) -> int:
    if geometry.primitive_type == "points":
        return PRIMITIVE_POINTS
    if geometry.primitive_type == "lines":
        return PRIMITIVE_LINES
    return PRIMITIVE_SOLID if geometry.solid else PRIMITIVE_SURFACE


def _to_json_bytes(value) -> bytes:
    """JSON-encode with non-ASCII characters escaped as \\uXXXX."""
    return json.dumps(value, ensure_ascii=True, separators=(",", ":")).encode("ascii")


def _unit_to_byte(value: float) -> int:
    return int(np.clip(round(float(value) * 255.0), 0, 255))


def _build_metadata(xkt_model: XKTModel) -> Dict:
    property_sets = []
    for property_set in xkt_model.property_sets_list:
        property_sets.append({
            "id": property_set.property_set_id,
            "type": property_set.property_set_type,
            "name": property_set.property_set_name,
            "properties": property_set.properties,
        })

    meta_objects = []
    for meta_object in xkt_model.meta_objects_list:
        entry = {
            "id": meta_object.meta_object_id,
            "type": meta_object.meta_object_type,
            "name": meta_object.meta_object_name,
        }
        if meta_object.parent_meta_object_id is not None:
            entry["parent"] = meta_object.parent_meta_object_id
        if meta_object.property_set_ids:
            entry["propertySetIds"] = meta_object.property_set_ids
        meta_objects.append(entry)

    return {
        "id": xkt_model.model_id,
        "projectId": xkt_model.project_id,
        "revisionId": xkt_model.revision_id,
        "author": xkt_model.author,
        "createdAt": xkt_model.created_at,
        "creatingApplication": xkt_model.creating_application,
        "schema": xkt_model.schema,
        "propertySets": property_sets,
        "metaObjects": meta_objects,
    }


def get_model_data(xkt_model: XKTModel) -> Dict[str, object]:
    """
    Flatten a finalized model into the typed arrays of the XKT layout.

    Returns:
        Dict keyed by ELEMENT_NAMES; "metadata" and "eachEntityId" hold JSON-able values,
        everything else numpy arrays
    """
    geometries = xkt_model.geometries_list
    tiles = xkt_model.tiles_list

    positions, normals, colors, indices, edge_indices = [], [], [], [], []
    num_geometries = len(geometries)
    primitive_types = np.zeros(num_geometries, dtype=np.uint8)
    positions_portion = np.zeros(num_geometries, dtype=np.uint32)
    normals_portion = np.zeros(num_geometries, dtype=np.uint32)
    colors_portion = np.zeros(num_geometries, dtype=np.uint32)
    indices_portion = np.zeros(num_geometries, dtype=np.uint32)
    edge_indices_portion = np.zeros(num_geometries, dtype=np.uint32)

    positions_index = normals_index = colors_index = indices_index = edge_indices_index = 0

    for geometry in geometries:
        i = geometry.geometry_index
        primitive_types[i] = _primitive_code(geometry)
        positions_portion[i] = positions_index
        normals_portion[i] = normals_index
        colors_portion[i] = colors_index
        indices_portion[i] = indices_index
        edge_indices_portion[i] = edge_indices_index

        if geometry.positions_quantized is not None:
            flat = geometry.positions_quantized.reshape(-1)
            positions.append(flat)
            positions_index += len(flat)
        if geometry.normals_oct_encoded is not None:
            flat = geometry.normals_oct_encoded.reshape(-1)
            normals.append(flat)
            normals_index += len(flat)
        if geometry.colors_compressed is not None:
            flat = geometry.colors_compressed.reshape(-1)
            colors.append(flat)
            colors_index += len(flat)
        if geometry.indices is not None:
            indices.append(geometry.indices)
            indices_index += len(geometry.indices)
        if geometry.edge_indices is not None:
            edge_indices.append(geometry.edge_indices)
            edge_indices_index += len(geometry.edge_indices)

    # Meshes and entities are written in tile order so portions stay contiguous
    num_meshes = sum(len(entity.meshes) for tile in tiles for entity in tile.entities)
    num_entities = sum(len(tile.entities) for tile in tiles)

    mesh_geometries_portion = np.zeros(num_meshes, dtype=np.uint32)
    mesh_matrices_portion = np.zeros(num_meshes, dtype=np.uint32)
    mesh_material = np.zeros(num_meshes * 6, dtype=np.uint8)
    matrices = []
    entity_ids = []
    entity_meshes_portion = np.zeros(num_entities, dtype=np.uint32)
    tile_aabbs = np.zeros(len(tiles) * 6, dtype=np.float64)
    tile_entities_portion = np.zeros(len(tiles), dtype=np.uint32)

    mesh_index = 0
    entity_index = 0
    matrices_index = 0

    for tile_index, tile in enumerate(tiles):
        tile_entities_portion[tile_index] = entity_index
        tile_aabbs[tile_index * 6:tile_index * 6 + 6] = tile.aabb

        for entity in tile.entities:
            entity_ids.append(entity.entity_id)
            entity_meshes_portion[entity_index] = mesh_index

            for mesh in entity.meshes:
                geometry = mesh.geometry
                mesh_geometries_portion[mesh_index] = geometry.geometry_index
                mesh_matrices_portion[mesh_index] = matrices_index
                if geometry.reused:
                    matrix = mesh.matrix if mesh.matrix is not None else gu.identity_mat4()
                    matrices.append(gu.mat4_to_column_major(matrix))
                    matrices_index += 16

                material = mesh_material[mesh_index * 6:mesh_index * 6 + 6]
                material[0] = _unit_to_byte(mesh.color[0])
                material[1] = _unit_to_byte(mesh.color[1])
                material[2] = _unit_to_byte(mesh.color[2])
                material[3] = _unit_to_byte(mesh.opacity)
                material[4] = _unit_to_byte(mesh.metallic)
                material[5] = _unit_to_byte(mesh.roughness)
                mesh_index += 1

            entity_index += 1

    def _concat(chunks: List[np.ndarray], dtype) -> np.ndarray:
        if not chunks:
            return np.zeros(0, dtype=dtype)
        return np.concatenate(chunks).astype(dtype)

    return {
        "metadata": _build_metadata(xkt_model),
        "positions": _concat(positions, np.uint16),
        "normals": _concat(normals, np.int8),
        "colors": _concat(colors, np.uint8),
        "indices": _concat(indices, np.uint32),
        "edgeIndices": _concat(edge_indices, np.uint32),
        "matrices": _concat(matrices, np.float32),
        "reusedGeometriesDecodeMatrix": gu.mat4_to_column_major(
            xkt_model.reused_geometries_decode_matrix
        ).astype(np.float32),
        "eachGeometryPrimitiveType": primitive_types,
        "eachGeometryPositionsPortion": positions_portion,
        "eachGeometryNormalsPortion": normals_portion,
        "eachGeometryColorsPortion": colors_portion,
        "eachGeometryIndicesPortion": indices_portion,
        "eachGeometryEdgeIndicesPortion": edge_indices_portion,
        "eachMeshGeometriesPortion": mesh_geometries_portion,
        "eachMeshMatricesPortion": mesh_matrices_portion,
        "eachMeshMaterial": mesh_material,
        "eachEntityId": entity_ids,
        "eachEntityMeshesPortion": entity_meshes_portion,
        "eachTileAABB": tile_aabbs,
        "eachTileEntitiesPortion": tile_entities_portion,
    }


def _element_bytes(name: str, value) -> bytes:
    if name in ("metadata", "eachEntityId"):
        return _to_json_bytes(value)
    # XKT is little-endian throughout
    return np.ascontiguousarray(value).astype(value.dtype.newbyteorder("<"), copy=False).tobytes()


def write_xkt_model_to_bytes(xkt_model: XKTModel) -> bytes:
    """
    Serialize a finalized model into XKT v8 bytes.

    Args:
        xkt_model: Model on which finalize() has been called

    Returns:
        The complete .xkt file content
    """
    if not xkt_model.finalized:
        raise RuntimeError("XKTModel must be finalized before it can be written")

    data = get_model_data(xkt_model)
    elements = [zlib.compress(_element_bytes(name, data[name])) for name in ELEMENT_NAMES]

    header = struct.pack(f"<{len(elements) + 2}I", XKT_VERSION, len(elements), *[len(e) for e in elements])
    content = header + b"".join(elements)
    logger.debug(f"Wrote XKT v{XKT_VERSION}: {len(content)} bytes in {len(elements)} elements")
    return content


def read_xkt_header(content: bytes) -> Tuple[int, List[int]]:
    """
    Read the version and element byte lengths from XKT content.
    """
    if len(content) < 8:
        raise ValueError("XKT content too small for header")
    version, num_elements = struct.unpack("<II", content[:8])
    header_end = 8 + num_elements * 4
    if len(content) < header_end:
        raise ValueError(f"XKT content too small for {num_elements} element lengths")
    lengths = list(struct.unpack(f"<{num_elements}I", content[8:header_end]))
    return version, lengths


def inflate_xkt_elements(content: bytes) -> List[bytes]:
    """
    Split XKT content into its elements and inflate each one.
    """
    _, lengths = read_xkt_header(content)
    offset = 8 + len(lengths) * 4
    elements = []
    for length in lengths:
        chunk = content[offset:offset + length]
        if len(chunk) != length:
            raise ValueError("XKT content truncated")
        elements.append(zlib.decompress(chunk))
        offset += length
    return elements
