"""
glTF parser

Converts glTF 2.0 (.gltf with external or embedded buffers, or .glb) into an
XKTModel. Each node with a mesh becomes an entity; each mesh primitive becomes
a geometry shared by every node that instances the mesh.
"""

import base64
import json
import logging
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pygltflib

from xkt_convert import geometry_utils as gu
from xkt_convert.parsers._common import create_entity_with_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)

# Accessor component types
COMPONENT_DTYPES = {
    5120: np.int8,
    5121: np.uint8,
    5122: np.int16,
    5123: np.uint16,
    5125: np.uint32,
    5126: np.float32,
}

TYPE_SIZES = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}

# Primitive modes
MODE_POINTS = 0
MODE_LINES = 1
MODE_TRIANGLES = 4
MODE_TRIANGLE_STRIP = 5
MODE_TRIANGLE_FAN = 6

GLB_MAGIC = b"glTF"

UNSUPPORTED_EXTENSIONS = ("KHR_draco_mesh_compression", "EXT_meshopt_compression")

Attachment = Callable[[str], bytes]


class _GLTFReader:
    """Resolves buffers and reads accessors for one glTF document."""

    def __init__(self, gltf: pygltflib.GLTF2, get_attachment: Optional[Attachment] = None):
        self.gltf = gltf
        self.get_attachment = get_attachment
        self._buffers: Dict[int, bytes] = {}

    def buffer(self, index: int) -> bytes:
        if index in self._buffers:
            return self._buffers[index]
        buffer = self.gltf.buffers[index]
        uri = buffer.uri
        if uri is None:
            data = self.gltf.binary_blob()
            if data is None:
                raise ValueError(f"glTF buffer {index} has no URI and no binary chunk")
        elif uri.startswith("data:"):
            _, _, payload = uri.partition(",")
            data = base64.b64decode(payload)
        else:
            if self.get_attachment is None:
                raise ValueError(f"glTF buffer {index} references external file '{uri}' but no attachment loader was given")
            data = self.get_attachment(uri)
        self._buffers[index] = bytes(data)
        return self._buffers[index]

    def _view_values(self, view_index: int, byte_offset: Optional[int], dtype: np.dtype,
                     count: int, components: int) -> np.ndarray:
        view = self.gltf.bufferViews[view_index]
        data = self.buffer(view.buffer)
        offset = (view.byteOffset or 0) + (byte_offset or 0)
        element_size = dtype.itemsize * components
        stride = view.byteStride or element_size
        if stride == element_size:
            values = np.frombuffer(data, dtype=dtype, count=count * components, offset=offset)
            return values.reshape(count, components)
        return np.lib.stride_tricks.as_strided(
            np.frombuffer(data, dtype=np.uint8, offset=offset),
            shape=(count, element_size),
            strides=(stride, 1),
        ).copy().view(dtype).reshape(count, components)

    def accessor(self, index: int) -> np.ndarray:
        """
        Read an accessor into an (count, components) array; sparse
        substitutions are applied and normalized integer accessors are
        converted to floats in 0-1 or -1-1.
        """
        accessor = self.gltf.accessors[index]
        dtype = np.dtype(COMPONENT_DTYPES[accessor.componentType]).newbyteorder("<")
        components = TYPE_SIZES[accessor.type]
        count = accessor.count

        if accessor.bufferView is None:
            values = np.zeros((count, components), dtype=dtype)
        else:
            values = self._view_values(accessor.bufferView, accessor.byteOffset, dtype, count, components)

        sparse = accessor.sparse
        if sparse is not None and sparse.count:
            index_dtype = np.dtype(COMPONENT_DTYPES[sparse.indices.componentType]).newbyteorder("<")
            targets = self._view_values(
                sparse.indices.bufferView, sparse.indices.byteOffset, index_dtype, sparse.count, 1
            ).reshape(-1)
            if targets.size and int(targets.max()) >= count:
                raise ValueError(f"glTF accessor {index} has sparse indices out of range")
            substitutes = self._view_values(
                sparse.values.bufferView, sparse.values.byteOffset, dtype, sparse.count, components
            )
            # frombuffer arrays are read-only
            values = values.copy()
            values[targets] = substitutes

        if accessor.normalized and dtype.kind in "iu":
            info = np.iinfo(dtype)
            return np.maximum(values.astype(np.float64) / info.max, -1.0)
        return values


def _node_matrix(node) -> np.ndarray:
    if node.matrix is not None and len(node.matrix) == 16:
        return gu.mat4_from_column_major(node.matrix)
    return gu.compose_mat4(
        position=node.translation,
        quaternion=node.rotation,
        scale=node.scale,
    )


def _material_params(gltf: pygltflib.GLTF2, material_index: Optional[int]) -> Tuple[tuple, float, float, float]:
    """Return (color, opacity, metallic, roughness) for a material index."""
    color, opacity, metallic, roughness = (1.0, 1.0, 1.0), 1.0, 1.0, 1.0
    if material_index is None or not 0 <= material_index < len(gltf.materials or []):
        return color, opacity, metallic, roughness
    material = gltf.materials[material_index]
    pbr = material.pbrMetallicRoughness
    if pbr is not None:
        if pbr.baseColorFactor:
            factor = pbr.baseColorFactor
            color, opacity = tuple(factor[:3]), float(factor[3]) if len(factor) > 3 else 1.0
        if pbr.metallicFactor is not None:
            metallic = float(pbr.metallicFactor)
        if pbr.roughnessFactor is not None:
            roughness = float(pbr.roughnessFactor)
    extensions = material.extensions or {}
    spec_gloss = extensions.get("KHR_materials_pbrSpecularGlossiness")
    if spec_gloss and spec_gloss.get("diffuseFactor"):
        factor = spec_gloss["diffuseFactor"]
        color, opacity = tuple(factor[:3]), float(factor[3])
    return color, opacity, metallic, roughness


def _triangle_indices(mode: int, indices: np.ndarray) -> Optional[np.ndarray]:
    if mode == MODE_TRIANGLES:
        return indices
    if mode == MODE_TRIANGLE_STRIP:
        tris = []
        for i in range(len(indices) - 2):
            a, b, c = indices[i], indices[i + 1], indices[i + 2]
            tris.append((a, b, c) if i % 2 == 0 else (b, a, c))
        return np.array(tris, dtype=np.uint32).reshape(-1)
    if mode == MODE_TRIANGLE_FAN:
        tris = [(indices[0], indices[i], indices[i + 1]) for i in range(1, len(indices) - 1)]
        return np.array(tris, dtype=np.uint32).reshape(-1)
    return None


class _GLTFConverter:
    def __init__(self, reader: _GLTFReader, xkt_model: XKTModel, include_normals: bool, log):
        self.reader = reader
        self.gltf = reader.gltf
        self.xkt_model = xkt_model
        self.include_normals = include_normals
        self.log = log
        # (mesh index, primitive index) -> geometry id, or None when the primitive was skipped
        self.geometries: Dict[Tuple[int, int], Optional[str]] = {}
        self.num_meshes = 0
        self.num_entities = 0
        self.num_triangles = 0

    def _geometry_for(self, mesh_index: int, primitive_index: int, primitive) -> Optional[str]:
        key = (mesh_index, primitive_index)
        if key in self.geometries:
            return self.geometries[key]

        geometry_id = None
        position_index = primitive.attributes.POSITION
        if position_index is None:
            self.log(f"Skipping primitive {primitive_index} of mesh {mesh_index}: no POSITION")
        else:
            geometry_id = self._create_geometry(mesh_index, primitive_index, primitive, position_index)
        self.geometries[key] = geometry_id
        return geometry_id

    def _create_geometry(self, mesh_index, primitive_index, primitive, position_index) -> Optional[str]:
        positions = self.reader.accessor(position_index).astype(np.float64)[:, :3]
        mode = MODE_TRIANGLES if primitive.mode is None else primitive.mode
        if primitive.indices is not None:
            indices = self.reader.accessor(primitive.indices).reshape(-1).astype(np.uint32)
        else:
            indices = np.arange(len(positions), dtype=np.uint32)

        geometry_id = f"geometry-{mesh_index}-{primitive_index}"

        if mode == MODE_POINTS:
            colors = None
            color_index = getattr(primitive.attributes, "COLOR_0", None)
            if color_index is not None:
                colors = self.reader.accessor(color_index).astype(np.float64)
                if colors.shape[1] == 3:
                    colors = np.column_stack([colors, np.ones(len(colors))])
            self.xkt_model.create_geometry(geometry_id, "points", positions=positions, colors=colors)
            return geometry_id

        if mode == MODE_LINES:
            self.xkt_model.create_geometry(geometry_id, "lines", positions=positions, indices=indices)
            return geometry_id

        triangles = _triangle_indices(mode, indices)
        if triangles is None:
            self.log(f"Skipping primitive {primitive_index} of mesh {mesh_index}: unsupported mode {mode}")
            return None

        normals = None
        normal_index = primitive.attributes.NORMAL
        if self.include_normals and normal_index is not None:
            normals = self.reader.accessor(normal_index).astype(np.float64)
        self.xkt_model.create_geometry(
            geometry_id,
            "triangles",
            positions=positions,
            normals=normals,
            indices=triangles,
        )
        self.num_triangles += len(triangles) // 3
        return geometry_id

    def _entity_id(self, node_index: int, node) -> str:
        name = node.name
        if name and name not in self.xkt_model.entities:
            return name
        candidate = f"{name}-{node_index}" if name else f"node-{node_index}"
        while candidate in self.xkt_model.entities:
            candidate = f"{candidate}-{node_index}"
        return candidate

    def visit(self, node_index: int, parent_matrix: np.ndarray, depth: int = 0):
        if depth > 256:
            raise ValueError("glTF node hierarchy too deep or cyclic")
        node = self.gltf.nodes[node_index]
        matrix = parent_matrix @ _node_matrix(node)

        if node.mesh is not None:
            mesh = self.gltf.meshes[node.mesh]
            mesh_ids: List[str] = []
            for primitive_index, primitive in enumerate(mesh.primitives):
                geometry_id = self._geometry_for(node.mesh, primitive_index, primitive)
                if geometry_id is None:
                    continue
                color, opacity, metallic, roughness = _material_params(self.gltf, primitive.material)
                mesh_id = f"mesh-{self.num_meshes}"
                self.xkt_model.create_mesh(
                    mesh_id,
                    geometry_id,
                    matrix=gu.mat4_to_column_major(matrix),
                    color=color,
                    opacity=opacity,
                    metallic=metallic,
                    roughness=roughness,
                )
                mesh_ids.append(mesh_id)
                self.num_meshes += 1
            if mesh_ids:
                entity_id = self._entity_id(node_index, node)
                create_entity_with_meta_object(self.xkt_model, entity_id, mesh_ids, "Default", node.name)
                self.num_entities += 1

        for child_index in node.children or []:
            self.visit(child_index, matrix, depth + 1)


def _root_nodes(gltf: pygltflib.GLTF2) -> List[int]:
    if gltf.scenes:
        scene_index = gltf.scene if gltf.scene is not None else 0
        return list(gltf.scenes[scene_index].nodes or [])
    children = {child for node in gltf.nodes or [] for child in (node.children or [])}
    return [i for i in range(len(gltf.nodes or [])) if i not in children]


def load_gltf(gltf_data) -> pygltflib.GLTF2:
    """
    Build a pygltflib document from .glb bytes, .gltf JSON text or parsed JSON.
    """
    try:
        if isinstance(gltf_data, (bytes, bytearray)):
            if bytes(gltf_data[:4]) == GLB_MAGIC:
                return pygltflib.GLTF2().load_from_bytes(bytes(gltf_data))
            gltf_data = bytes(gltf_data).decode("utf-8")
        elif isinstance(gltf_data, dict):
            gltf_data = json.dumps(gltf_data)
        # from_json builds nested dataclasses (Attributes, Primitive, ...)
        return pygltflib.GLTF2.from_json(gltf_data)
    except Exception as e:
        raise ValueError(f"Could not parse glTF data: {e}") from e


def parse_gltf_into_xkt_model(
    gltf_data,
    xkt_model: XKTModel,
    get_attachment: Optional[Attachment] = None,
    include_normals: bool = True,
    log: Optional[Callable[[str], None]] = None
):
    """
    Parse glTF into the model.

    Args:
        gltf_data: Raw .gltf or .glb file content, or parsed .gltf JSON (dict)
        xkt_model: Model to populate
        get_attachment: Loads an external buffer given its relative URI
        include_normals: Keep NORMAL attributes of triangle primitives
        log: Optional progress callback

    Returns:
        Number of entities created
    """
    log = log or logger.debug

    gltf = load_gltf(gltf_data)
    required = gltf.extensionsRequired or []
    for extension in UNSUPPORTED_EXTENSIONS:
        if extension in required:
            raise ValueError(f"glTF requires unsupported extension {extension}")

    if not gltf.nodes:
        raise ValueError("glTF contains no nodes")

    converter = _GLTFConverter(_GLTFReader(gltf, get_attachment), xkt_model, include_normals, log)
    for node_index in _root_nodes(gltf):
        converter.visit(node_index, gu.identity_mat4())

    log(f"Converted glTF geometries: {sum(1 for g in converter.geometries.values() if g)}")
    log(f"Converted glTF meshes: {converter.num_meshes}")
    log(f"Converted glTF entities: {converter.num_entities}")
    log(f"Converted glTF triangles: {converter.num_triangles}")
    return converter.num_entities
