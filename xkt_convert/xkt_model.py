"""
XKT Model

In-memory model of property sets, meta objects, geometries, meshes and
entities. Parsers populate the model; finalize() bakes, compresses and tiles
it so it can be written with xkt_writer.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from xkt_convert import geometry_utils as gu
from xkt_convert.config import DEFAULT_EDGE_THRESHOLD, DEFAULT_KD_TREE_MAX_DEPTH

logger = logging.getLogger(__name__)

PRIMITIVE_TYPES = ("triangles", "lines", "points")


@dataclass
class XKTPropertySet:
    """A named group of properties that meta objects can reference."""
    property_set_id: str
    property_set_type: str
    property_set_name: str
    properties: List[Dict] = field(default_factory=list)


@dataclass
class XKTMetaObject:
    """Semantic node (e.g. IfcWall, Building) in the model's object tree."""
    meta_object_id: str
    meta_object_type: str
    meta_object_name: str
    parent_meta_object_id: Optional[str] = None
    property_set_ids: Optional[List[str]] = None


@dataclass
class XKTGeometry:
    """Shareable vertex/index data for one primitive."""
    geometry_id: str
    geometry_index: int
    primitive_type: str
    positions: np.ndarray
    normals: Optional[np.ndarray] = None
    colors_compressed: Optional[np.ndarray] = None
    indices: Optional[np.ndarray] = None
    edge_indices: Optional[np.ndarray] = None
    solid: bool = False
    num_instances: int = 0
    positions_quantized: Optional[np.ndarray] = None
    normals_oct_encoded: Optional[np.ndarray] = None

    @property
    def reused(self) -> bool:
        return self.num_instances > 1


@dataclass
class XKTMesh:
    """An instance of a geometry with a transform and material."""
    mesh_id: str
    mesh_index: int
    geometry: XKTGeometry
    matrix: Optional[np.ndarray] = None
    color: Sequence[float] = (1.0, 1.0, 1.0)
    opacity: float = 1.0
    metallic: float = 0.0
    roughness: float = 1.0
    entity: Optional["XKTEntity"] = None


@dataclass
class XKTEntity:
    """A selectable object made of one or more meshes."""
    entity_id: str
    entity_index: int
    meshes: List[XKTMesh]
    aabb: Optional[np.ndarray] = None
    has_reused_geometry: bool = False


@dataclass
class XKTTile:
    """A group of entities sharing a local origin and quantization range."""
    aabb: np.ndarray
    entities: List[XKTEntity]


class _KDNode:
    def __init__(self, aabb: np.ndarray):
        self.aabb = aabb
        self.entities: List[XKTEntity] = []
        self.left: Optional["_KDNode"] = None
        self.right: Optional["_KDNode"] = None


class XKTModel:
    """
    A document model that represents the contents of an .xkt file.

    Typical use:

        model = XKTModel(model_id="house")
        model.create_geometry("box", "triangles", positions=..., indices=...)
        model.create_mesh("box-mesh", "box", color=(0.8, 0.2, 0.2))
        model.create_entity("box-entity", ["box-mesh"])
        model.finalize()
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        project_id: str = "",
        revision_id: str = "",
        author: str = "",
        created_at: str = "",
        creating_application: str = "",
        schema: str = "",
        edge_threshold: float = DEFAULT_EDGE_THRESHOLD,
        kd_tree_max_depth: int = DEFAULT_KD_TREE_MAX_DEPTH
    ):
        self.model_id = model_id or ""
        self.project_id = project_id
        self.revision_id = revision_id
        self.author = author
        self.created_at = created_at
        self.creating_application = creating_application
        self.schema = schema
        self.edge_threshold = edge_threshold
        self.kd_tree_max_depth = kd_tree_max_depth

        self.property_sets: Dict[str, XKTPropertySet] = {}
        self.property_sets_list: List[XKTPropertySet] = []
        self.meta_objects: Dict[str, XKTMetaObject] = {}
        self.meta_objects_list: List[XKTMetaObject] = []
        self.geometries: Dict[str, XKTGeometry] = {}
        self.geometries_list: List[XKTGeometry] = []
        self.meshes: Dict[str, XKTMesh] = {}
        self.meshes_list: List[XKTMesh] = []
        self.entities: Dict[str, XKTEntity] = {}
        self.entities_list: List[XKTEntity] = []
        self.tiles_list: List[XKTTile] = []

        self.reused_geometries_decode_matrix = gu.identity_mat4()
        self.aabb = np.zeros(6, dtype=np.float64)
        self.finalized = False

    def _check_not_finalized(self, action: str):
        if self.finalized:
            raise RuntimeError(f"XKTModel has been finalized, can't {action}")

    def create_property_set(
        self,
        property_set_id: str,
        property_set_type: str = "",
        property_set_name: str = "",
        properties: Optional[List[Dict]] = None
    ) -> XKTPropertySet:
        """
        Create a property set. An existing set with the same ID is returned unchanged.
        """
        self._check_not_finalized("add more property sets")
        if property_set_id is None:
            raise ValueError("property_set_id is required")
        existing = self.property_sets.get(property_set_id)
        if existing is not None:
            logger.debug(f"Property set already exists, skipping: {property_set_id}")
            return existing
        property_set = XKTPropertySet(
            property_set_id=property_set_id,
            property_set_type=property_set_type or "",
            property_set_name=property_set_name or property_set_id,
            properties=list(properties or []),
        )
        self.property_sets[property_set_id] = property_set
        self.property_sets_list.append(property_set)
        return property_set

    def create_meta_object(
        self,
        meta_object_id: str,
        meta_object_type: str = "default",
        meta_object_name: Optional[str] = None,
        parent_meta_object_id: Optional[str] = None,
        property_set_ids: Optional[List[str]] = None
    ) -> XKTMetaObject:
        """
        Create a meta object. An existing object with the same ID is returned unchanged.
        """
        self._check_not_finalized("add more meta objects")
        if meta_object_id is None:
            raise ValueError("meta_object_id is required")
        existing = self.meta_objects.get(meta_object_id)
        if existing is not None:
            logger.debug(f"Meta object already exists, skipping: {meta_object_id}")
            return existing
        meta_object = XKTMetaObject(
            meta_object_id=meta_object_id,
            meta_object_type=meta_object_type or "default",
            meta_object_name=meta_object_name or meta_object_id,
            parent_meta_object_id=parent_meta_object_id,
            property_set_ids=list(property_set_ids) if property_set_ids else None,
        )
        self.meta_objects[meta_object_id] = meta_object
        self.meta_objects_list.append(meta_object)
        return meta_object

    def create_geometry(
        self,
        geometry_id: str,
        primitive_type: str,
        positions,
        normals=None,
        colors=None,
        colors_compressed=None,
        indices=None,
        edge_indices=None
    ) -> XKTGeometry:
        """
        Create a geometry that meshes can instance.

        Args:
            geometry_id: Unique geometry ID
            primitive_type: "triangles", "lines" or "points"
            positions: Flat or (N, 3) vertex positions
            normals: Flat or (N, 3) vertex normals (triangles only)
            colors: Flat or (N, 3|4) float colors in 0-1 (points only)
            colors_compressed: Flat or (N, 4) uint8 RGBA colors (points only)
            indices: Vertex indices (required for triangles and lines)
            edge_indices: Explicit edge indices (triangles only, built on finalize if omitted)

        Returns:
            The new XKTGeometry
        """
        self._check_not_finalized("add more geometries")
        if geometry_id is None:
            raise ValueError("geometry_id is required")
        if geometry_id in self.geometries:
            raise ValueError(f"XKTGeometry already exists with this ID: {geometry_id}")
        if primitive_type not in PRIMITIVE_TYPES:
            raise ValueError(f"Unsupported primitive type '{primitive_type}', expected one of {PRIMITIVE_TYPES}")
        if positions is None:
            raise ValueError("positions are required")

        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)

        if primitive_type in ("triangles", "lines"):
            if indices is None:
                raise ValueError(f"indices are required for {primitive_type} geometry")
            indices = np.asarray(indices, dtype=np.uint32).reshape(-1)
            if len(indices) and int(indices.max()) >= len(positions):
                raise ValueError(f"Geometry {geometry_id} has indices out of range")
        else:
            indices = None

        geometry = XKTGeometry(
            geometry_id=geometry_id,
            geometry_index=len(self.geometries_list),
            primitive_type=primitive_type,
            positions=positions,
            indices=indices,
        )

        if primitive_type == "triangles":
            if normals is not None:
                geometry.normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
            if edge_indices is not None:
                geometry.edge_indices = np.asarray(edge_indices, dtype=np.uint32).reshape(-1)

        if primitive_type == "points":
            if colors_compressed is not None:
                geometry.colors_compressed = np.asarray(colors_compressed, dtype=np.uint8).reshape(-1, 4)
            elif colors is not None:
                geometry.colors_compressed = _compress_colors(colors, len(positions))

        self.geometries[geometry_id] = geometry
        self.geometries_list.append(geometry)
        return geometry

    def create_mesh(
        self,
        mesh_id: str,
        geometry_id: str,
        matrix: Optional[Sequence[float]] = None,
        position: Optional[Sequence[float]] = None,
        scale: Optional[Sequence[float]] = None,
        rotation: Optional[Sequence[float]] = None,
        color: Optional[Sequence[float]] = None,
        opacity: float = 1.0,
        metallic: float = 0.0,
        roughness: float = 1.0
    ) -> XKTMesh:
        """
        Create a mesh instancing an existing geometry.

        Either ``matrix`` (16 column-major values) or any of ``position``,
        ``scale`` and ``rotation`` (Euler degrees) may be given.
        """
        self._check_not_finalized("add more meshes")
        if mesh_id is None:
            raise ValueError("mesh_id is required")
        if mesh_id in self.meshes:
            raise ValueError(f"XKTMesh already exists with this ID: {mesh_id}")
        geometry = self.geometries.get(geometry_id)
        if geometry is None:
            raise ValueError(f"XKTGeometry not found: {geometry_id}")

        geometry.num_instances += 1

        if matrix is not None:
            mesh_matrix = gu.mat4_from_column_major(matrix)
        elif position is not None or scale is not None or rotation is not None:
            mesh_matrix = gu.compose_mat4(position=position, scale=scale, rotation=rotation)
        else:
            mesh_matrix = None

        mesh = XKTMesh(
            mesh_id=mesh_id,
            mesh_index=len(self.meshes_list),
            geometry=geometry,
            matrix=mesh_matrix,
            color=tuple(color[:3]) if color is not None else (1.0, 1.0, 1.0),
            opacity=1.0 if opacity is None else float(opacity),
            metallic=0.0 if metallic is None else float(metallic),
            roughness=1.0 if roughness is None else float(roughness),
        )
        self.meshes[mesh_id] = mesh
        self.meshes_list.append(mesh)
        return mesh

    def create_entity(self, entity_id: str, mesh_ids: Sequence[str]) -> XKTEntity:
        """
        Create an entity from existing meshes. Unknown or already-owned meshes are skipped.
        """
        self._check_not_finalized("add more entities")
        if entity_id is None:
            raise ValueError("entity_id is required")
        if entity_id in self.entities:
            raise ValueError(f"XKTEntity already exists with this ID: {entity_id}")
        if not mesh_ids:
            raise ValueError(f"XKTEntity {entity_id} needs at least one mesh")

        meshes = []
        for mesh_id in mesh_ids:
            mesh = self.meshes.get(mesh_id)
            if mesh is None:
                logger.warning(f"XKTMesh not found: {mesh_id}")
                continue
            if mesh.entity is not None:
                logger.warning(f"XKTMesh {mesh_id} already used by entity {mesh.entity.entity_id}")
                continue
            meshes.append(mesh)

        if not meshes:
            raise ValueError(f"XKTEntity {entity_id} has no valid meshes")

        entity = XKTEntity(entity_id=entity_id, entity_index=len(self.entities_list), meshes=meshes)
        for mesh in meshes:
            mesh.entity = entity
        self.entities[entity_id] = entity
        self.entities_list.append(entity)
        return entity

    def finalize(self):
        """
        Bake, compress and tile the model. No more objects can be created afterwards.
        """
        self._check_not_finalized("finalize again")

        self._bake_single_use_geometries()
        self._oct_encode_normals()
        self._build_edges_and_solidity()
        self._create_entity_aabbs()
        self._create_tiles()
        self._quantize_reused_geometries()

        self.aabb = gu.collapse_aabb()
        for tile in self.tiles_list:
            gu.expand_aabb(self.aabb, tile.aabb)
        if not self.tiles_list:
            self.aabb = np.zeros(6, dtype=np.float64)

        self.finalized = True
        logger.debug(
            f"Finalized XKTModel: {len(self.geometries_list)} geometries, {len(self.meshes_list)} meshes, "
            f"{len(self.entities_list)} entities, {len(self.tiles_list)} tiles"
        )

    def _bake_single_use_geometries(self):
        for mesh in self.meshes_list:
            geometry = mesh.geometry
            if geometry.reused or mesh.matrix is None:
                continue
            geometry.positions = gu.transform_positions(geometry.positions, mesh.matrix)
            if geometry.normals is not None:
                geometry.normals = gu.transform_normals(geometry.normals, mesh.matrix)
            # Baked geometry no longer needs its matrix
            mesh.matrix = None

    def _oct_encode_normals(self):
        for geometry in self.geometries_list:
            if geometry.normals is not None:
                geometry.normals_oct_encoded = gu.oct_encode_normals(geometry.normals)

    def _build_edges_and_solidity(self):
        for geometry in self.geometries_list:
            if geometry.primitive_type != "triangles" or geometry.indices is None:
                continue
            if geometry.edge_indices is None:
                geometry.edge_indices = gu.build_edge_indices(
                    geometry.positions, geometry.indices, self.edge_threshold
                )
            geometry.solid = gu.is_triangle_mesh_solid(geometry.positions, geometry.indices)

    def _create_entity_aabbs(self):
        for entity in self.entities_list:
            aabb = gu.collapse_aabb()
            for mesh in entity.meshes:
                geometry = mesh.geometry
                if len(geometry.positions) == 0:
                    continue
                if geometry.reused:
                    entity.has_reused_geometry = True
                    matrix = mesh.matrix if mesh.matrix is not None else gu.identity_mat4()
                    world = gu.transform_positions(geometry.positions, matrix)
                else:
                    world = geometry.positions
                gu.expand_aabb(aabb, gu.positions_aabb(world))
            if not np.all(np.isfinite(aabb)):
                aabb = np.zeros(6, dtype=np.float64)
            entity.aabb = aabb

    def _create_tiles(self):
        if not self.entities_list:
            return

        root_aabb = gu.collapse_aabb()
        for entity in self.entities_list:
            gu.expand_aabb(root_aabb, entity.aabb)
        root = _KDNode(root_aabb)
        for entity in self.entities_list:
            self._insert_entity(root, entity, 0)

        self._create_tiles_from_kd_node(root)

    def _insert_entity(self, node: _KDNode, entity: XKTEntity, depth: int):
        entity_aabb = entity.aabb
        if depth >= self.kd_tree_max_depth:
            node.entities.append(entity)
            return
        if node.left is not None and gu.aabb_contains(node.left.aabb, entity_aabb):
            self._insert_entity(node.left, entity, depth + 1)
            return
        if node.right is not None and gu.aabb_contains(node.right.aabb, entity_aabb):
            self._insert_entity(node.right, entity, depth + 1)
            return

        node_aabb = node.aabb
        dim = int(np.argmax(node_aabb[3:] - node_aabb[:3]))
        mid = (node_aabb[dim] + node_aabb[dim + 3]) / 2.0

        if node.left is None:
            left_aabb = node_aabb.copy()
            left_aabb[dim + 3] = mid
            node.left = _KDNode(left_aabb)
            if gu.aabb_contains(left_aabb, entity_aabb):
                self._insert_entity(node.left, entity, depth + 1)
                return

        if node.right is None:
            right_aabb = node_aabb.copy()
            right_aabb[dim] = mid
            node.right = _KDNode(right_aabb)
            if gu.aabb_contains(right_aabb, entity_aabb):
                self._insert_entity(node.right, entity, depth + 1)
                return

        node.entities.append(entity)

    def _create_tiles_from_kd_node(self, node: _KDNode):
        if node.entities:
            self._create_tile(node.entities)
        if node.left is not None:
            self._create_tiles_from_kd_node(node.left)
        if node.right is not None:
            self._create_tiles_from_kd_node(node.right)

    def _create_tile(self, entities: List[XKTEntity]):
        tile_aabb = gu.collapse_aabb()
        for entity in entities:
            gu.expand_aabb(tile_aabb, entity.aabb)

        tile_center = gu.aabb_center(tile_aabb)
        rtc_aabb = np.concatenate([tile_aabb[:3] - tile_center, tile_aabb[3:] - tile_center])

        for entity in entities:
            for mesh in entity.meshes:
                geometry = mesh.geometry
                if geometry.reused:
                    # Shift the instance so it is relative to the tile centre
                    matrix = mesh.matrix if mesh.matrix is not None else gu.identity_mat4()
                    mesh.matrix = gu.translation_mat4(-tile_center) @ matrix
                    continue
                geometry.positions = geometry.positions - tile_center
                geometry.positions_quantized = gu.quantize_positions(geometry.positions, rtc_aabb)

        self.tiles_list.append(XKTTile(aabb=tile_aabb, entities=list(entities)))

    def _quantize_reused_geometries(self):
        reused = [g for g in self.geometries_list if g.reused and len(g.positions)]
        if not reused:
            return
        reused_aabb = gu.collapse_aabb()
        for geometry in reused:
            gu.expand_aabb(reused_aabb, gu.positions_aabb(geometry.positions))
        for geometry in reused:
            geometry.positions_quantized = gu.quantize_positions(geometry.positions, reused_aabb)
        self.reused_geometries_decode_matrix = gu.create_positions_decode_matrix(reused_aabb)


def _compress_colors(colors, num_vertices: int) -> np.ndarray:
    """Convert float 0-1 RGB or RGBA colors into uint8 RGBA."""
    arr = np.asarray(colors, dtype=np.float64)
    components = arr.size // num_vertices if num_vertices else 4
    if components not in (3, 4):
        raise ValueError(f"Expected RGB or RGBA colors, got {components} components per vertex")
    arr = arr.reshape(-1, components)
    if components == 3:
        arr = np.column_stack([arr, np.ones(len(arr))])
    return np.clip(np.round(arr * 255.0), 0, 255).astype(np.uint8)
