"""
CityJSON parser

Converts CityJSON city models into an XKTModel. Each CityObject becomes a
meta object; CityObjects with geometry also become entities. Surfaces are
triangulated in their own plane with shapely and colored by their semantic
surface type, falling back to the CityObject type.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon
from shapely.ops import triangulate

from xkt_convert.parsers._common import ensure_root_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)

Color = Tuple[Tuple[float, float, float], float]

OBJECT_TYPE_COLORS: Dict[str, Color] = {
    "Building": ((0.95, 0.95, 0.95), 1.0),
    "BuildingPart": ((0.95, 0.95, 0.95), 1.0),
    "BuildingInstallation": ((0.8, 0.8, 0.8), 1.0),
    "Bridge": ((0.7, 0.7, 0.7), 1.0),
    "BridgePart": ((0.7, 0.7, 0.7), 1.0),
    "CityFurniture": ((0.5, 0.5, 0.5), 1.0),
    "LandUse": ((0.7, 0.8, 0.6), 1.0),
    "PlantCover": ((0.3, 0.7, 0.3), 1.0),
    "SolitaryVegetationObject": ((0.3, 0.6, 0.2), 1.0),
    "TINRelief": ((0.6, 0.7, 0.5), 1.0),
    "Road": ((0.4, 0.4, 0.4), 1.0),
    "Railway": ((0.5, 0.45, 0.4), 1.0),
    "TransportSquare": ((0.45, 0.45, 0.45), 1.0),
    "Tunnel": ((0.5, 0.5, 0.5), 1.0),
    "WaterBody": ((0.3, 0.5, 0.9), 0.8),
}

SURFACE_TYPE_COLORS: Dict[str, Color] = {
    "RoofSurface": ((0.9, 0.3, 0.2), 1.0),
    "WallSurface": ((0.95, 0.95, 0.95), 1.0),
    "GroundSurface": ((0.6, 0.6, 0.6), 1.0),
    "ClosureSurface": ((0.8, 0.8, 0.8), 0.3),
    "OuterCeilingSurface": ((0.9, 0.9, 0.9), 1.0),
    "OuterFloorSurface": ((0.7, 0.7, 0.7), 1.0),
    "Window": ((0.4, 0.6, 0.9), 0.4),
    "Door": ((0.6, 0.4, 0.3), 1.0),
    "WaterSurface": ((0.3, 0.5, 0.9), 0.8),
    "WaterGroundSurface": ((0.4, 0.4, 0.6), 1.0),
    "TrafficArea": ((0.4, 0.4, 0.4), 1.0),
    "AuxiliaryTrafficArea": ((0.6, 0.6, 0.5), 1.0),
}

DEFAULT_COLOR: Color = ((0.8, 0.8, 0.8), 1.0)


def _newell_normal(points: np.ndarray) -> np.ndarray:
    shifted = np.roll(points, -1, axis=0)
    normal = np.array([
        np.sum((points[:, 1] - shifted[:, 1]) * (points[:, 2] + shifted[:, 2])),
        np.sum((points[:, 2] - shifted[:, 2]) * (points[:, 0] + shifted[:, 0])),
        np.sum((points[:, 0] - shifted[:, 0]) * (points[:, 1] + shifted[:, 1])),
    ])
    length = np.linalg.norm(normal)
    return normal / length if length > 0 else normal


def _plane_axes(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Two orthonormal vectors spanning the plane with the given normal."""
    helper = np.array([1.0, 0.0, 0.0]) if abs(normal[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    u = np.cross(normal, helper)
    u /= np.linalg.norm(u)
    v = np.cross(normal, u)
    return u, v


def triangulate_surface(vertices: np.ndarray, rings: Sequence[Sequence[int]]) -> List[Tuple[int, int, int]]:
    """
    Triangulate a planar surface given as an outer ring plus optional holes.

    Args:
        vertices: (N, 3) vertex array
        rings: Vertex index lists, the first one being the outer boundary

    Returns:
        Triangles as vertex index triples, wound to match the outer ring
    """
    outer = [int(i) for i in rings[0]]
    if len(outer) > 1 and outer[0] == outer[-1]:
        outer = outer[:-1]
    if len(outer) < 3:
        return []
    if len(outer) == 3 and len(rings) == 1:
        return [tuple(outer)]

    normal = _newell_normal(vertices[outer])
    if not np.any(normal):
        return []
    u, v = _plane_axes(normal)

    lookup: Dict[Tuple[float, float], int] = {}

    def _project(ring: Sequence[int]) -> List[Tuple[float, float]]:
        coords = []
        for index in ring:
            point = vertices[int(index)]
            xy = (float(point @ u), float(point @ v))
            lookup.setdefault(xy, int(index))
            coords.append(xy)
        return coords

    exterior = _project(outer)
    holes = [_project(ring) for ring in rings[1:] if len(ring) >= 3]
    polygon = Polygon(exterior, holes)
    if not polygon.is_valid:
        polygon = polygon.buffer(0)
    if polygon.is_empty:
        return []

    triangles = []
    for tri in triangulate(Polygon(exterior, holes)):
        if not polygon.contains(tri.centroid):
            continue
        coords = list(tri.exterior.coords)[:3]
        try:
            a, b, c = (lookup[(x, y)] for x, y in coords)
        except KeyError:
            continue
        tri_normal = np.cross(vertices[b] - vertices[a], vertices[c] - vertices[a])
        if tri_normal @ normal < 0:
            b, c = c, b
        triangles.append((a, b, c))
    return triangles


def _surfaces_with_semantics(geometry: Dict) -> List[Tuple[List[List[int]], Optional[str]]]:
    """Flatten any supported boundary nesting into (rings, semantic type) pairs."""
    geometry_type = geometry.get("type")
    boundaries = geometry.get("boundaries") or []
    semantics = geometry.get("semantics") or {}
    semantic_surfaces = semantics.get("surfaces") or []
    values = semantics.get("values")

    def _semantic(value) -> Optional[str]:
        if value is None or not isinstance(value, int) or value >= len(semantic_surfaces):
            return None
        return semantic_surfaces[value].get("type")

    def _value_at(*path):
        node = values
        for index in path:
            if not isinstance(node, list) or index >= len(node):
                return None
            node = node[index]
        return node

    surfaces = []
    if geometry_type in ("MultiSurface", "CompositeSurface"):
        for i, surface in enumerate(boundaries):
            surfaces.append((surface, _semantic(_value_at(i))))
    elif geometry_type == "Solid":
        for s, shell in enumerate(boundaries):
            for i, surface in enumerate(shell):
                surfaces.append((surface, _semantic(_value_at(s, i))))
    elif geometry_type in ("MultiSolid", "CompositeSolid"):
        for d, solid in enumerate(boundaries):
            for s, shell in enumerate(solid):
                for i, surface in enumerate(shell):
                    surfaces.append((surface, _semantic(_value_at(d, s, i))))
    return surfaces


def _lod(geometry: Dict) -> float:
    try:
        return float(geometry.get("lod", 0))
    except (TypeError, ValueError):
        return 0.0


def _decode_vertices(cityjson_data: Dict) -> np.ndarray:
    vertices = np.asarray(cityjson_data.get("vertices") or [], dtype=np.float64).reshape(-1, 3)
    transform = cityjson_data.get("transform")
    if transform:
        scale = np.asarray(transform.get("scale", [1, 1, 1]), dtype=np.float64)
        translate = np.asarray(transform.get("translate", [0, 0, 0]), dtype=np.float64)
        vertices = vertices * scale + translate
    return vertices


def parse_cityjson_into_xkt_model(
    cityjson_data: Dict,
    xkt_model: XKTModel,
    center: bool = False,
    rotate_x: bool = False,
    log: Optional[Callable[[str], None]] = None
) -> int:
    """
    Parse CityJSON into the model.

    Args:
        cityjson_data: Parsed CityJSON document
        xkt_model: Model to populate
        center: Move the model's center to the origin
        rotate_x: Convert from Z-up to Y-up
        log: Optional progress callback

    Returns:
        Number of entities created
    """
    log = log or logger.debug

    if not isinstance(cityjson_data, dict) or cityjson_data.get("type") != "CityJSON":
        raise ValueError("Not a CityJSON document: missing \"type\": \"CityJSON\"")
    city_objects = cityjson_data.get("CityObjects")
    if not isinstance(city_objects, dict):
        raise ValueError("CityJSON document has no CityObjects")

    vertices = _decode_vertices(cityjson_data)
    if center and len(vertices):
        vertices = vertices - (vertices.min(axis=0) + vertices.max(axis=0)) / 2.0
    if rotate_x:
        vertices = np.column_stack([vertices[:, 0], vertices[:, 2], -vertices[:, 1]])

    xkt_model.schema = xkt_model.schema or f"CityJSON {cityjson_data.get('version', '')}".strip()
    root_id = ensure_root_meta_object(xkt_model, xkt_model.model_id or "cityjson", "CityJSON Model")

    for object_id, city_object in city_objects.items():
        parents = city_object.get("parents") or []
        parent_id = parents[0] if parents else root_id
        property_set_ids = None
        attributes = city_object.get("attributes")
        if attributes:
            property_set_id = f"{object_id}-attributes"
            xkt_model.create_property_set(
                property_set_id,
                property_set_type="CityJSONAttributes",
                property_set_name="Attributes",
                properties=[{"name": k, "value": v} for k, v in attributes.items()],
            )
            property_set_ids = [property_set_id]
        xkt_model.create_meta_object(
            object_id,
            meta_object_type=city_object.get("type", "CityObject"),
            meta_object_name=object_id,
            parent_meta_object_id=parent_id,
            property_set_ids=property_set_ids,
        )

    num_entities = 0
    num_triangles = 0
    skipped_templates = 0

    for object_id, city_object in city_objects.items():
        geometries = [g for g in city_object.get("geometry") or [] if g.get("type") != "GeometryInstance"]
        skipped_templates += len(city_object.get("geometry") or []) - len(geometries)
        if not geometries:
            continue
        max_lod = max(_lod(g) for g in geometries)
        object_color = OBJECT_TYPE_COLORS.get(city_object.get("type"), DEFAULT_COLOR)

        triangles_by_color: Dict[Color, List[Tuple[int, int, int]]] = {}
        for geometry in geometries:
            if _lod(geometry) != max_lod:
                continue
            for rings, semantic in _surfaces_with_semantics(geometry):
                if not rings:
                    continue
                color = SURFACE_TYPE_COLORS.get(semantic, object_color)
                triangles_by_color.setdefault(color, []).extend(triangulate_surface(vertices, rings))

        mesh_ids = []
        for (rgb, opacity), triangles in triangles_by_color.items():
            if not triangles:
                continue
            tris = np.asarray(triangles, dtype=np.int64)
            used, remapped = np.unique(tris.reshape(-1), return_inverse=True)
            geometry_id = f"{object_id}-geometry-{len(mesh_ids)}"
            mesh_id = f"{object_id}-mesh-{len(mesh_ids)}"
            xkt_model.create_geometry(
                geometry_id,
                "triangles",
                positions=vertices[used],
                indices=np.asarray(remapped).reshape(-1),
            )
            xkt_model.create_mesh(mesh_id, geometry_id, color=rgb, opacity=opacity)
            mesh_ids.append(mesh_id)
            num_triangles += len(tris)

        if mesh_ids:
            xkt_model.create_entity(object_id, mesh_ids)
            num_entities += 1

    if skipped_templates:
        log(f"Skipped CityJSON geometry instances: {skipped_templates}")
    log(f"Converted CityJSON objects: {len(city_objects)}")
    log(f"Converted CityJSON entities: {num_entities}")
    log(f"Converted CityJSON triangles: {num_triangles}")
    return num_entities
