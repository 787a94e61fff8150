"""
IFC parser

Converts IFC files with ifcopenshell: the spatial/decomposition tree becomes
meta objects, property sets become property sets, and every product with a
body representation becomes an entity with one mesh per surface style.
"""

import logging
import math
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import ifcopenshell
import ifcopenshell.geom
import numpy as np

from xkt_convert.config import DEFAULT_EXCLUDED_IFC_TYPES
from xkt_convert.parsers._common import create_entity_with_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)

# Colors for products whose faces carry no style (RGB, opacity)
DEFAULT_IFC_COLORS: Dict[str, Tuple[Tuple[float, float, float], float]] = {
    "IfcWall": ((0.8, 0.8, 0.8), 1.0),
    "IfcSlab": ((0.7, 0.7, 0.7), 1.0),
    "IfcRoof": ((0.8470588235, 0.427450980392, 0.0), 1.0),
    "IfcWindow": ((0.137255, 0.403922, 0.870588), 0.4),
    "IfcDoor": ((0.637255, 0.603922, 0.670588), 1.0),
    "IfcCovering": ((0.7, 0.7, 0.7), 1.0),
    "IfcBeam": ((0.6, 0.6, 0.6), 1.0),
    "IfcColumn": ((0.6, 0.6, 0.6), 1.0),
    "IfcStair": ((0.6, 0.6, 0.6), 1.0),
    "IfcRailing": ((0.5, 0.5, 0.5), 1.0),
    "IfcPlate": ((0.8470588235, 0.427450980392, 0.0), 0.5),
    "IfcSpace": ((0.137255, 0.403922, 0.870588), 0.2),
    "IfcFurnishingElement": ((0.6, 0.4, 0.3), 1.0),
}
DEFAULT_COLOR = ((0.8, 0.8, 0.8), 1.0)


def _set_geom_setting(settings, key: str, value) -> bool:
    """Set an iterator setting under either the hyphenated or legacy constant name."""
    for name in (key, key.replace("-", "_").upper()):
        try:
            settings.set(name, value)
            return True
        except Exception:
            legacy = getattr(settings, name, None)
            if legacy is None or not isinstance(legacy, int):
                continue
            try:
                settings.set(legacy, value)
                return True
            except Exception:
                continue
    logger.debug(f"Geometry setting not supported by this ifcopenshell: {key}")
    return False


def _default_color(product) -> Tuple[Tuple[float, float, float], float]:
    for ifc_type, color in DEFAULT_IFC_COLORS.items():
        if product.is_a(ifc_type):
            return color
    return DEFAULT_COLOR


def _material_color(material) -> Optional[Tuple[Tuple[float, float, float], float]]:
    """Read (rgb, opacity) from an ifcopenshell geometry material."""
    diffuse = getattr(material, "diffuse", None)
    if diffuse is None:
        return None
    if hasattr(diffuse, "r") and callable(diffuse.r):
        rgb = (float(diffuse.r()), float(diffuse.g()), float(diffuse.b()))
    else:
        rgb = tuple(float(c) for c in list(diffuse)[:3])
    transparency = getattr(material, "transparency", 0.0)
    try:
        transparency = float(transparency)
    except (TypeError, ValueError):
        transparency = 0.0
    if math.isnan(transparency):
        transparency = 0.0
    return rgb, 1.0 - transparency


def _property_value(prop):
    nominal = getattr(prop, "NominalValue", None)
    if nominal is None:
        return None
    return getattr(nominal, "wrappedValue", nominal)


def _create_property_sets(xkt_model: XKTModel, element) -> List[str]:
    """Create property sets for an element and return their IDs."""
    property_set_ids = []
    for rel in getattr(element, "IsDefinedBy", None) or []:
        if not rel.is_a("IfcRelDefinesByProperties"):
            continue
        definition = rel.RelatingPropertyDefinition
        if definition is None or not definition.is_a("IfcPropertySet"):
            continue
        properties = []
        for prop in definition.HasProperties or []:
            if not prop.is_a("IfcPropertySingleValue"):
                continue
            value = _property_value(prop)
            if isinstance(value, (bool, int, float, str)) or value is None:
                properties.append({"name": prop.Name, "value": value, "type": prop.is_a()})
            else:
                properties.append({"name": prop.Name, "value": str(value), "type": prop.is_a()})
        xkt_model.create_property_set(
            definition.GlobalId,
            property_set_type=definition.is_a(),
            property_set_name=definition.Name or definition.GlobalId,
            properties=properties,
        )
        property_set_ids.append(definition.GlobalId)
    return property_set_ids


def _create_meta_objects(xkt_model: XKTModel, element, parent_id: Optional[str], visited: set) -> int:
    global_id = element.GlobalId
    if global_id in visited:
        return 0
    visited.add(global_id)

    property_set_ids = _create_property_sets(xkt_model, element)
    xkt_model.create_meta_object(
        global_id,
        meta_object_type=element.is_a(),
        meta_object_name=element.Name or element.is_a(),
        parent_meta_object_id=parent_id,
        property_set_ids=property_set_ids,
    )
    count = 1

    children = []
    for rel in getattr(element, "IsDecomposedBy", None) or []:
        children.extend(rel.RelatedObjects or [])
    for rel in getattr(element, "ContainsElements", None) or []:
        children.extend(rel.RelatedElements or [])
    for child in children:
        count += _create_meta_objects(xkt_model, child, global_id, visited)
    return count


def _decode_step(ifc_data: bytes) -> str:
    """STEP files are meant to be ASCII, but many exporters write raw ISO-8859-1 names."""
    try:
        return ifc_data.decode("utf-8")
    except UnicodeDecodeError:
        return ifc_data.decode("latin-1")


def _parse_metadata(ifc_file, xkt_model: XKTModel) -> int:
    try:
        projects = ifc_file.by_type("IfcProject")
    except RuntimeError as e:
        raise ValueError(f"Could not read IFC entities: {e}") from e
    if not projects:
        raise ValueError("IFC file has no IfcProject")
    project = projects[0]
    xkt_model.schema = ifc_file.schema
    if not xkt_model.project_id:
        xkt_model.project_id = project.GlobalId
    return _create_meta_objects(xkt_model, project, None, set())


def _as_array(values, dtype) -> np.ndarray:
    if values is None:
        return np.zeros(0, dtype=dtype)
    return np.asarray(values, dtype=dtype).reshape(-1)


def _faces_by_material(faces: np.ndarray, material_ids: np.ndarray) -> Dict[int, np.ndarray]:
    if len(material_ids) != len(faces):
        return {-1: faces}
    return {int(m): faces[material_ids == m] for m in np.unique(material_ids)}


def _parse_geometry(
    ifc_file,
    xkt_model: XKTModel,
    excluded_types: Iterable[str],
    log
) -> Tuple[int, int]:
    settings = ifcopenshell.geom.settings()
    _set_geom_setting(settings, "use-world-coords", True)
    _set_geom_setting(settings, "weld-vertices", True)
    _set_geom_setting(settings, "apply-default-materials", False)

    iterator = ifcopenshell.geom.iterator(settings, ifc_file)
    num_entities = 0
    num_triangles = 0
    excluded_types = tuple(excluded_types)

    if not iterator.initialize():
        log("No IFC products with geometry found")
        return 0, 0

    while True:
        shape = iterator.get()
        product = ifc_file.by_id(shape.id)
        if not any(product.is_a(t) for t in excluded_types):
            created, triangles = _create_product_entity(xkt_model, shape, product)
            num_entities += created
            num_triangles += triangles
        if not iterator.next():
            break

    return num_entities, num_triangles


def _create_product_entity(xkt_model: XKTModel, shape, product) -> Tuple[int, int]:
    geometry = shape.geometry
    positions = np.asarray(geometry.verts, dtype=np.float64).reshape(-1, 3)
    faces = np.asarray(geometry.faces, dtype=np.uint32).reshape(-1, 3)
    if len(positions) == 0 or len(faces) == 0:
        return 0, 0

    normals = _as_array(getattr(geometry, "normals", None), np.float64)
    normals = normals.reshape(-1, 3) if normals.size == positions.size else None
    materials = list(getattr(geometry, "materials", None) or [])
    material_ids = _as_array(getattr(geometry, "material_ids", None), np.int64)

    global_id = shape.guid
    mesh_ids = []
    for material_index, material_faces in _faces_by_material(faces, material_ids).items():
        color = None
        if 0 <= material_index < len(materials):
            color = _material_color(materials[material_index])
        rgb, opacity = color or _default_color(product)

        # Keep only the vertices this material's faces use
        used, remapped = np.unique(material_faces.reshape(-1), return_inverse=True)
        geometry_id = f"{global_id}-geometry-{len(mesh_ids)}"
        mesh_id = f"{global_id}-mesh-{len(mesh_ids)}"
        xkt_model.create_geometry(
            geometry_id,
            "triangles",
            positions=positions[used],
            normals=normals[used] if normals is not None else None,
            indices=np.asarray(remapped).reshape(-1),
        )
        xkt_model.create_mesh(mesh_id, geometry_id, color=rgb, opacity=opacity)
        mesh_ids.append(mesh_id)

    create_entity_with_meta_object(xkt_model, global_id, mesh_ids, product.is_a(), product.Name)
    return 1, len(faces)


def parse_ifc_into_xkt_model(
    ifc_data: bytes,
    xkt_model: XKTModel,
    excluded_types: Iterable[str] = DEFAULT_EXCLUDED_IFC_TYPES,
    log: Optional[Callable[[str], None]] = None
) -> int:
    """
    Parse IFC STEP data into the model.

    Args:
        ifc_data: Raw .ifc file content
        xkt_model: Model to populate
        excluded_types: IFC classes whose geometry is skipped (meta objects are kept)
        log: Optional progress callback

    Returns:
        Number of entities created
    """
    log = log or logger.debug

    text = _decode_step(ifc_data) if isinstance(ifc_data, (bytes, bytearray)) else ifc_data
    try:
        ifc_file = ifcopenshell.file.from_string(text)
        schema = ifc_file.schema
    except Exception as e:
        raise ValueError(f"Could not parse IFC data: {e}") from e
    if not schema:
        raise ValueError("Could not parse IFC data: no schema found")

    log(f"IFC schema: {schema}")
    num_meta_objects = _parse_metadata(ifc_file, xkt_model)
    num_entities, num_triangles = _parse_geometry(ifc_file, xkt_model, excluded_types, log)

    log(f"Converted IFC meta objects: {num_meta_objects}")
    log(f"Converted IFC property sets: {len(xkt_model.property_sets_list)}")
    log(f"Converted IFC entities: {num_entities}")
    log(f"Converted IFC triangles: {num_triangles}")
    return num_entities
