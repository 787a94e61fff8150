"""
STL parser

Loads ASCII or binary STL with trimesh and adds it to an XKTModel as a single
triangle geometry, mesh and entity.
"""

import logging
from io import BytesIO
from typing import Callable, Optional, Sequence

import numpy as np
import trimesh

from xkt_convert import geometry_utils as gu
from xkt_convert.parsers._common import create_entity_with_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)


def load_stl_triangles(stl_data: bytes) -> np.ndarray:
    """
    Read STL content into an (M, 3, 3) array of triangle corners.
    """
    try:
        mesh = trimesh.load(BytesIO(stl_data), file_type="stl", force="mesh", process=False)
    except Exception as e:
        raise ValueError(f"Could not parse STL data: {e}") from e
    if mesh is None or len(mesh.faces) == 0:
        raise ValueError("STL data contains no triangles")
    return np.asarray(mesh.vertices, dtype=np.float64)[np.asarray(mesh.faces)]


def parse_stl_into_xkt_model(
    stl_data: bytes,
    xkt_model: XKTModel,
    smooth_normals: bool = False,
    smooth_normals_angle_threshold: float = 20.0,
    color: Optional[Sequence[float]] = None,
    entity_id: str = "stl-entity",
    log: Optional[Callable[[str], None]] = None
):
    """
    Parse STL data into the model.

    Args:
        stl_data: Raw ASCII or binary STL file content
        xkt_model: Model to populate
        smooth_normals: Average normals across faces sharing a vertex
        smooth_normals_angle_threshold: Faces deviating more than this (degrees) keep hard edges
        color: Mesh RGB color in 0-1 (default white)
        entity_id: ID for the created entity and its meta object
        log: Optional progress callback

    Returns:
        The created XKTEntity
    """
    log = log or logger.debug

    triangles = load_stl_triangles(stl_data)
    positions = triangles.reshape(-1, 3)
    indices = np.arange(len(positions), dtype=np.uint32)

    if smooth_normals:
        normals = gu.smooth_normals(positions, indices, smooth_normals_angle_threshold)
    else:
        normals = np.repeat(gu.face_normals(positions, indices.reshape(-1, 3)), 3, axis=0)

    geometry_id = f"{entity_id}-geometry"
    mesh_id = f"{entity_id}-mesh"
    xkt_model.create_geometry(
        geometry_id,
        "triangles",
        positions=positions,
        normals=normals,
        indices=indices,
    )
    xkt_model.create_mesh(mesh_id, geometry_id, color=color or (1.0, 1.0, 1.0))
    entity = create_entity_with_meta_object(xkt_model, entity_id, [mesh_id], "Default", "STL Mesh")

    log(f"Converted STL triangles: {len(triangles)}")
    log(f"Converted STL vertices: {len(positions)}")
    return entity
