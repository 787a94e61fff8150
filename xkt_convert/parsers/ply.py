"""
PLY parser

Loads PLY meshes or point clouds with trimesh.
"""

import logging
from io import BytesIO
from typing import Callable, Optional

import numpy as np
import trimesh

from xkt_convert import geometry_utils as gu
from xkt_convert.parsers._common import create_entity_with_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)


def _vertex_colors(geometry) -> Optional[np.ndarray]:
    """Return (N, 4) uint8 vertex colors if the PLY carried any."""
    if isinstance(geometry, trimesh.PointCloud):
        colors = geometry.colors
    elif getattr(geometry.visual, "kind", None) == "vertex":
        colors = geometry.visual.vertex_colors
    else:
        return None
    if colors is None or len(colors) != len(geometry.vertices):
        return None
    return np.asarray(colors, dtype=np.uint8)


def parse_ply_into_xkt_model(
    ply_data: bytes,
    xkt_model: XKTModel,
    entity_id: str = "ply-entity",
    log: Optional[Callable[[str], None]] = None
):
    """
    Parse PLY data into the model.

    Faces become a triangle geometry whose mesh color is the average vertex
    color; a PLY without faces becomes a colored point geometry.

    Args:
        ply_data: Raw ASCII or binary PLY file content
        xkt_model: Model to populate
        entity_id: ID for the created entity and its meta object
        log: Optional progress callback

    Returns:
        The created XKTEntity
    """
    log = log or logger.debug

    try:
        loaded = trimesh.load(BytesIO(ply_data), file_type="ply", process=False)
    except Exception as e:
        raise ValueError(f"Could not parse PLY data: {e}") from e

    if isinstance(loaded, trimesh.Scene):
        loaded = trimesh.util.concatenate(list(loaded.geometry.values()))

    vertices = np.asarray(getattr(loaded, "vertices", []), dtype=np.float64)
    if len(vertices) == 0:
        raise ValueError("PLY data contains no vertices")

    colors = _vertex_colors(loaded)
    geometry_id = f"{entity_id}-geometry"
    mesh_id = f"{entity_id}-mesh"

    faces = getattr(loaded, "faces", None)
    if faces is not None and len(faces) > 0:
        indices = np.asarray(faces, dtype=np.uint32).reshape(-1)
        normals = getattr(loaded, "vertex_normals", None)
        if normals is None or len(normals) != len(vertices):
            normals = None
        xkt_model.create_geometry(
            geometry_id,
            "triangles",
            positions=vertices,
            normals=normals if normals is None else gu.normalize_rows(np.asarray(normals, dtype=np.float64)),
            indices=indices,
        )
        if colors is not None:
            mean = colors.mean(axis=0) / 255.0
            color, opacity = tuple(mean[:3]), float(mean[3])
        else:
            color, opacity = (1.0, 1.0, 1.0), 1.0
        xkt_model.create_mesh(mesh_id, geometry_id, color=color, opacity=opacity)
        log(f"Converted PLY triangles: {len(faces)}")
    else:
        xkt_model.create_geometry(
            geometry_id,
            "points",
            positions=vertices,
            colors_compressed=colors,
        )
        xkt_model.create_mesh(mesh_id, geometry_id)
        log(f"Converted PLY points: {len(vertices)}")

    return create_entity_with_meta_object(xkt_model, entity_id, [mesh_id], "Default", "PLY Model")
