"""
LAS/LAZ parser

Reads LAS or LAZ point clouds with laspy (LAZ needs the lazrs backend).
"""

import logging
from io import BytesIO
from typing import Callable, Optional

import laspy
from laspy.errors import LaspyException
import numpy as np

from xkt_convert.parsers._common import create_entity_with_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)


def _read_colors(las, mask: np.ndarray, colour_depth: Optional[int]) -> Optional[np.ndarray]:
    """
    Return (N, 4) uint8 RGBA colors, or None if the point format has no RGB.

    colour_depth is 8 or 16 bits; None picks 16 when any channel exceeds 255.
    """
    dimensions = set(las.point_format.dimension_names)
    if not {"red", "green", "blue"} <= dimensions:
        return None
    rgb = np.column_stack([
        np.asarray(las.red)[mask],
        np.asarray(las.green)[mask],
        np.asarray(las.blue)[mask],
    ]).astype(np.uint32)
    if colour_depth is None:
        colour_depth = 16 if rgb.size and rgb.max() > 255 else 8
    if colour_depth == 16:
        rgb = rgb >> 8
    elif colour_depth != 8:
        raise ValueError(f"colour_depth must be 8 or 16, got {colour_depth}")
    alpha = np.full((len(rgb), 1), 255, dtype=np.uint32)
    return np.hstack([rgb, alpha]).astype(np.uint8)


def parse_las_into_xkt_model(
    las_data: bytes,
    xkt_model: XKTModel,
    skip: int = 1,
    colour_depth: Optional[int] = None,
    fp64: bool = True,
    entity_id: str = "las-entity",
    log: Optional[Callable[[str], None]] = None
):
    """
    Parse LAS/LAZ data into a point geometry.

    Args:
        las_data: Raw LAS or LAZ file content
        xkt_model: Model to populate
        skip: Keep every n-th point
        colour_depth: 8 or 16 bit color channels (auto-detected when None)
        fp64: Keep double precision positions; False rounds them to float32 first
        entity_id: ID for the created entity and its meta object
        log: Optional progress callback

    Returns:
        The created XKTEntity
    """
    log = log or logger.debug

    if skip < 1:
        raise ValueError(f"skip must be >= 1, got {skip}")

    try:
        las = laspy.read(BytesIO(las_data))
    except LaspyException as e:
        raise ValueError(f"Could not parse LAS data: {e}") from e

    num_points = len(las.points)
    if num_points == 0:
        raise ValueError("LAS data contains no points")

    mask = np.zeros(num_points, dtype=bool)
    mask[::skip] = True

    # laspy returns scaled coordinates as float64
    positions = np.column_stack([
        np.asarray(las.x)[mask],
        np.asarray(las.y)[mask],
        np.asarray(las.z)[mask],
    ]).astype(np.float64 if fp64 else np.float32).astype(np.float64)
    colors = _read_colors(las, mask, colour_depth)

    header = las.header
    log(f"LAS version: {header.version}, point format: {header.point_format.id}")

    geometry_id = f"{entity_id}-geometry"
    mesh_id = f"{entity_id}-mesh"
    xkt_model.create_geometry(geometry_id, "points", positions=positions, colors_compressed=colors)
    xkt_model.create_mesh(mesh_id, geometry_id)
    entity = create_entity_with_meta_object(xkt_model, entity_id, [mesh_id], "PointCloud", "LAS Points")

    log(f"Converted LAS points: {len(positions)} of {num_points}")
    return entity
