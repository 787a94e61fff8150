"""
PCD parser

Reads Point Cloud Library (PCD) files with open3d. ascii, binary and
binary_compressed data sections are supported, as are packed rgb colors.
"""

import logging
import tempfile
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import open3d as o3d

from xkt_convert.parsers._common import create_entity_with_meta_object
from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)


def read_pcd_point_cloud(pcd_data: bytes) -> o3d.geometry.PointCloud:
    """
    Load PCD file content into an open3d point cloud.

    open3d only reads from paths, so the content is staged in a temporary
    directory. NaN and infinite points are dropped.
    """
    with tempfile.TemporaryDirectory() as tmp_dir:
        path = Path(tmp_dir) / "points.pcd"
        path.write_bytes(pcd_data)
        return o3d.io.read_point_cloud(
            str(path),
            format="pcd",
            remove_nan_points=True,
            remove_infinite_points=True,
        )


def parse_pcd_into_xkt_model(
    pcd_data: bytes,
    xkt_model: XKTModel,
    entity_id: str = "pcd-entity",
    log: Optional[Callable[[str], None]] = None
):
    """
    Parse PCD data into a point geometry.

    Args:
        pcd_data: Raw PCD file content
        xkt_model: Model to populate
        entity_id: ID for the created entity and its meta object
        log: Optional progress callback

    Returns:
        The created XKTEntity
    """
    log = log or logger.debug

    point_cloud = read_pcd_point_cloud(pcd_data)

    # open3d logs a warning and returns an empty cloud when it cannot read the file
    positions = np.asarray(point_cloud.points, dtype=np.float64)
    if len(positions) == 0:
        raise ValueError("PCD data contains no readable x, y, z points")

    colors = None
    if point_cloud.has_colors():
        colors = np.asarray(point_cloud.colors, dtype=np.float64)

    geometry_id = f"{entity_id}-geometry"
    mesh_id = f"{entity_id}-mesh"
    xkt_model.create_geometry(geometry_id, "points", positions=positions, colors=colors)
    xkt_model.create_mesh(mesh_id, geometry_id)
    entity = create_entity_with_meta_object(xkt_model, entity_id, [mesh_id], "PointCloud", "PCD Points")

    log(f"Converted PCD points: {len(positions)}")
    return entity
