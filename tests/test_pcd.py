"""
Tests for the PCD parser, read through open3d.
"""

import numpy as np
import pytest

o3d = pytest.importorskip("open3d")

from conftest import pcd_header  # noqa: E402
from xkt_convert.parsers.pcd import parse_pcd_into_xkt_model, read_pcd_point_cloud  # noqa: E402
from xkt_convert.xkt_model import XKTModel  # noqa: E402


def _written_pcd(tmp_path, points, colors=None, compressed=False) -> bytes:
    point_cloud = o3d.geometry.PointCloud()
    point_cloud.points = o3d.utility.Vector3dVector(points)
    if colors is not None:
        point_cloud.colors = o3d.utility.Vector3dVector(colors)
    path = tmp_path / "written.pcd"
    o3d.io.write_point_cloud(str(path), point_cloud, write_ascii=False, compressed=compressed)
    return path.read_bytes()


def test_ascii(pcd_ascii):
    model = XKTModel()
    parse_pcd_into_xkt_model(pcd_ascii, model)

    geometry = model.geometries["pcd-entity-geometry"]
    assert geometry.primitive_type == "points"
    np.testing.assert_allclose(geometry.positions, [[0, 0, 0], [1, 0, 0], [0, 1, 0]])
    np.testing.assert_array_equal(
        geometry.colors_compressed,
        [[0, 0, 0, 255], [255, 0, 0, 255], [0, 255, 0, 255]],
    )
    assert model.meta_objects["pcd-entity"].meta_object_type == "PointCloud"


def test_binary(pcd_binary):
    model = XKTModel()
    parse_pcd_into_xkt_model(pcd_binary, model)

    geometry = model.geometries["pcd-entity-geometry"]
    np.testing.assert_allclose(geometry.positions, [[1, 3, 5], [2, 4, 6]])
    np.testing.assert_array_equal(geometry.colors_compressed, [[255, 0, 0, 255], [0, 0, 255, 255]])


def test_binary_compressed(tmp_path):
    points = np.array([[1.0, 0.0, 7.0], [2.0, 0.0, 7.0], [3.5, -1.0, 2.0]])
    colors = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    content = _written_pcd(tmp_path, points, colors, compressed=True)
    assert b"DATA binary_compressed" in content

    model = XKTModel()
    parse_pcd_into_xkt_model(content, model, entity_id="scan")

    geometry = model.geometries["scan-geometry"]
    np.testing.assert_allclose(geometry.positions, points, atol=1e-6)
    np.testing.assert_array_equal(
        geometry.colors_compressed,
        [[255, 0, 0, 255], [0, 255, 0, 255], [0, 0, 255, 255]],
    )


def test_points_without_color(tmp_path):
    content = _written_pcd(tmp_path, np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]]))
    model = XKTModel()
    parse_pcd_into_xkt_model(content, model)
    assert model.geometries["pcd-entity-geometry"].colors_compressed is None


def test_ascii_positions_read_as_written(pcd_ascii):
    point_cloud = read_pcd_point_cloud(pcd_ascii)
    np.testing.assert_allclose(np.asarray(point_cloud.points), [[0, 0, 0], [1, 0, 0], [0, 1, 0]])


def test_nan_points_are_dropped():
    content = pcd_header("ascii", 3, fields="x y z", size="4 4 4", type_="F F F") + b"0 0 0\nnan nan nan\n1 2 3\n"
    model = XKTModel()
    parse_pcd_into_xkt_model(content, model)
    np.testing.assert_allclose(model.geometries["pcd-entity-geometry"].positions, [[0, 0, 0], [1, 2, 3]])


def test_missing_coordinate_field():
    content = pcd_header("ascii", 1, fields="x y", size="4 4", type_="F F") + b"1 2\n"
    with pytest.raises(ValueError):
        parse_pcd_into_xkt_model(content, XKTModel())


def test_garbage_is_rejected():
    with pytest.raises(ValueError):
        parse_pcd_into_xkt_model(b"not a point cloud", XKTModel())
