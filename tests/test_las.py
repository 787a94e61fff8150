"""
Tests for the LAS parser, using point clouds written with laspy.
"""

from io import BytesIO

import numpy as np
import pytest

laspy = pytest.importorskip("laspy")

from xkt_convert.parsers.las import parse_las_into_xkt_model  # noqa: E402
from xkt_convert.xkt_model import XKTModel  # noqa: E402


def _las_bytes(points: np.ndarray, colors=None, point_format: int = 2) -> bytes:
    header = laspy.LasHeader(point_format=point_format, version="1.2")
    header.offsets = np.min(points, axis=0)
    header.scales = np.array([0.001, 0.001, 0.001])
    las = laspy.LasData(header)
    las.x = points[:, 0]
    las.y = points[:, 1]
    las.z = points[:, 2]
    if colors is not None:
        las.red = colors[:, 0]
        las.green = colors[:, 1]
        las.blue = colors[:, 2]
    buffer = BytesIO()
    las.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def points() -> np.ndarray:
    return np.array([
        [2600000.0, 1200000.0, 400.0],
        [2600001.5, 1200002.0, 401.0],
        [2600003.0, 1200004.0, 402.5],
        [2600004.5, 1200006.0, 403.0],
    ])


def test_positions_keep_precision(points):
    model = XKTModel()
    parse_las_into_xkt_model(_las_bytes(points), model)

    geometry = model.geometries["las-entity-geometry"]
    assert geometry.primitive_type == "points"
    np.testing.assert_allclose(geometry.positions, points, atol=1e-3)
    assert model.meta_objects["las-entity"].meta_object_type == "PointCloud"


def test_sixteen_bit_colors_are_scaled(points):
    colors = np.array([[65535, 0, 0], [0, 65535, 0], [0, 0, 65535], [32768, 32768, 32768]], dtype=np.uint16)
    model = XKTModel()
    parse_las_into_xkt_model(_las_bytes(points, colors), model)

    np.testing.assert_array_equal(
        model.geometries["las-entity-geometry"].colors_compressed,
        [[255, 0, 0, 255], [0, 255, 0, 255], [0, 0, 255, 255], [128, 128, 128, 255]],
    )


def test_eight_bit_colors(points):
    colors = np.array([[255, 0, 0], [0, 255, 0], [0, 0, 255], [10, 20, 30]], dtype=np.uint16)
    model = XKTModel()
    parse_las_into_xkt_model(_las_bytes(points, colors), model)
    np.testing.assert_array_equal(model.geometries["las-entity-geometry"].colors_compressed[3], [10, 20, 30, 255])


def test_point_format_without_color(points):
    model = XKTModel()
    parse_las_into_xkt_model(_las_bytes(points, point_format=0), model)
    assert model.geometries["las-entity-geometry"].colors_compressed is None


def test_skip(points):
    model = XKTModel()
    parse_las_into_xkt_model(_las_bytes(points), model, skip=2)
    np.testing.assert_allclose(model.geometries["las-entity-geometry"].positions, points[::2], atol=1e-3)


def test_invalid_data():
    with pytest.raises(ValueError):
        parse_las_into_xkt_model(b"NOPE" + bytes(400), XKTModel())
