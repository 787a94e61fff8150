"""
Tests for XKTModel creation, finalization and tiling.
"""

import numpy as np
import pytest

from conftest import CUBE_TRIANGLES, CUBE_VERTICES, add_box
from xkt_convert import geometry_utils as gu
from xkt_convert.xkt_model import XKTModel


def _tile_of(model: XKTModel, entity):
    for tile in model.tiles_list:
        if any(e is entity for e in tile.entities):
            return tile
    raise AssertionError(f"entity {entity.entity_id} is in no tile")


def test_duplicate_meta_object_returns_existing():
    model = XKTModel(model_id="m")
    first = model.create_meta_object("a", "IfcWall", "Wall")
    second = model.create_meta_object("a", "IfcSlab", "Slab")
    assert second is first
    assert len(model.meta_objects_list) == 1
    assert model.meta_objects["a"].meta_object_type == "IfcWall"


def test_duplicate_property_set_returns_existing():
    model = XKTModel()
    first = model.create_property_set("p", "T", "P", [{"name": "a", "value": 1}])
    assert model.create_property_set("p") is first
    assert len(model.property_sets_list) == 1


def test_create_geometry_validation():
    model = XKTModel()
    with pytest.raises(ValueError):
        model.create_geometry("g", "quads", positions=[0, 0, 0])
    with pytest.raises(ValueError):
        model.create_geometry("g", "triangles", positions=[0, 0, 0, 1, 0, 0, 0, 1, 0])
    with pytest.raises(ValueError):
        model.create_geometry("g", "triangles", positions=[0, 0, 0, 1, 0, 0, 0, 1, 0], indices=[0, 1, 3])

    model.create_geometry("g", "triangles", positions=[0, 0, 0, 1, 0, 0, 0, 1, 0], indices=[0, 1, 2])
    with pytest.raises(ValueError):
        model.create_geometry("g", "triangles", positions=[0, 0, 0, 1, 0, 0, 0, 1, 0], indices=[0, 1, 2])


def test_point_colors_are_compressed_to_rgba_bytes():
    model = XKTModel()
    geometry = model.create_geometry(
        "points", "points",
        positions=[0, 0, 0, 1, 1, 1],
        colors=[1.0, 0.0, 0.0, 0.0, 0.5, 1.0],
    )
    assert geometry.indices is None
    np.testing.assert_array_equal(geometry.colors_compressed, [[255, 0, 0, 255], [0, 128, 255, 255]])


def test_mesh_requires_existing_geometry():
    model = XKTModel()
    with pytest.raises(ValueError):
        model.create_mesh("m", "missing")


def test_entity_skips_unknown_and_owned_meshes():
    model = XKTModel()
    add_box(model, "box")
    with pytest.raises(ValueError):
        model.create_entity("other", ["box-mesh", "nope"])
    assert "other" not in model.entities


def test_finalize_twice_raises():
    model = XKTModel()
    add_box(model, "box")
    model.finalize()
    with pytest.raises(RuntimeError):
        model.finalize()


def test_create_after_finalize_raises():
    model = XKTModel()
    model.finalize()
    with pytest.raises(RuntimeError):
        model.create_meta_object("late")
    with pytest.raises(RuntimeError):
        model.create_geometry("late", "points", positions=[0, 0, 0])


def test_empty_model_finalizes_without_tiles():
    model = XKTModel()
    model.finalize()
    assert model.tiles_list == []
    assert model.finalized


def test_closed_cube_is_solid_and_open_quad_is_not():
    model = XKTModel()
    add_box(model, "cube")
    model.create_geometry(
        "quad", "triangles",
        positions=[0, 0, 5, 1, 0, 5, 1, 1, 5, 0, 1, 5],
        indices=[0, 1, 2, 0, 2, 3],
    )
    model.create_mesh("quad-mesh", "quad")
    model.create_entity("quad", ["quad-mesh"])
    model.finalize()

    assert model.geometries["cube-geometry"].solid
    assert not model.geometries["quad"].solid
    # Cube: 12 feature edges; quad: 4 boundary edges, the diagonal is coplanar
    assert len(model.geometries["cube-geometry"].edge_indices) == 24
    assert len(model.geometries["quad"].edge_indices) == 8


def test_single_use_positions_decode_to_world_coordinates():
    model = XKTModel()
    entity = add_box(model, "far", offset=(1000.0, 2000.0, -50.0), size=2.0)
    model.finalize()

    geometry = model.geometries["far-geometry"]
    tile = _tile_of(model, entity)
    center = gu.aabb_center(tile.aabb)
    mins = tile.aabb[:3] - center
    extents = tile.aabb[3:] - tile.aabb[:3]

    decoded = geometry.positions_quantized.astype(np.float64) * (extents / gu.QUANTIZED_MAX) + mins + center
    expected = CUBE_VERTICES * 2.0 + np.array([1000.0, 2000.0, -50.0])
    assert np.all(np.abs(decoded - expected) <= extents / gu.QUANTIZED_MAX + 1e-9)


def test_single_use_mesh_matrix_is_baked():
    model = XKTModel()
    model.create_geometry("g", "triangles", positions=CUBE_VERTICES, indices=CUBE_TRIANGLES)
    mesh = model.create_mesh("m", "g", position=(10.0, 0.0, 0.0))
    entity = model.create_entity("e", ["m"])
    model.finalize()

    assert mesh.matrix is None
    np.testing.assert_allclose(entity.aabb, [10, 0, 0, 11, 1, 1])


def test_reused_geometry_keeps_local_positions_and_instance_matrices():
    model = XKTModel()
    model.create_geometry("shared", "triangles", positions=CUBE_VERTICES, indices=CUBE_TRIANGLES)
    model.create_mesh("m1", "shared", position=(0.0, 0.0, 0.0))
    model.create_mesh("m2", "shared", position=(10.0, 0.0, 0.0))
    e1 = model.create_entity("e1", ["m1"])
    e2 = model.create_entity("e2", ["m2"])
    model.finalize()

    geometry = model.geometries["shared"]
    assert geometry.reused
    assert e1.has_reused_geometry and e2.has_reused_geometry
    np.testing.assert_allclose(e2.aabb, [10, 0, 0, 11, 1, 1])

    decode = model.reused_geometries_decode_matrix
    local = gu.transform_positions(geometry.positions_quantized.astype(np.float64), decode)
    np.testing.assert_allclose(local, CUBE_VERTICES, atol=1e-4)

    mesh = model.meshes["m2"]
    center = gu.aabb_center(_tile_of(model, e2).aabb)
    world = gu.transform_positions(local, mesh.matrix) + center
    np.testing.assert_allclose(world, CUBE_VERTICES + [10.0, 0.0, 0.0], atol=1e-4)


def test_every_entity_lands_in_exactly_one_tile():
    model = XKTModel(kd_tree_max_depth=4)
    for i in range(20):
        add_box(model, f"box-{i}", offset=(i * 3.0, (i % 4) * 3.0, 0.0))
    model.finalize()

    tiled = [entity.entity_id for tile in model.tiles_list for entity in tile.entities]
    assert sorted(tiled) == sorted(model.entities)
    for tile in model.tiles_list:
        for entity in tile.entities:
            assert gu.aabb_contains(tile.aabb, entity.aabb)
