"""
Tests for the IFC parser, run against a small model built with ifcopenshell.
"""

import numpy as np
import pytest

ifcopenshell = pytest.importorskip("ifcopenshell")
import ifcopenshell.guid  # noqa: E402

from xkt_convert.parsers.ifc import parse_ifc_into_xkt_model  # noqa: E402
from xkt_convert.xkt_model import XKTModel  # noqa: E402


def _extrusion(f, context, x_dim: float, y_dim: float, depth: float):
    origin = f.create_entity("IfcCartesianPoint", Coordinates=(0.0, 0.0, 0.0))
    position = f.create_entity("IfcAxis2Placement3D", Location=origin)
    profile = f.create_entity(
        "IfcRectangleProfileDef",
        ProfileType="AREA",
        Position=f.create_entity(
            "IfcAxis2Placement2D",
            Location=f.create_entity("IfcCartesianPoint", Coordinates=(0.0, 0.0)),
        ),
        XDim=x_dim,
        YDim=y_dim,
    )
    solid = f.create_entity(
        "IfcExtrudedAreaSolid",
        SweptArea=profile,
        Position=position,
        ExtrudedDirection=f.create_entity("IfcDirection", DirectionRatios=(0.0, 0.0, 1.0)),
        Depth=depth,
    )
    body = f.create_entity(
        "IfcShapeRepresentation",
        ContextOfItems=context,
        RepresentationIdentifier="Body",
        RepresentationType="SweptSolid",
        Items=[solid],
    )
    return f.create_entity("IfcProductDefinitionShape", Representations=[body])


@pytest.fixture
def ifc_content() -> bytes:
    f = ifcopenshell.file(schema="IFC4")
    guid = ifcopenshell.guid.new

    world = f.create_entity(
        "IfcAxis2Placement3D",
        Location=f.create_entity("IfcCartesianPoint", Coordinates=(0.0, 0.0, 0.0)),
    )
    context = f.create_entity(
        "IfcGeometricRepresentationContext",
        ContextType="Model",
        CoordinateSpaceDimension=3,
        Precision=1.0e-5,
        WorldCoordinateSystem=world,
    )
    units = f.create_entity(
        "IfcUnitAssignment",
        Units=[f.create_entity("IfcSIUnit", UnitType="LENGTHUNIT", Name="METRE")],
    )
    project = f.create_entity(
        "IfcProject", GlobalId=guid(), Name="Demo Project",
        RepresentationContexts=[context], UnitsInContext=units,
    )
    placement = f.create_entity("IfcLocalPlacement", RelativePlacement=world)
    site = f.create_entity("IfcSite", GlobalId=guid(), Name="Site", ObjectPlacement=placement)
    f.create_entity("IfcRelAggregates", GlobalId=guid(), RelatingObject=project, RelatedObjects=[site])

    wall = f.create_entity(
        "IfcWall", GlobalId="2O2Fr$t4X7Zf8NOew3FLOH", Name="Wall",
        ObjectPlacement=f.create_entity("IfcLocalPlacement", PlacementRelTo=placement, RelativePlacement=world),
        Representation=_extrusion(f, context, 2.0, 0.2, 3.0),
    )
    space = f.create_entity(
        "IfcSpace", GlobalId=guid(), Name="Room",
        ObjectPlacement=f.create_entity("IfcLocalPlacement", PlacementRelTo=placement, RelativePlacement=world),
        Representation=_extrusion(f, context, 4.0, 4.0, 3.0),
    )
    f.create_entity(
        "IfcRelContainedInSpatialStructure", GlobalId=guid(),
        RelatingStructure=site, RelatedElements=[wall],
    )
    f.create_entity("IfcRelAggregates", GlobalId=guid(), RelatingObject=site, RelatedObjects=[space])

    pset = f.create_entity(
        "IfcPropertySet", GlobalId=guid(), Name="Pset_WallCommon",
        HasProperties=[f.create_entity(
            "IfcPropertySingleValue", Name="IsExternal",
            NominalValue=f.create_entity("IfcBoolean", True),
        )],
    )
    f.create_entity(
        "IfcRelDefinesByProperties", GlobalId=guid(),
        RelatedObjects=[wall], RelatingPropertyDefinition=pset,
    )
    return f.to_string().encode("utf-8")


def test_metadata_tree(ifc_content):
    model = XKTModel()
    parse_ifc_into_xkt_model(ifc_content, model)

    assert model.schema == "IFC4"
    types = {m.meta_object_type for m in model.meta_objects_list}
    assert {"IfcProject", "IfcSite", "IfcWall", "IfcSpace"} <= types

    wall = model.meta_objects["2O2Fr$t4X7Zf8NOew3FLOH"]
    site_id = wall.parent_meta_object_id
    assert model.meta_objects[site_id].meta_object_type == "IfcSite"
    assert len(wall.property_set_ids) == 1
    properties = model.property_sets[wall.property_set_ids[0]].properties
    assert properties[0]["name"] == "IsExternal"
    assert properties[0]["value"] is True


def test_wall_geometry_and_excluded_space(ifc_content):
    model = XKTModel()
    assert parse_ifc_into_xkt_model(ifc_content, model) == 1

    assert list(model.entities) == ["2O2Fr$t4X7Zf8NOew3FLOH"]
    entity = model.entities["2O2Fr$t4X7Zf8NOew3FLOH"]
    assert len(entity.meshes) == 1

    model.finalize()
    np.testing.assert_allclose(entity.aabb, [-1.0, -0.1, 0.0, 1.0, 0.1, 3.0], atol=1e-6)
    assert all(mesh.geometry.solid for mesh in entity.meshes)


def test_space_geometry_when_not_excluded(ifc_content):
    model = XKTModel()
    assert parse_ifc_into_xkt_model(ifc_content, model, excluded_types=()) == 2


def test_invalid_ifc_is_rejected():
    with pytest.raises(ValueError):
        parse_ifc_into_xkt_model(b"not an ifc file", XKTModel())


def test_latin1_names_are_decoded(ifc_content):
    text = ifc_content.decode("utf-8").replace("'Demo Project'", "'Projékt'")
    model = XKTModel()
    parse_ifc_into_xkt_model(text.encode("latin-1"), model)

    project = next(m for m in model.meta_objects_list if m.meta_object_type == "IfcProject")
    assert project.meta_object_name == "Projékt"
