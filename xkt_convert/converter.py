"""
Conversion Workflow

Reads a source file, dispatches it to the parser for its format, finalizes
the model and writes the .xkt output.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from xkt_convert.config import ConversionSettings
from xkt_convert.parsers import (
    parse_cityjson_into_xkt_model,
    parse_gltf_into_xkt_model,
    parse_metamodel_into_xkt_model,
    parse_ply_into_xkt_model,
    parse_stl_into_xkt_model,
)
from xkt_convert.xkt_model import XKTModel
from xkt_convert.xkt_writer import XKT_VERSION, write_xkt_model_to_bytes

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# File extension or --format value -> canonical format name
FORMAT_ALIASES = {
    "json": "cityjson",
    "cityjson": "cityjson",
    "gltf": "gltf",
    "glb": "glb",
    "ifc": "ifc",
    "las": "las",
    "laz": "las",
    "pcd": "pcd",
    "ply": "ply",
    "stl": "stl",
}

SUPPORTED_FORMATS = sorted(set(FORMAT_ALIASES))


class UnsupportedFormatError(ValueError):
    """Raised when a source format cannot be converted."""


@dataclass
class ConversionStats:
    """Summary of a finished conversion."""
    source_format: str
    meta_objects: int
    property_sets: int
    geometries: int
    meshes: int
    entities: int
    tiles: int
    xkt_bytes: int


def detect_format(source: PathLike, source_format: Optional[str] = None) -> str:
    """
    Resolve the canonical format name from an explicit format or the file extension.

    Raises:
        UnsupportedFormatError: If the format is not supported
    """
    key = source_format if source_format else str(source).rsplit(".", 1)[-1]
    fmt = FORMAT_ALIASES.get(key.strip().lower().lstrip("."))
    if fmt is None:
        raise UnsupportedFormatError(
            f"Unsupported source file format: {key!r} (supported: {', '.join(SUPPORTED_FORMATS)})"
        )
    return fmt


def _parse_source(
    fmt: str,
    file_content: bytes,
    source: Path,
    xkt_model: XKTModel,
    settings: ConversionSettings,
    log: Callable[[str], None]
):
    if fmt == "cityjson":
        parse_cityjson_into_xkt_model(json.loads(file_content), xkt_model, log=log)

    elif fmt == "gltf":
        base_path = source.parent

        def get_attachment(uri: str) -> bytes:
            return (base_path / uri).read_bytes()

        parse_gltf_into_xkt_model(file_content, xkt_model, get_attachment=get_attachment, log=log)

    elif fmt == "glb":
        parse_gltf_into_xkt_model(file_content, xkt_model, log=log)

    elif fmt == "ifc":
        # ifcopenshell, laspy and open3d are heavy to import; only load them for their input
        from xkt_convert.parsers.ifc import parse_ifc_into_xkt_model
        parse_ifc_into_xkt_model(file_content, xkt_model, excluded_types=settings.excluded_ifc_types, log=log)

    elif fmt == "las":
        from xkt_convert.parsers.las import parse_las_into_xkt_model
        parse_las_into_xkt_model(file_content, xkt_model, log=log)

    elif fmt == "pcd":
        from xkt_convert.parsers.pcd import parse_pcd_into_xkt_model
        parse_pcd_into_xkt_model(file_content, xkt_model, log=log)

    elif fmt == "ply":
        parse_ply_into_xkt_model(file_content, xkt_model, log=log)

    elif fmt == "stl":
        parse_stl_into_xkt_model(file_content, xkt_model, log=log)

    else:
        raise UnsupportedFormatError(f"Unsupported source file format: {fmt!r}")


def convert(
    source: PathLike,
    output: PathLike,
    metamodel: Optional[PathLike] = None,
    source_format: Optional[str] = None,
    log: Optional[Callable[[str], None]] = None,
    settings: Optional[ConversionSettings] = None
) -> ConversionStats:
    """
    Convert a source file into an .xkt file.

    Args:
        source: Path to the source model (glTF, GLB, IFC, LAS/LAZ, PCD, PLY, STL or CityJSON)
        output: Path of the .xkt file to write
        metamodel: Optional metamodel JSON to merge before parsing the source
        source_format: Format name overriding the source file extension
        log: Optional progress callback
        settings: Conversion settings (default: read from environment)

    Returns:
        ConversionStats for the written model
    """
    log = log or logger.debug
    settings = settings or ConversionSettings.from_env()
    source = Path(source)
    output = Path(output)

    fmt = detect_format(source, source_format)

    log(f"Reading input file: {source}")
    file_content = source.read_bytes()

    metamodel_data = None
    if metamodel:
        log(f"Reading metamodel file: {metamodel}")
        metamodel_data = json.loads(Path(metamodel).read_bytes())

    xkt_model = XKTModel(
        model_id=source.stem,
        creating_application=settings.creating_application,
        edge_threshold=settings.edge_threshold,
        kd_tree_max_depth=settings.kd_tree_max_depth,
    )

    if metamodel_data is not None:
        parse_metamodel_into_xkt_model(metamodel_data, xkt_model, log=log)

    _parse_source(fmt, file_content, source, xkt_model, settings, log)

    log(f"Writing XKT v{XKT_VERSION}")
    xkt_model.finalize()
    xkt_content = write_xkt_model_to_bytes(xkt_model)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(xkt_content)
    log(f"Wrote {len(xkt_content)} bytes to {output}")

    return ConversionStats(
        source_format=fmt,
        meta_objects=len(xkt_model.meta_objects_list),
        property_sets=len(xkt_model.property_sets_list),
        geometries=len(xkt_model.geometries_list),
        meshes=len(xkt_model.meshes_list),
        entities=len(xkt_model.entities_list),
        tiles=len(xkt_model.tiles_list),
        xkt_bytes=len(xkt_content),
    )
