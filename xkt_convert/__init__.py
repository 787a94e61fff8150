"""
xkt-convert

Converts glTF, IFC, LAS/LAZ, PCD, PLY, STL and CityJSON models into the
binary XKT format.
"""

__version__ = "1.0.0"

from xkt_convert.xkt_model import XKTModel
from xkt_convert.xkt_writer import write_xkt_model_to_bytes
from xkt_convert.parsers import (
    parse_cityjson_into_xkt_model,
    parse_gltf_into_xkt_model,
    parse_metamodel_into_xkt_model,
    parse_ply_into_xkt_model,
    parse_stl_into_xkt_model,
)
from xkt_convert.converter import ConversionStats, UnsupportedFormatError, convert, detect_format

__all__ = [
    'XKTModel',
    'write_xkt_model_to_bytes',
    'parse_cityjson_into_xkt_model',
    'parse_gltf_into_xkt_model',
    'parse_metamodel_into_xkt_model',
    'parse_ply_into_xkt_model',
    'parse_stl_into_xkt_model',
    'ConversionStats',
    'UnsupportedFormatError',
    'convert',
    'detect_format',
]
