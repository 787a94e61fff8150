from xkt_convert.parsers.cityjson import parse_cityjson_into_xkt_model
from xkt_convert.parsers.gltf import parse_gltf_into_xkt_model
from xkt_convert.parsers.metamodel import parse_metamodel_into_xkt_model
from xkt_convert.parsers.ply import parse_ply_into_xkt_model
from xkt_convert.parsers.stl import parse_stl_into_xkt_model

__all__ = [
    'parse_cityjson_into_xkt_model',
    'parse_gltf_into_xkt_model',
    'parse_metamodel_into_xkt_model',
    'parse_ply_into_xkt_model',
    'parse_stl_into_xkt_model',
]
