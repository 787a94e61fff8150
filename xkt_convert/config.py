"""
Conversion settings

Tunables for model finalization and parsing. Defaults can be overridden
through environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Tuple

from xkt_convert import __version__

DEFAULT_EDGE_THRESHOLD = 10.0
DEFAULT_KD_TREE_MAX_DEPTH = 10
DEFAULT_EXCLUDED_IFC_TYPES = ("IfcSpace", "IfcOpeningElement")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class ConversionSettings:
    """Settings that drive a conversion run."""

    edge_threshold: float = DEFAULT_EDGE_THRESHOLD
    kd_tree_max_depth: int = DEFAULT_KD_TREE_MAX_DEPTH
    creating_application: str = f"xkt-convert {__version__}"
    excluded_ifc_types: Tuple[str, ...] = field(default=DEFAULT_EXCLUDED_IFC_TYPES)

    @classmethod
    def from_env(cls) -> "ConversionSettings":
        """Read settings from XKT_* environment variables, falling back to defaults."""
        return cls(
            edge_threshold=_env_float("XKT_EDGE_THRESHOLD", DEFAULT_EDGE_THRESHOLD),
            kd_tree_max_depth=_env_int("XKT_KD_TREE_MAX_DEPTH", DEFAULT_KD_TREE_MAX_DEPTH),
            creating_application=os.getenv("XKT_CREATING_APPLICATION", f"xkt-convert {__version__}"),
            excluded_ifc_types=_env_list("XKT_IFC_EXCLUDE_TYPES", DEFAULT_EXCLUDED_IFC_TYPES),
        )
