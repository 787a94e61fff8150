"""
Metamodel parser

Merges a metamodel JSON document (as produced by xeokit-metadata and similar
tools) into an XKTModel:

    {
        "id": "...", "projectId": "...", "revisionId": "...", "author": "...",
        "createdAt": "...", "creatingApplication": "...", "schema": "...",
        "propertySets": [{"id", "type", "name", "properties"}],
        "metaObjects": [{"id", "type", "name", "parent", "propertySetIds"}]
    }
"""

import logging
from typing import Callable, Dict, Iterable, Optional

from xkt_convert.xkt_model import XKTModel

logger = logging.getLogger(__name__)

_MODEL_FIELDS = {
    "id": "model_id",
    "projectId": "project_id",
    "revisionId": "revision_id",
    "author": "author",
    "createdAt": "created_at",
    "creatingApplication": "creating_application",
    "schema": "schema",
}


def parse_metamodel_into_xkt_model(
    metamodel_data: Dict,
    xkt_model: XKTModel,
    include_types: Optional[Iterable[str]] = None,
    exclude_types: Optional[Iterable[str]] = None,
    log: Optional[Callable[[str], None]] = None
) -> int:
    """
    Create property sets and meta objects from metamodel JSON.

    Args:
        metamodel_data: Parsed metamodel JSON
        xkt_model: Model to populate
        include_types: If given, only meta objects of these types are created
        exclude_types: Meta objects of these types are skipped
        log: Optional progress callback

    Returns:
        Number of meta objects created
    """
    log = log or logger.debug

    if not isinstance(metamodel_data, dict):
        raise ValueError("Metamodel JSON must be an object")

    for key, attr in _MODEL_FIELDS.items():
        value = metamodel_data.get(key)
        if value:
            setattr(xkt_model, attr, str(value))

    include = set(include_types) if include_types else None
    exclude = set(exclude_types) if exclude_types else set()

    property_sets = metamodel_data.get("propertySets") or []
    for property_set in property_sets:
        property_set_id = property_set.get("id")
        if property_set_id is None:
            logger.warning("Skipping property set without id")
            continue
        xkt_model.create_property_set(
            property_set_id,
            property_set_type=property_set.get("type", ""),
            property_set_name=property_set.get("name", ""),
            properties=property_set.get("properties") or [],
        )

    count = 0
    meta_objects = metamodel_data.get("metaObjects") or []
    for meta_object in meta_objects:
        meta_object_id = meta_object.get("id")
        if meta_object_id is None:
            logger.warning("Skipping meta object without id")
            continue
        meta_object_type = meta_object.get("type", "default")
        if include is not None and meta_object_type not in include:
            continue
        if meta_object_type in exclude:
            continue
        xkt_model.create_meta_object(
            meta_object_id,
            meta_object_type=meta_object_type,
            meta_object_name=meta_object.get("name"),
            parent_meta_object_id=meta_object.get("parent"),
            property_set_ids=meta_object.get("propertySetIds"),
        )
        count += 1

    log(f"Converted meta objects: {count}")
    log(f"Converted property sets: {len(property_sets)}")
    return count
