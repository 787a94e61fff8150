"""
Helpers shared by the format parsers.
"""

from typing import Optional

from xkt_convert.xkt_model import XKTModel

ROOT_META_OBJECT_TYPE = "Model"


def ensure_root_meta_object(xkt_model: XKTModel, root_id: Optional[str] = None, name: str = "Model") -> str:
    """
    Return the ID of the model's root meta object, creating one if the model has none.
    """
    for meta_object in xkt_model.meta_objects_list:
        if meta_object.parent_meta_object_id is None:
            return meta_object.meta_object_id
    root_id = root_id or xkt_model.model_id or "model"
    xkt_model.create_meta_object(root_id, ROOT_META_OBJECT_TYPE, name)
    return root_id


def create_entity_with_meta_object(
    xkt_model: XKTModel,
    entity_id: str,
    mesh_ids,
    meta_object_type: str,
    name: Optional[str] = None,
    parent_id: Optional[str] = None
):
    """
    Create an entity and a matching meta object, unless a metamodel already supplied one.
    """
    if entity_id not in xkt_model.meta_objects:
        parent_id = parent_id or ensure_root_meta_object(xkt_model)
        xkt_model.create_meta_object(entity_id, meta_object_type, name or entity_id, parent_id)
    return xkt_model.create_entity(entity_id, mesh_ids)
