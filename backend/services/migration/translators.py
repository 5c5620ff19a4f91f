"""
Translate export items into the import entity's representation.
"""

import copy
from typing import Any, Callable, Dict

from .errors import MalformedItemError

# Assigned by the server that stores the item; never sent on create
SERVER_MANAGED_FIELDS = ("id", "received_at", "updated_at", "version", "app", "created_at")

# Fields each category needs before it can be re-posted
REQUIRED_FIELDS = {
    "posts": ("type",),
    "profile": ("type",),
    "followers": ("entity",),
    "followings": ("entity",),
    "groups": ("name",),
    "apps": ("name",),
    "permissions": (),
    "secrets": (),
}


def _rewrite_entity(value: Any, export_entity: str, import_entity: str) -> Any:
    if isinstance(value, str) and value.rstrip("/") == export_entity:
        return import_entity
    return value


def _translate_post(item: Dict[str, Any], export_entity: str, import_entity: str) -> Dict[str, Any]:
    post = copy.deepcopy(item)
    post["entity"] = _rewrite_entity(post.get("entity", export_entity), export_entity, import_entity)

    for mention in post.get("mentions") or []:
        if isinstance(mention, dict) and "entity" in mention:
            mention["entity"] = _rewrite_entity(mention["entity"], export_entity, import_entity)

    permissions = post.get("permissions")
    if isinstance(permissions, dict) and isinstance(permissions.get("entities"), dict):
        permissions["entities"] = {
            _rewrite_entity(entity, export_entity, import_entity): allowed
            for entity, allowed in permissions["entities"].items()
        }
    return post


def _translate_profile(item: Dict[str, Any], export_entity: str, import_entity: str) -> Dict[str, Any]:
    content = copy.deepcopy(item.get("content") or {})
    if not isinstance(content, dict):
        raise MalformedItemError(f"Profile info {item.get('type')} is not an object", item_id=item.get("id"))
    if "entity" in content:
        # Core profile: the entity and its servers stay those of the import account
        content["entity"] = import_entity
        content.pop("servers", None)
    return {"type": item["type"], "content": content}


def _translate_generic(item: Dict[str, Any], export_entity: str, import_entity: str) -> Dict[str, Any]:
    translated = copy.deepcopy(item)
    for key in ("entity", "owner"):
        if key in translated:
            translated[key] = _rewrite_entity(translated[key], export_entity, import_entity)
    if isinstance(translated.get("entities"), list):
        translated["entities"] = [
            _rewrite_entity(e, export_entity, import_entity) for e in translated["entities"]
        ]
    return translated


TRANSLATORS: Dict[str, Callable[[Dict[str, Any], str, str], Dict[str, Any]]] = {
    "posts": _translate_post,
    "profile": _translate_profile,
}


def translate(category: str, item: Any, export_entity: str, import_entity: str) -> Dict[str, Any]:
    """
    Return the body to create on the import side for one export item.

    Raises:
        MalformedItemError: the item has no id or lacks a field its category needs
    """
    if not isinstance(item, dict):
        raise MalformedItemError(f"{category} item is not an object")
    item_id = item.get("id")
    if not item_id:
        raise MalformedItemError(f"{category} item has no id")

    missing = [f for f in REQUIRED_FIELDS.get(category, ()) if not item.get(f)]
    if missing:
        raise MalformedItemError(
            f"{category} item {item_id} is missing {', '.join(missing)}", item_id=str(item_id)
        )

    export_entity = export_entity.rstrip("/")
    import_entity = import_entity.rstrip("/")
    translator = TRANSLATORS.get(category, _translate_generic)
    translated = translator(item, export_entity, import_entity)

    if category != "profile":
        for key in SERVER_MANAGED_FIELDS:
            translated.pop(key, None)
    return translated
