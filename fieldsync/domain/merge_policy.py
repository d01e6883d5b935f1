from __future__ import annotations

import copy
from typing import Any

from fieldsync.core.errors import EntityNotFoundError
from fieldsync.domain.ports import SERVER_TIMESTAMP, ArrayElementPatch, ArrayUnion, Document


def _identity(value: Any) -> Any:
    if isinstance(value, dict) and "id" in value:
        return ("id", value["id"])
    return ("value", repr(value))


def union_values(current: Any, additions: ArrayUnion) -> list[Any]:
    merged = list(current) if isinstance(current, list) else []
    seen = {_identity(value) for value in merged}
    for value in additions.values:
        key = _identity(value)
        if key in seen:
            continue
        seen.add(key)
        merged.append(copy.deepcopy(value))
    return merged


def locate_element(items: list[Any], match_id: str, fallback_index: int | None = None) -> int | None:
    """Posición del elemento con ``id == match_id``; si no hay ninguno, ``fallback_index``."""
    if match_id:
        for position, item in enumerate(items):
            if isinstance(item, dict) and str(item.get("id", "")) == match_id:
                return position
    if fallback_index is not None and 0 <= fallback_index < len(items):
        return fallback_index
    return None


def patch_element(current: Any, patch: ArrayElementPatch, server_time: Any) -> list[Any]:
    items = copy.deepcopy(current) if isinstance(current, list) else []
    position = locate_element(items, patch.match_id, patch.fallback_index)
    if position is None:
        raise EntityNotFoundError(f"Elemento {patch.match_id or patch.fallback_index} no encontrado en la lista.")
    element = items[position]
    target = element if isinstance(element, dict) else {"uri": element}
    items[position] = apply_patch(target, patch.fields, server_time)
    return items


def resolve_value(current: Any, incoming: Any, server_time: Any) -> Any:
    if incoming is SERVER_TIMESTAMP:
        return server_time
    if isinstance(incoming, ArrayUnion):
        return union_values(current, incoming)
    if isinstance(incoming, ArrayElementPatch):
        return patch_element(current, incoming, server_time)
    return copy.deepcopy(incoming)


def apply_patch(document: Document | None, patch: Document, server_time: Any) -> Document:
    """Aplica un parche con last-write-wins a nivel de campo.

    Cada campo de primer nivel del parche sustituye al actual (un subobjeto se
    reemplaza completo). Las listas con ``ArrayUnion`` se fusionan por adición y
    ``ArrayElementPatch`` toca un solo elemento de la lista actual.
    """
    merged: Document = copy.deepcopy(document) if document else {}
    for key, incoming in patch.items():
        merged[key] = resolve_value(merged.get(key), incoming, server_time)
    return merged


def resolve_document(data: Document, server_time: Any) -> Document:
    return apply_patch(None, data, server_time)
