"""Built-in saved views declared in the entity catalog."""

from __future__ import annotations

import json
import math
from dataclasses import replace

from .engine import GroupByRequest, GroupMetaRequest
from .filters import FilterMode
from .registry import EntityCatalog, StaticView


def parse_filter_value(raw, value_type: str | None = None):
    """Decode a stored filter value according to its declared ``valueType``."""
    if raw is None:
        return None
    if isinstance(raw, (list, dict)):
        # Catalog JSON already holds structured values
        return raw
    t = str(value_type or "").lower()
    s = str(raw).lower() if isinstance(raw, bool) else str(raw)
    if t in ("number", "int", "integer", "float"):
        try:
            n = float(s)
        except ValueError:
            return s
        if not math.isfinite(n):
            return s
        return int(n) if n.is_integer() else n
    if t in ("boolean", "bool"):
        if s in ("true", "1"):
            return True
        if s in ("false", "0"):
            return False
        return s
    if t in ("array", "json", "object"):
        try:
            return json.loads(s)
        except ValueError:
            return s
    return s


def get_static_views_for_table(catalog: EntityCatalog, table_id: str) -> list[dict]:
    """Serialize a table's built-in views, defaults first, declared order otherwise."""
    spec = catalog.resolve_entity_by_table_id(table_id)
    if spec is None:
        return []
    out = []
    for view in spec.views:
        out.append({
            "id": view.id,
            "userId": "system",
            "tableId": spec.table_id,
            "name": view.name,
            "description": view.description,
            "isDefault": view.is_default,
            "isSystem": True,
            "isShared": False,
            "sorting": list(view.sorting) or None,
            "groupBy": view.group_by,
            "metadata": view.metadata,
            "filters": [
                {
                    "id": f"{view.id}:{idx}",
                    "viewId": view.id,
                    "field": f.field,
                    "operator": f.operator,
                    "value": f.value,
                    "valueType": f.value_type,
                    "sortOrder": idx,
                }
                for idx, f in enumerate(view.filters)
            ],
        })
    # sorted() is stable, so non-default views keep their declared order
    return sorted(out, key=lambda v: not v["isDefault"])


def get_static_view(catalog: EntityCatalog, view_id: str) -> tuple[str, StaticView] | None:
    """Find a built-in view by id; returns ``(table_id, view)``."""
    for spec in catalog:
        for view in spec.views:
            if view.id == view_id:
                return spec.table_id or "", view
    return None


def apply_saved_view(
    request: GroupMetaRequest, table_id: str, view: StaticView, *, explicit_filter_mode: bool,
) -> GroupMetaRequest:
    """Overlay a saved view on a request.

    The view supplies the table, its row sorting and, when it declares one,
    the group-by. Its filters are used when the request carries none, and
    its filter mode when the request didn't name one.
    """
    filters = request.filters
    if not filters:
        filters = [
            {
                "field": f.field,
                "operator": f.operator,
                "value": parse_filter_value(f.value, f.value_type),
            }
            for f in view.filters
        ]
    filter_mode = request.filter_mode
    if not explicit_filter_mode:
        filter_mode = FilterMode.normalize((view.metadata or {}).get("filterMode"))
    group_by = request.group_by
    if view.group_by:
        group_by = GroupByRequest.from_dict(view.group_by)
    return replace(
        request,
        table_id=table_id,
        filters=filters,
        filter_mode=filter_mode,
        group_by=group_by,
        sorting=list(view.sorting) or request.sorting,
    )
