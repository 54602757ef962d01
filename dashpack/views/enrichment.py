"""Label and display-order lookup for reference-typed group values."""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field

from .errors import StoreError
from .registry import ORDER_FIELD_CANDIDATES, EntityCatalog, quote_ident

log = logging.getLogger(__name__)


@dataclass
class LabelMaps:
    labels: dict[str, str] = field(default_factory=dict)
    orders: dict[str, float] = field(default_factory=dict)


def to_order(value) -> float | None:
    """Finite number from a stored order value, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def load_option_source_map(
    conn: sqlite3.Connection,
    catalog: EntityCatalog,
    option_source: str,
    label_key_override: str | None = None,
) -> LabelMaps:
    """Read ``id → label`` and ``id → order`` from the referenced entity.

    Any missing piece (entity, table, label column) yields empty maps so
    grouping falls back to raw values as labels.
    """
    entity_key = catalog.resolve_option_source(option_source)
    spec = catalog.get(entity_key) if entity_key else None
    if spec is None or not spec.is_queryable:
        log.debug("Option source %r has no backing table; using raw labels", option_source)
        return LabelMaps()

    label_field = label_key_override or catalog.label_field_for(spec.key)
    label_col = spec.primary_key if label_field == spec.primary_key else spec.column_for(label_field)
    if not label_col:
        log.debug("Option source %r has no label column %r", option_source, label_field)
        return LabelMaps()
    order_field = next((f for f in ORDER_FIELD_CANDIDATES if spec.column_for(f)), None)
    order_sql = quote_ident(spec.column_for(order_field)) if order_field else "NULL"

    sql = (
        f"SELECT {quote_ident(spec.primary_key)} AS id, "
        f"{quote_ident(label_col)} AS label, {order_sql} AS sort_order "
        f"FROM {quote_ident(spec.table)}"
    )
    try:
        rows = conn.execute(sql).fetchall()
    except sqlite3.Error as exc:
        raise StoreError(f"Label lookup on {spec.table} failed: {exc}") from exc

    maps = LabelMaps()
    for r in rows:
        if r["id"] is None:
            continue
        key = str(r["id"])
        if r["label"] is not None:
            maps.labels[key] = str(r["label"])
        order = to_order(r["sort_order"])
        if order is not None:
            maps.orders[key] = order
    return maps
