"""Grouping engine — counts, orders and optionally pages the groups of a table.

The engine is entity-agnostic: it reads the entity catalog for the table,
compiles the request's filters and search into one WHERE clause, resolves
the group-by field to a column or a computed expression and renders the
grouped COUNT and per-group row queries.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from enum import Enum

from .. import config
from .enrichment import LabelMaps, load_option_source_map, to_order
from .errors import InputError, NotFoundError, StoreError
from .filters import FilterMode, build_search_condition, combine_and, compile_filters
from .grouping import BASE_ALIAS, GroupPlan, column_expr, physical_column, resolve_group_field
from .registry import EntityCatalog, EntitySpec, quote_ident

log = logging.getLogger(__name__)


class OrderBy(str, Enum):
    AUTO = "auto"
    VALUE = "value"
    COUNT = "count"
    RELATED_SORT_ORDER = "relatedSortOrder"

    @classmethod
    def normalize(cls, raw) -> "OrderBy":
        s = str(raw or "").strip()
        if not s:
            return cls.AUTO
        try:
            return cls(s)
        except ValueError:
            return cls.VALUE


class OrderDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


def clamp_group_page_size(raw) -> int:
    """Clamp to 1..MAX_GROUP_PAGE_SIZE; unparseable values use the default."""
    try:
        n = int(raw) if raw is not None else config.GROUP_PAGE_SIZE
    except (TypeError, ValueError):
        n = config.GROUP_PAGE_SIZE
    return min(config.MAX_GROUP_PAGE_SIZE, max(1, n))


@dataclass(frozen=True)
class GroupByRequest:
    field: str
    order_by: OrderBy = OrderBy.AUTO
    order_direction: OrderDirection | None = None  # None = policy default

    @classmethod
    def from_dict(cls, raw) -> "GroupByRequest":
        raw = raw if isinstance(raw, dict) else {}
        direction = str(raw.get("orderDirection") or "").strip().lower()
        fld = raw.get("field")
        return cls(
            field=fld.strip() if isinstance(fld, str) else "",
            order_by=OrderBy.normalize(raw.get("orderBy")),
            order_direction=(
                None if not direction
                else OrderDirection.DESC if direction == "desc" else OrderDirection.ASC
            ),
        )

    @property
    def effective_direction(self) -> OrderDirection:
        if self.order_direction is not None:
            return self.order_direction
        return OrderDirection.DESC if self.order_by is OrderBy.COUNT else OrderDirection.ASC


@dataclass
class GroupMetaRequest:
    table_id: str
    group_by: GroupByRequest
    filters: list = field(default_factory=list)
    filter_mode: FilterMode = FilterMode.ALL
    search: str = ""
    include_rows: bool = False
    group_page_size: int = config.MAX_GROUP_PAGE_SIZE
    caller_id: str | None = None
    # Row ordering from the saved view: [{"id": fieldKey, "desc": bool}, ...]
    sorting: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, body: dict) -> "GroupMetaRequest":
        """Normalize a camelCase request body, defaulting anything unknown."""
        body = body if isinstance(body, dict) else {}
        table_id = body.get("tableId")
        search = body.get("search")
        return cls(
            table_id=table_id.strip() if isinstance(table_id, str) else "",
            group_by=GroupByRequest.from_dict(body.get("groupBy")),
            filters=body.get("filters") if isinstance(body.get("filters"), list) else [],
            filter_mode=FilterMode.normalize(body.get("filterMode")),
            search=search.strip() if isinstance(search, str) else "",
            include_rows=body.get("includeRows") is True,
            group_page_size=clamp_group_page_size(body.get("groupPageSize")),
            caller_id=body.get("callerId") or None,
            sorting=body.get("sorting") if isinstance(body.get("sorting"), list) else [],
        )


@dataclass
class GroupEntry:
    key: str
    count: int
    sort_order: float | None
    raw_values: list = field(default_factory=list)


# -----------------------------------------------------------------------
# Ordering
# -----------------------------------------------------------------------

def _compare_labels(a: str, b: str) -> int:
    """Case-sensitive lexical order with empty labels last."""
    if not a and not b:
        return 0
    if not a:
        return 1
    if not b:
        return -1
    return (a > b) - (a < b)


def effective_order_by(order_by: OrderBy, entries: list[GroupEntry]) -> OrderBy:
    if order_by is OrderBy.AUTO:
        has_order = any(e.sort_order is not None for e in entries)
        return OrderBy.RELATED_SORT_ORDER if has_order else OrderBy.VALUE
    return order_by


def order_groups(
    entries: list[GroupEntry], order_by: OrderBy, direction: OrderDirection,
) -> list[GroupEntry]:
    """Sort group entries per policy and drop repeated labels."""
    policy = effective_order_by(order_by, entries)
    sign = -1 if direction is OrderDirection.DESC else 1

    def by_count(a: GroupEntry, b: GroupEntry) -> int:
        if a.count != b.count:
            return sign * (a.count - b.count)
        return _compare_labels(a.key, b.key)

    def by_related(a: GroupEntry, b: GroupEntry) -> int:
        if a.sort_order is not None or b.sort_order is not None:
            if a.sort_order is None:
                return 1
            if b.sort_order is None:
                return -1
            if a.sort_order != b.sort_order:
                return sign * (1 if a.sort_order > b.sort_order else -1)
        return _compare_labels(a.key, b.key)

    def by_value(a: GroupEntry, b: GroupEntry) -> int:
        if not a.key or not b.key:
            return _compare_labels(a.key, b.key)
        return sign * _compare_labels(a.key, b.key)

    if policy is OrderBy.COUNT:
        cmp = by_count
    elif policy is OrderBy.RELATED_SORT_ORDER and any(e.sort_order is not None for e in entries):
        cmp = by_related
    else:
        cmp = by_value
    ordered = sorted(entries, key=functools.cmp_to_key(cmp))

    seen: set[str] = set()
    out: list[GroupEntry] = []
    for e in ordered:
        if e.key in seen:
            continue
        seen.add(e.key)
        out.append(e)
    return out


def merge_by_label(
    rows: list[tuple], maps: LabelMaps, direction: OrderDirection = OrderDirection.ASC,
) -> list[GroupEntry]:
    """Fold ``(raw_value, label, sort_order, count)`` rows into one entry per label.

    ``label`` and ``sort_order`` come from the query for joined strategies
    and are None otherwise, in which case the label/order maps apply.
    A merged entry keeps the order that sorts first in ``direction`` (the
    smallest ascending, the largest descending), so it lands where its
    first occurrence would.
    """
    desc = direction is OrderDirection.DESC
    by_key: dict[str, GroupEntry] = {}
    for raw, row_label, row_order, count in rows:
        raw_id = "" if raw is None else str(raw)
        if row_label is not None:
            label = str(row_label)
        else:
            label = maps.labels.get(raw_id, raw_id)
        key = label.strip()
        order = to_order(row_order)
        if order is None:
            order = maps.orders.get(raw_id)
        entry = by_key.get(key)
        if entry is None:
            entry = by_key[key] = GroupEntry(key=key, count=0, sort_order=None)
        entry.count += int(count or 0)
        entry.raw_values.append(raw)
        if order is not None and (
            entry.sort_order is None
            or (order > entry.sort_order if desc else order < entry.sort_order)
        ):
            entry.sort_order = order
    return list(by_key.values())


# -----------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------

def _membership(plan: GroupPlan, raw_values: list) -> tuple[str, list]:
    """WHERE fragment selecting rows whose group value is one of ``raw_values``."""
    expr = plan.group_expr
    present = [v for v in raw_values if v is not None and str(v) != ""]
    parts: list[str] = []
    params: list = []
    if present:
        parts.append(f"{expr} IN ({', '.join('?' for _ in present)})")
        params.extend(present)
    if len(present) < len(raw_values):
        parts.append(f"{expr} IS NULL OR {expr} = ''")
    return "(" + " OR ".join(parts) + ")", params


class GroupMetaEngine:
    """Runs group-meta requests against one entity catalog."""

    def __init__(self, catalog: EntityCatalog) -> None:
        self.catalog = catalog

    def resolve_entity(self, table_id: str) -> EntitySpec:
        table_id = (table_id or "").strip()
        if not table_id:
            raise InputError("Missing tableId")
        spec = self.catalog.resolve_entity_by_table_id(table_id)
        if spec is None:
            raise NotFoundError(f"Unknown tableId={table_id}")
        if not spec.table:
            raise NotFoundError("Missing storage.table", status=500)
        if not spec.is_queryable:
            raise NotFoundError(f"Invalid storage for {spec.key}", status=500)
        return spec

    def check_request(self, request: GroupMetaRequest) -> EntitySpec:
        """Validate the request's required inputs and return its entity."""
        if not request.table_id.strip():
            raise InputError("Missing tableId")
        if not request.group_by.field:
            raise InputError("Missing groupBy.field")
        return self.resolve_entity(request.table_id)

    def build_group_meta(self, conn: sqlite3.Connection, request: GroupMetaRequest) -> dict:
        """Execute one group-meta request and return the response envelope."""
        spec = self.check_request(request)
        group_by = request.group_by

        column_map = {
            fk: column_expr(BASE_ALIAS, col) for fk, col in spec.column_map().items()
        }
        where = combine_and(
            compile_filters(request.filters, column_map, request.filter_mode, request.caller_id),
            build_search_condition(request.search, column_map),
        )
        plan = resolve_group_field(self.catalog, spec, group_by.field)

        maps = LabelMaps()
        raw_rows = self._aggregate(conn, spec, plan, where)
        if plan.enriches:
            maps = load_option_source_map(
                conn, self.catalog, plan.option_source, plan.label_key_override,
            )
        direction = group_by.effective_direction
        entries = merge_by_label(raw_rows, maps, direction)
        ordered = order_groups(entries, group_by.order_by, direction)

        result = {
            "tableId": request.table_id,
            "groupBy": {
                "field": group_by.field,
                "orderBy": group_by.order_by.value,
                "orderDirection": direction.value,
            },
            "groupCounts": {e.key: e.count for e in ordered},
            "groupOrder": [e.key for e in ordered],
        }
        if request.include_rows:
            result["groups"] = [
                {
                    "key": e.key,
                    "total": e.count,
                    "rows": self._group_rows(conn, spec, plan, where, e, request),
                }
                for e in ordered
            ]
        log.info(
            "group-meta %s by %s (%s): %d groups",
            request.table_id, group_by.field, plan.strategy, len(ordered),
        )
        return result

    def _from_clause(self, spec: EntitySpec, plan: GroupPlan) -> str:
        joins = "\n".join(plan.joins)
        return f"FROM {quote_ident(spec.table)} {BASE_ALIAS}\n{joins}".rstrip()

    def _aggregate(
        self, conn: sqlite3.Connection, spec: EntitySpec, plan: GroupPlan,
        where: tuple[str, list] | None,
    ) -> list[tuple]:
        select = [f"{plan.group_expr} AS group_value"]
        group_cols = [plan.group_expr]
        select.append(f"{plan.label_expr} AS label" if plan.label_expr else "NULL AS label")
        select.append(f"{plan.order_expr} AS sort_order" if plan.order_expr else "NULL AS sort_order")
        if plan.label_expr:
            group_cols.append(plan.label_expr)
        if plan.order_expr:
            group_cols.append(plan.order_expr)
        where_sql, params = where if where else ("1=1", [])
        sql = (
            f"SELECT {', '.join(select)}, COUNT(*) AS cnt\n"
            f"{self._from_clause(spec, plan)}\n"
            f"WHERE {where_sql}\n"
            f"GROUP BY {', '.join(group_cols)}"
        )
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Group query on {spec.table} failed: {exc}") from exc
        return [(r["group_value"], r["label"], r["sort_order"], r["cnt"]) for r in rows]

    def _row_order(self, spec: EntitySpec, sorting: list) -> str:
        """ORDER BY from the view's first sort, falling back to the primary key."""
        first = sorting[0] if sorting and isinstance(sorting[0], dict) else {}
        sort_id = str(first.get("id") or "").strip()
        col = physical_column(spec, sort_id) if sort_id else None
        direction = "DESC" if first.get("desc") else "ASC"
        pk = column_expr(BASE_ALIAS, spec.primary_key)
        if not col:
            return f"ORDER BY {pk} {direction}"
        return f"ORDER BY {column_expr(BASE_ALIAS, col)} {direction}, {pk} ASC"

    def _group_rows(
        self,
        conn: sqlite3.Connection,
        spec: EntitySpec,
        plan: GroupPlan,
        where: tuple[str, list] | None,
        entry: GroupEntry,
        request: GroupMetaRequest,
    ) -> list[dict]:
        select = [f"{column_expr(BASE_ALIAS, spec.primary_key)} AS {quote_ident(spec.primary_key)}"]
        for fk, col in spec.column_map().items():
            if fk != spec.primary_key:
                select.append(f"{column_expr(BASE_ALIAS, col)} AS {quote_ident(fk)}")
        select.append(f"{plan.group_expr} AS __group_value")

        member_sql, member_params = _membership(plan, entry.raw_values)
        cond = combine_and(where, (member_sql, member_params))
        sql = (
            f"SELECT {', '.join(select)}\n"
            f"{self._from_clause(spec, plan)}\n"
            f"WHERE {cond[0]}\n"
            f"{self._row_order(spec, request.sorting)}\n"
            f"LIMIT ?"
        )
        try:
            rows = conn.execute(sql, cond[1] + [request.group_page_size]).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Row query on {spec.table} failed: {exc}") from exc

        out = []
        for r in rows:
            d = dict(r)
            group_value = d.pop("__group_value", None)
            target = plan.backfill_target
            if target and entry.key and group_value is not None and str(group_value).strip():
                current = d.get(target)
                if current is None or str(current).strip() == "":
                    d[target] = entry.key
            out.append(d)
        return out


def query_grouped_table(
    engine: GroupMetaEngine, conn: sqlite3.Connection, request: GroupMetaRequest,
) -> dict:
    """Grouped table query: group meta plus every group's rows flattened into ``items``."""
    result = engine.build_group_meta(conn, replace(request, include_rows=True))
    items = [row for g in result.get("groups", []) for row in g["rows"]]
    result["items"] = items
    result["pagination"] = {
        "page": 1,
        "pageSize": len(items),
        "total": len(items),
        "totalPages": 1,
    }
    return result
