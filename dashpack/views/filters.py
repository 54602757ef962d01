"""Predicate compiler — filter clauses and search text to a SQL condition.

A predicate is a ``(sql_fragment, params)`` tuple, the same shape the
engine feeds straight into ``conn.execute``. Filters naming fields the
entity doesn't have, or values that carry nothing to compare against,
compile to no condition at all rather than an error: saved views
outlive the fields they were built on.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum

log = logging.getLogger(__name__)

CURRENT_USER_TOKEN = "__current_user__"

# Columns searched by the free-text box, when the entity has them
SEARCH_FIELDS = ("name", "title", "label", "displayName")

Predicate = tuple[str, list]


class FilterMode(str, Enum):
    ALL = "all"
    ANY = "any"

    @classmethod
    def normalize(cls, raw) -> "FilterMode":
        return cls.ANY if str(raw or "").strip().lower() == "any" else cls.ALL


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"
    NOT_IN = "notIn"
    DATE_EQUALS = "dateEquals"
    DATE_BEFORE = "dateBefore"
    DATE_AFTER = "dateAfter"
    DATE_BETWEEN = "dateBetween"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    IS_TRUE = "isTrue"
    IS_FALSE = "isFalse"
    IS_EMPTY = "isEmpty"
    IS_NULL = "isNull"
    IS_NOT_EMPTY = "isNotEmpty"
    IS_NOT_NULL = "isNotNull"
    # Anything unrecognised; compiled with a value-dependent fallback
    UNKNOWN = "unknown"


_Op = FilterOperator

# Operators that test the column itself and need no value
_VALUELESS_OPS: dict[FilterOperator, str] = {
    _Op.IS_TRUE:      "{col} = 1",
    _Op.IS_FALSE:     "{col} = 0",
    _Op.IS_EMPTY:     "{col} IS NULL",
    _Op.IS_NULL:      "{col} IS NULL",
    _Op.IS_NOT_EMPTY: "{col} IS NOT NULL",
    _Op.IS_NOT_NULL:  "{col} IS NOT NULL",
}

# Map: operator → SQL template taking one bound value
_SCALAR_OPS: dict[FilterOperator, str] = {
    _Op.EQUALS:                "{col} = ?",
    _Op.NOT_EQUALS:            "{col} != ?",
    _Op.CONTAINS:              "{col} LIKE '%' || ? || '%'",
    _Op.NOT_CONTAINS:          "{col} NOT LIKE '%' || ? || '%'",
    _Op.STARTS_WITH:           "{col} LIKE ? || '%'",
    _Op.ENDS_WITH:             "{col} LIKE '%' || ?",
    _Op.DATE_EQUALS:           "{col} = ?",
    _Op.DATE_BEFORE:           "{col} < ?",
    _Op.DATE_AFTER:            "{col} > ?",
    _Op.GREATER_THAN:          "{col} > ?",
    _Op.LESS_THAN:             "{col} < ?",
    _Op.GREATER_THAN_OR_EQUAL: "{col} >= ?",
    _Op.LESS_THAN_OR_EQUAL:    "{col} <= ?",
}

# Older saved views store snake_case operator names
_OPERATOR_ALIASES: dict[str, str] = {
    "not_equals": "notEquals",
    "not_contains": "notContains",
    "starts_with": "startsWith",
    "ends_with": "endsWith",
    "gt": "greaterThan",
    "lt": "lessThan",
    "gte": "greaterThanOrEqual",
    "lte": "lessThanOrEqual",
    "is_before": "dateBefore",
    "is_after": "dateAfter",
    "is_empty": "isEmpty",
    "is_not_empty": "isNotEmpty",
    "is_null": "isNull",
    "is_not_null": "isNotNull",
    "is_true": "isTrue",
    "is_false": "isFalse",
    "not_in": "notIn",
    "date_equals": "dateEquals",
    "date_between": "dateBetween",
}


def normalize_operator(raw) -> FilterOperator:
    """Canonical operator; unknown names become ``FilterOperator.UNKNOWN``."""
    if isinstance(raw, FilterOperator):
        return raw
    op = str(raw or "").strip()
    try:
        return FilterOperator(_OPERATOR_ALIASES.get(op, op))
    except ValueError:
        return FilterOperator.UNKNOWN


@dataclass(frozen=True)
class FilterClause:
    field: str
    operator: FilterOperator | str
    value: object = None
    value_type: str | None = None

    @classmethod
    def coerce(cls, raw) -> "FilterClause | None":
        if isinstance(raw, FilterClause):
            return raw
        if not isinstance(raw, dict):
            return None
        fld = str(raw.get("field") or raw.get("field_key") or "").strip()
        if not fld:
            return None
        return cls(
            field=fld,
            operator=normalize_operator(raw.get("operator")),
            value=raw.get("value"),
            value_type=raw.get("valueType") or raw.get("value_type"),
        )


def _param(value):
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float, str)):
        return value
    return str(value)


def _substitute_current_user(value, current_user_id: str | None):
    if value == CURRENT_USER_TOKEN:
        return current_user_id
    if isinstance(value, (list, tuple)) and CURRENT_USER_TOKEN in value:
        return [current_user_id if v == CURRENT_USER_TOKEN else v for v in value]
    return value


def parse_date_range(value) -> tuple[str | None, str | None]:
    """Split a dateBetween value into ``(from, to)``.

    Accepts ``{"from"|"start": .., "to"|"end": ..}`` (as a dict or JSON
    text) or a string delimited by ``..`` or ``,``.
    """
    parsed = value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = None
            sep = ".." if ".." in value else ("," if "," in value else None)
            if sep:
                a, _, b = value.partition(sep)
                return (a.strip() or None, b.strip() or None)
    if isinstance(parsed, dict):
        lo = parsed.get("from") if parsed.get("from") is not None else parsed.get("start")
        hi = parsed.get("to") if parsed.get("to") is not None else parsed.get("end")
        return (str(lo) if lo else None, str(hi) if hi else None)
    return (None, None)


def _in_list(col: str, values: list, negate: bool) -> Predicate:
    placeholders = ", ".join("?" for _ in values)
    op = "NOT IN" if negate else "IN"
    return f"{col} {op} ({placeholders})", [_param(v) for v in values]


def build_filter_condition(
    clause: FilterClause,
    column_map: dict[str, str],
    current_user_id: str | None = None,
) -> Predicate | None:
    """Compile one filter clause, or None when it contributes nothing."""
    col = column_map.get(clause.field)
    if not col:
        return None
    op = normalize_operator(clause.operator)
    value = _substitute_current_user(clause.value, current_user_id)

    if value is None or value == "":
        tpl = _VALUELESS_OPS.get(op)
        return (tpl.format(col=col), []) if tpl else None

    if isinstance(value, (list, tuple)):
        if not value:
            return None
        return _in_list(col, list(value), negate=op in (_Op.NOT_EQUALS, _Op.NOT_IN))

    if op is _Op.DATE_BETWEEN:
        lo, hi = parse_date_range(value)
        parts: list[str] = []
        params: list = []
        if lo:
            parts.append(f"{col} >= ?")
            params.append(lo)
        if hi:
            parts.append(f"{col} <= ?")
            params.append(hi)
        if not parts:
            return None
        sql = parts[0] if len(parts) == 1 else f"({' AND '.join(parts)})"
        return sql, params

    if op in _VALUELESS_OPS:
        return _VALUELESS_OPS[op].format(col=col), []

    tpl = _SCALAR_OPS.get(op)
    if tpl is None:
        # Unknown operator: text gets a substring match, anything else equality
        tpl = _SCALAR_OPS[_Op.CONTAINS] if isinstance(value, str) else _SCALAR_OPS[_Op.EQUALS]
        log.debug("Unknown filter operator %r on %s, using fallback", clause.operator, clause.field)
    return tpl.format(col=col), [_param(value)]


def compile_filters(
    filters: list,
    column_map: dict[str, str],
    filter_mode: FilterMode | str = FilterMode.ALL,
    current_user_id: str | None = None,
) -> Predicate | None:
    """Compile filter clauses joined by AND (``all``) or OR (``any``)."""
    mode = filter_mode if isinstance(filter_mode, FilterMode) else FilterMode.normalize(filter_mode)
    parts: list[str] = []
    params: list = []
    for raw in filters or []:
        clause = FilterClause.coerce(raw)
        if clause is None:
            continue
        cond = build_filter_condition(clause, column_map, current_user_id)
        if cond is None:
            continue
        parts.append(f"({cond[0]})")
        params.extend(cond[1])
    if not parts:
        return None
    joiner = " OR " if mode is FilterMode.ANY else " AND "
    return joiner.join(parts), params


def build_search_condition(search: str, column_map: dict[str, str]) -> Predicate | None:
    """Substring match of ``search`` across the entity's label-like columns."""
    search = (search or "").strip()
    if not search:
        return None
    cols = [column_map[k] for k in SEARCH_FIELDS if k in column_map]
    if not cols:
        return None
    clauses = [f"{c} LIKE ?" for c in cols]
    return f"({' OR '.join(clauses)})", [f"%{search}%"] * len(cols)


def combine_and(*predicates: Predicate | None) -> Predicate | None:
    """AND together the non-empty predicates."""
    parts: list[str] = []
    params: list = []
    for pred in predicates:
        if pred is None:
            continue
        parts.append(f"({pred[0]})")
        params.extend(pred[1])
    if not parts:
        return None
    return " AND ".join(parts), params
