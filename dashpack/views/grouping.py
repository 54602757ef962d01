"""Group field resolver — turns a group-by key into an executable plan.

Resolution order:

1. a stored field with that key
2. a stored field whose ``label_from_row`` names the key
3. a virtual ``LabelFrom`` field (group on its source field)
4. a virtual ``Concat`` field (group on the concatenation)
5. a virtual ``Join`` field (group on a column of the last joined table)
6. a virtual ``ExternalAssignmentJoin`` field

Anything else raises ``ResolutionError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import ResolutionError
from .registry import (
    Concat,
    EntityCatalog,
    EntitySpec,
    ExternalAssignmentJoin,
    FieldSpec,
    Join,
    LabelFrom,
    quote_ident,
)

log = logging.getLogger(__name__)

BASE_ALIAS = "t"


@dataclass
class GroupPlan:
    """Everything the aggregate and row queries need for one group-by."""

    strategy: str
    group_expr: str
    joins: list[str] = field(default_factory=list)
    label_expr: str | None = None
    order_expr: str | None = None
    # Option source to look labels up in (stored-column strategies only)
    option_source: str | None = None
    label_key_override: str | None = None
    # Row key that receives the resolved label when it's empty
    backfill_target: str | None = None

    @property
    def enriches(self) -> bool:
        return self.option_source is not None


def column_expr(alias: str, column: str) -> str:
    return f"{alias}.{quote_ident(column)}"


def physical_column(spec: EntitySpec, field_key: str) -> str | None:
    """Stored column for a field key, accepting the primary key too."""
    col = spec.column_for(field_key)
    if col:
        return col
    if field_key and field_key == spec.primary_key:
        return spec.primary_key
    return None


def _find_label_from_row_owner(spec: EntitySpec, requested: str) -> FieldSpec | None:
    for fs in spec.fields.values():
        if fs.label_from_row and fs.label_from_row.strip() == requested and spec.column_for(fs.key):
            return fs
    return None


def _option_source_for(
    catalog: EntityCatalog, label_spec: FieldSpec | None, label_from_row: str | None,
) -> tuple[str | None, str | None]:
    """Return ``(option_source_key, label_key_override)`` for a stored field."""
    if label_spec is None:
        return None, None
    option_source = (label_spec.option_source or "").strip()
    reference = (label_spec.reference_entity or "").strip()
    label_entity_key = reference or (catalog.resolve_option_source(option_source) if option_source else None)
    label_entity = catalog.get(label_entity_key) if label_entity_key else None
    override = None
    if label_from_row and label_entity and label_from_row in label_entity.fields:
        override = label_from_row
    source_key = option_source or label_entity_key or None
    return source_key, override


def _stored_plan(
    catalog: EntityCatalog,
    column: str,
    strategy: str,
    label_spec: FieldSpec | None,
    label_from_row: str | None,
) -> GroupPlan:
    source_key, override = _option_source_for(catalog, label_spec, label_from_row)
    return GroupPlan(
        strategy=strategy,
        group_expr=column_expr(BASE_ALIAS, column),
        option_source=source_key,
        label_key_override=override,
        backfill_target=label_from_row or None,
    )


def concat_expr(columns: list[str], separator: str) -> str:
    """Concatenate columns with ``separator``, skipping NULL parts.

    Each part is prefixed with the separator and the leading one is cut
    off, which matches ``concat_ws`` without needing SQLite 3.44.
    """
    sep = "'" + separator.replace("'", "''") + "'"
    parts = " || ".join(f"COALESCE({sep} || {c}, '')" for c in columns)
    return f"SUBSTR({parts}, LENGTH({sep}) + 1)"


def _concat_plan(spec: EntitySpec, compute: Concat, group_by_field: str) -> GroupPlan | None:
    cols = [physical_column(spec, k) for k in compute.fields]
    cols = [column_expr(BASE_ALIAS, c) for c in cols if c]
    if not cols:
        return None
    return GroupPlan(
        strategy="concat",
        group_expr=concat_expr(cols, compute.separator),
        backfill_target=group_by_field,
    )


def _join_plan(
    catalog: EntityCatalog, spec: EntitySpec, compute: Join, group_by_field: str,
) -> GroupPlan | None:
    if not compute.joins:
        return None
    joins: list[str] = []
    current, alias = spec, BASE_ALIAS
    for i, step in enumerate(compute.joins, start=1):
        if not (step.entity and step.local_field and step.foreign_field):
            return None
        target = catalog.get(step.entity)
        if target is None or not target.is_queryable:
            return None
        local_col = physical_column(current, step.local_field)
        foreign_col = physical_column(target, step.foreign_field)
        if not local_col or not foreign_col:
            return None
        next_alias = f"j{i}"
        joins.append(
            f"LEFT JOIN {quote_ident(target.table)} {next_alias} "
            f"ON {column_expr(alias, local_col)} = {column_expr(next_alias, foreign_col)}"
        )
        current, alias = target, next_alias

    group_col = physical_column(current, compute.group_field)
    if not group_col:
        return None
    label_col = physical_column(current, compute.label_field) if compute.label_field else None
    order_col = physical_column(current, compute.order_field) if compute.order_field else None
    return GroupPlan(
        strategy="join",
        group_expr=column_expr(alias, group_col),
        joins=joins,
        label_expr=column_expr(alias, label_col) if label_col else None,
        order_expr=column_expr(alias, order_col) if order_col else None,
        backfill_target=group_by_field,
    )


def _assignment_plan(
    catalog: EntityCatalog, spec: EntitySpec, compute: ExternalAssignmentJoin, group_by_field: str,
) -> GroupPlan | None:
    via = catalog.get(compute.via_entity)
    target = catalog.get(compute.target_entity)
    if via is None or target is None or not via.is_queryable or not target.is_queryable:
        return None
    local_col = physical_column(spec, compute.local_field)
    via_key = physical_column(via, compute.via_key_field)
    via_value = physical_column(via, compute.via_value_field)
    target_key = physical_column(target, compute.target_key_field)
    label_col = physical_column(target, compute.label_field)
    if not (local_col and via_key and via_value and target_key and label_col):
        return None
    return GroupPlan(
        strategy="externalAssignmentJoin",
        group_expr=column_expr("a1", via_value),
        joins=[
            f"LEFT JOIN {quote_ident(via.table)} a1 "
            f"ON {column_expr(BASE_ALIAS, local_col)} = {column_expr('a1', via_key)}",
            f"LEFT JOIN {quote_ident(target.table)} a2 "
            f"ON {column_expr('a1', via_value)} = {column_expr('a2', target_key)}",
        ],
        label_expr=column_expr("a2", label_col),
        backfill_target=group_by_field,
    )


def resolve_group_field(
    catalog: EntityCatalog, spec: EntitySpec, group_by_field: str,
) -> GroupPlan:
    """Resolve ``group_by_field`` on ``spec`` or raise ``ResolutionError``."""
    direct = spec.fields.get(group_by_field)

    if direct is not None and not direct.virtual:
        col = spec.column_for(group_by_field)
        if col:
            return _stored_plan(catalog, col, "column", direct, direct.label_from_row)

    owner = _find_label_from_row_owner(spec, group_by_field)
    if owner is not None:
        return _stored_plan(
            catalog, spec.column_for(owner.key), "labelFromRow", owner, group_by_field,
        )

    plan = None
    compute = direct.compute if direct is not None and direct.virtual else None
    if isinstance(compute, LabelFrom):
        source = spec.fields.get(compute.source_field)
        col = spec.column_for(compute.source_field)
        if col:
            plan = _stored_plan(catalog, col, "labelFrom", source, group_by_field)
    elif isinstance(compute, Concat):
        plan = _concat_plan(spec, compute, group_by_field)
    elif isinstance(compute, Join):
        plan = _join_plan(catalog, spec, compute, group_by_field)
    elif isinstance(compute, ExternalAssignmentJoin):
        plan = _assignment_plan(catalog, spec, compute, group_by_field)

    if plan is None:
        raise ResolutionError(group_by_field)
    log.debug("Group field %s.%s resolved via %s", spec.key, group_by_field, plan.strategy)
    return plan
