"""Entity catalog — declarative specifications of the groupable tables.

Each entity declares its backing table, its fields (stored or virtual),
its security requirements and an optional list of built-in saved views.
The catalog is built once by the host and handed to the engine; nothing
in it changes while a request is running.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

log = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Preference list for the human-readable column of a referenced entity
LABEL_FIELD_CANDIDATES = ("name", "title", "label", "code", "id")

# Preference list for the display-order column of a referenced entity
ORDER_FIELD_CANDIDATES = ("sortOrder", "order", "level")


def is_safe_ident(name: str) -> bool:
    """True for plain unquoted SQL identifiers."""
    return bool(name) and bool(_IDENT_RE.match(name))


def quote_ident(name: str) -> str:
    """Double-quote a validated identifier."""
    if not is_safe_ident(name):
        raise ValueError(f"Unsafe identifier: {name!r}")
    return f'"{name}"'


# -----------------------------------------------------------------------
# Compute strategies for virtual fields
# -----------------------------------------------------------------------

@dataclass(frozen=True)
class LabelFrom:
    """The field is the resolved label of another (stored) field."""

    source_field: str
    kind: str = "labelFrom"


@dataclass(frozen=True)
class Concat:
    """Store-side concatenation of several stored fields."""

    fields: tuple[str, ...]
    separator: str = " "
    kind: str = "concat"


@dataclass(frozen=True)
class JoinStep:
    """One LEFT JOIN hop: ``current.local_field = entity.foreign_field``."""

    entity: str
    local_field: str
    foreign_field: str


@dataclass(frozen=True)
class Join:
    """Value read from the last table of a chain of foreign-key joins."""

    joins: tuple[JoinStep, ...]
    group_field: str
    label_field: str | None = None
    order_field: str | None = None
    kind: str = "join"


@dataclass(frozen=True)
class ExternalAssignmentJoin:
    """Value read through an assignment table keyed by an external id.

    ``base.local_field = via.via_key_field`` links the row to its
    assignment, ``via.via_value_field`` is the group value and
    ``target.label_field`` (joined on ``target.target_key_field``) is the
    label. Used for org-hierarchy names (division, department, location)
    assigned per user e-mail.
    """

    via_entity: str
    local_field: str
    via_key_field: str
    via_value_field: str
    target_entity: str
    label_field: str = "name"
    target_key_field: str = "id"
    kind: str = "externalAssignmentJoin"


ComputeSpec = Union[LabelFrom, Concat, Join, ExternalAssignmentJoin]


# -----------------------------------------------------------------------
# Fields, entities, catalog
# -----------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    """A single field of an entity."""

    key: str
    label: str = ""
    type: str = "text"
    column: str | None = None  # physical column; defaults to the key
    virtual: bool = False
    compute: ComputeSpec | None = None
    option_source: str | None = None
    reference_entity: str | None = None
    label_from_row: str | None = None

    @property
    def column_name(self) -> str | None:
        if self.virtual:
            return None
        return self.column or self.key


@dataclass(frozen=True)
class StaticViewFilter:
    field: str
    operator: str
    value: object = None
    value_type: str | None = None


@dataclass(frozen=True)
class StaticView:
    """A built-in saved view shipped with the entity definition."""

    id: str
    name: str
    description: str | None = None
    is_default: bool = False
    sorting: tuple[dict, ...] = ()
    group_by: dict | None = None
    metadata: dict | None = None
    filters: tuple[StaticViewFilter, ...] = ()


@dataclass(frozen=True)
class EntitySpec:
    """Schema definition for one entity."""

    key: str
    table: str | None
    fields: dict[str, FieldSpec]
    table_id: str | None = None
    label: str = ""
    primary_key: str = "id"
    security: dict = field(default_factory=dict)
    views: tuple[StaticView, ...] = ()

    def column_for(self, field_key: str) -> str | None:
        """Physical column for a stored field key, or None."""
        fs = self.fields.get(field_key)
        if fs is None:
            return None
        col = fs.column_name
        return col if col and is_safe_ident(col) else None

    def has_column(self, field_key: str) -> bool:
        if field_key == self.primary_key:
            return True
        return self.column_for(field_key) is not None

    def column_map(self) -> dict[str, str]:
        """Stored field key → physical column."""
        out: dict[str, str] = {}
        for fk in self.fields:
            col = self.column_for(fk)
            if col:
                out[fk] = col
        return out

    @property
    def is_queryable(self) -> bool:
        """Backing table and primary key are usable SQL identifiers."""
        return bool(self.table) and is_safe_ident(self.table) and is_safe_ident(self.primary_key)

    @property
    def required_action(self) -> str | None:
        """Action the caller must hold to list this entity, if any."""
        listing = self.security.get("list") or {}
        authz = listing.get("authz") or {}
        action = authz.get("require_action") or authz.get("requireAction")
        return str(action) if action else None


class EntityCatalog:
    """Read-only lookup over entity specifications."""

    def __init__(self, entities: dict[str, EntitySpec] | None = None) -> None:
        self._entities: dict[str, EntitySpec] = dict(entities or {})

    def __contains__(self, entity_key: str) -> bool:
        return entity_key in self._entities

    def __iter__(self):
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)

    def get(self, entity_key: str) -> EntitySpec | None:
        return self._entities.get(entity_key)

    def resolve_entity_by_table_id(self, table_id: str) -> EntitySpec | None:
        table_id = (table_id or "").strip()
        if not table_id:
            return None
        for spec in self._entities.values():
            if spec.table_id and spec.table_id.strip() == table_id:
                return spec
        return None

    def resolve_option_source(self, source: str | None) -> str | None:
        """Map an option source (``ns.items``) to an entity key (``ns.item``)."""
        s = (source or "").strip()
        if not s:
            return None
        if s in self._entities:
            return s
        parts = s.split(".")
        if len(parts) != 2:
            return None
        ns, name = parts
        if name.endswith("ies"):
            name = name[:-3] + "y"
        elif name.endswith("s"):
            name = name[:-1]
        candidate = f"{ns}.{name}"
        return candidate if candidate in self._entities else None

    def label_field_for(self, entity_key: str) -> str:
        """First present field of LABEL_FIELD_CANDIDATES, else ``name``."""
        spec = self._entities.get(entity_key)
        if spec:
            for candidate in LABEL_FIELD_CANDIDATES:
                if candidate in spec.fields:
                    return candidate
        return "name"

    def table_ids(self) -> list[str]:
        return sorted(s.table_id for s in self._entities.values() if s.table_id)


# -----------------------------------------------------------------------
# Loading from plain dicts / JSON
# -----------------------------------------------------------------------

def _str_or_none(value) -> str | None:
    s = str(value).strip() if value is not None else ""
    return s or None


def _compute_from_dict(raw: dict | None) -> ComputeSpec | None:
    if not isinstance(raw, dict):
        return None
    kind = str(raw.get("kind") or "").strip()
    if kind == "labelFrom":
        source = _str_or_none(raw.get("sourceField"))
        return LabelFrom(source_field=source) if source else None
    if kind == "concat":
        keys = tuple(
            k.strip() for k in (raw.get("fields") or [])
            if isinstance(k, str) and k.strip()
        )
        sep = raw.get("separator")
        return Concat(fields=keys, separator=sep if isinstance(sep, str) else " ")
    if kind == "join":
        steps = []
        for j in raw.get("joins") or []:
            if not isinstance(j, dict):
                continue
            steps.append(JoinStep(
                entity=str(j.get("entity") or "").strip(),
                local_field=str(j.get("localField") or "").strip(),
                foreign_field=str(j.get("foreignField") or "").strip(),
            ))
        return Join(
            joins=tuple(steps),
            group_field=str(raw.get("groupField") or "").strip(),
            label_field=_str_or_none(raw.get("labelField")),
            order_field=_str_or_none(raw.get("orderField")),
        )
    if kind == "externalAssignmentJoin":
        return ExternalAssignmentJoin(
            via_entity=str(raw.get("viaEntity") or "").strip(),
            local_field=str(raw.get("localField") or "").strip(),
            via_key_field=str(raw.get("viaKeyField") or "").strip(),
            via_value_field=str(raw.get("viaValueField") or "").strip(),
            target_entity=str(raw.get("targetEntity") or "").strip(),
            label_field=_str_or_none(raw.get("labelField")) or "name",
            target_key_field=_str_or_none(raw.get("targetKeyField")) or "id",
        )
    log.debug("Ignoring unknown compute kind %r", kind)
    return None


def _field_from_dict(key: str, raw: dict) -> FieldSpec:
    reference = raw.get("reference") if isinstance(raw.get("reference"), dict) else {}
    storage = raw.get("storage") if isinstance(raw.get("storage"), dict) else {}
    virtual = raw.get("virtual") is True or str(storage.get("mode") or "").lower() == "virtual"
    return FieldSpec(
        key=key,
        label=str(raw.get("label") or ""),
        type=str(raw.get("type") or "text"),
        column=_str_or_none(raw.get("column")),
        virtual=virtual,
        compute=_compute_from_dict(raw.get("compute")),
        option_source=_str_or_none(raw.get("optionSource")),
        reference_entity=_str_or_none(reference.get("entityType")),
        label_from_row=_str_or_none(raw.get("labelFromRow") or reference.get("labelFromRow")),
    )


def _view_from_dict(raw: dict) -> StaticView | None:
    view_id = _str_or_none(raw.get("id"))
    name = _str_or_none(raw.get("name"))
    if not view_id or not name:
        return None
    filters = []
    for f in raw.get("filters") or []:
        if not isinstance(f, dict):
            continue
        fld = _str_or_none(f.get("field"))
        op = _str_or_none(f.get("operator"))
        if not fld or not op:
            continue
        filters.append(StaticViewFilter(
            field=fld, operator=op, value=f.get("value"),
            value_type=_str_or_none(f.get("valueType")),
        ))
    sorting = raw.get("sorting")
    desc = raw.get("description")
    return StaticView(
        id=view_id,
        name=name,
        description=None if desc is None else str(desc),
        is_default=bool(raw.get("isDefault")),
        sorting=tuple(s for s in sorting if isinstance(s, dict)) if isinstance(sorting, list) else (),
        group_by=raw.get("groupBy") if isinstance(raw.get("groupBy"), dict) else None,
        metadata=raw.get("metadata") if isinstance(raw.get("metadata"), dict) else None,
        filters=tuple(filters),
    )


def entity_from_dict(entity_key: str, raw: dict) -> EntitySpec:
    storage = raw.get("storage") if isinstance(raw.get("storage"), dict) else {}
    listing = raw.get("list") if isinstance(raw.get("list"), dict) else {}
    fields_raw = raw.get("fields") if isinstance(raw.get("fields"), dict) else {}
    fields = {
        str(k): _field_from_dict(str(k), v)
        for k, v in fields_raw.items() if isinstance(v, dict)
    }
    views = tuple(
        v for v in (_view_from_dict(r) for r in (raw.get("views") or []) if isinstance(r, dict))
        if v is not None
    )
    return EntitySpec(
        key=entity_key,
        table=_str_or_none(storage.get("table") or raw.get("table")),
        fields=fields,
        table_id=_str_or_none(listing.get("tableId") or raw.get("tableId")),
        label=str(raw.get("label") or ""),
        primary_key=_str_or_none(storage.get("primaryKey")) or "id",
        security=raw.get("security") if isinstance(raw.get("security"), dict) else {},
        views=views,
    )


def catalog_from_dict(raw: dict) -> EntityCatalog:
    """Build a catalog from ``{"entities": {key: spec, ...}}`` (or the bare map)."""
    entities_raw = raw.get("entities") if isinstance(raw.get("entities"), dict) else raw
    entities = {
        str(k): entity_from_dict(str(k), v)
        for k, v in entities_raw.items() if isinstance(v, dict)
    }
    return EntityCatalog(entities)


def load_catalog(path: Path | str) -> EntityCatalog:
    """Load a catalog from a JSON file; a missing file yields an empty catalog."""
    p = Path(path)
    if not p.exists():
        log.warning("Entity catalog %s not found; starting with no entities", p)
        return EntityCatalog()
    catalog = catalog_from_dict(json.loads(p.read_text()))
    log.info("Loaded %d entities from %s", len(catalog), p)
    return catalog
