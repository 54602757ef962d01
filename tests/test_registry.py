"""Tests for the entity catalog and its loaders."""

from __future__ import annotations

import json

import pytest

from dashpack.views.registry import (
    Concat,
    EntityCatalog,
    ExternalAssignmentJoin,
    Join,
    LabelFrom,
    catalog_from_dict,
    entity_from_dict,
    is_safe_ident,
    load_catalog,
    quote_ident,
)


class TestIdentifiers:
    @pytest.mark.parametrize("name", ["id", "owner_id", "sortOrder", "_x1"])
    def test_safe(self, name):
        assert is_safe_ident(name)
        assert quote_ident(name) == f'"{name}"'

    @pytest.mark.parametrize("name", ["", "1abc", "a-b", 'x"; DROP TABLE t; --', "a b"])
    def test_unsafe(self, name):
        assert not is_safe_ident(name)
        with pytest.raises(ValueError):
            quote_ident(name)


class TestEntityLoading:
    def test_fields_and_columns(self, catalog):
        spec = catalog.get("crm.task")
        assert spec.table == "tasks"
        assert spec.table_id == "crm.tasks"
        assert spec.column_for("ownerId") == "owner_id"
        assert spec.column_for("title") == "title"
        assert spec.column_for("ownerName") is None
        assert spec.column_for("departmentRank") is None
        assert spec.has_column("id")
        assert "ownerName" not in spec.column_map()

    def test_reference_metadata(self, catalog):
        fs = catalog.get("crm.task").fields["departmentId"]
        assert fs.reference_entity == "crm.department"
        assert fs.label_from_row == "departmentName"

    def test_compute_kinds(self, catalog):
        task = catalog.get("crm.task")
        emp = catalog.get("hrm.employee")
        assert task.fields["ownerName"].compute == LabelFrom(source_field="ownerId")
        assert emp.fields["fullName"].compute == Concat(fields=("firstName", "lastName"), separator=" ")
        rank = task.fields["departmentRank"].compute
        assert isinstance(rank, Join)
        assert rank.joins[0].local_field == "departmentId"
        assert rank.order_field == "sortOrder"
        div = emp.fields["divisionName"].compute
        assert isinstance(div, ExternalAssignmentJoin)
        assert (div.label_field, div.target_key_field) == ("name", "id")
        assert emp.fields["badVirtual"].compute is None

    def test_unsafe_column_is_not_stored(self):
        spec = entity_from_dict("x.y", {
            "storage": {"table": "ys"},
            "fields": {"bad": {"column": "a-b"}},
        })
        assert spec.column_for("bad") is None

    def test_primary_key_override(self):
        spec = entity_from_dict("x.y", {"storage": {"table": "ys", "primaryKey": "key"}, "fields": {}})
        assert spec.primary_key == "key"

    def test_required_action(self, catalog):
        assert catalog.get("crm.task").required_action == "crm.tasks.read"
        assert catalog.get("hrm.employee").required_action is None

    def test_views(self, catalog):
        views = catalog.get("crm.task").views
        assert [v.id for v in views] == ["crm.tasks.mine", "crm.tasks.open"]
        open_view = views[1]
        assert open_view.is_default
        assert open_view.group_by == {"field": "region"}
        assert open_view.filters[1].value_type == "number"

    def test_view_without_name_is_dropped(self):
        spec = entity_from_dict("x.y", {"views": [{"id": "v1"}, {"id": "v2", "name": "Two"}]})
        assert [v.id for v in spec.views] == ["v2"]


class TestCatalogLookups:
    def test_table_ids(self, catalog):
        assert catalog.table_ids() == ["crm.tasks", "hrm.employees", "misc.unbacked"]
        assert catalog.resolve_entity_by_table_id(" hrm.employees ").key == "hrm.employee"
        assert catalog.resolve_entity_by_table_id("nope") is None

    @pytest.mark.parametrize("source,expected", [
        ("crm.users", "crm.user"),
        ("crm.user", "crm.user"),
        ("crm.departments", "crm.department"),
        ("crm.nothings", None),
        ("users", None),
        ("", None),
    ])
    def test_option_source(self, catalog, source, expected):
        assert catalog.resolve_option_source(source) == expected

    def test_ies_plural(self):
        cat = catalog_from_dict({"crm.category": {"storage": {"table": "categories"}}})
        assert cat.resolve_option_source("crm.categories") == "crm.category"

    def test_label_field(self, catalog):
        assert catalog.label_field_for("crm.user") == "name"
        assert catalog.label_field_for("hrm.orgAssignment") == "id"
        assert catalog.label_field_for("nope") == "name"

    def test_bare_map(self):
        cat = catalog_from_dict({"a.b": {"storage": {"table": "bs"}}})
        assert "a.b" in cat
        assert len(cat) == 1


class TestLoadCatalog:
    def test_missing_file(self, tmp_path):
        cat = load_catalog(tmp_path / "none.json")
        assert isinstance(cat, EntityCatalog)
        assert len(cat) == 0

    def test_json_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({"entities": {"a.b": {"list": {"tableId": "a.bs"}}}}))
        cat = load_catalog(path)
        assert cat.table_ids() == ["a.bs"]
