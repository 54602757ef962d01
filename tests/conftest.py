"""Shared fixtures: a synthetic entity catalog over a small SQLite schema."""

from __future__ import annotations

import json
import sqlite3

import pytest

from dashpack.database import get_connection
from dashpack.views.registry import catalog_from_dict

_SCHEMA_SQL = """\
CREATE TABLE users (
    id    TEXT PRIMARY KEY,
    name  TEXT,
    email TEXT
);

CREATE TABLE departments (
    id          TEXT PRIMARY KEY,
    name        TEXT,
    "sortOrder" INTEGER
);

CREATE TABLE divisions (
    id   TEXT PRIMARY KEY,
    name TEXT
);

CREATE TABLE org_assignments (
    id          TEXT PRIMARY KEY,
    user_key    TEXT,
    division_id TEXT
);

CREATE TABLE tasks (
    id            TEXT PRIMARY KEY,
    title         TEXT,
    status        TEXT,
    region        TEXT,
    owner_id      TEXT,
    department_id TEXT,
    priority      INTEGER,
    due_date      TEXT,
    is_done       INTEGER DEFAULT 0
);

CREATE TABLE employees (
    id         TEXT PRIMARY KEY,
    first_name TEXT,
    last_name  TEXT,
    user_email TEXT
);
"""

CATALOG = {
    "entities": {
        "crm.user": {
            "storage": {"table": "users"},
            "fields": {
                "id": {"type": "text"},
                "name": {"type": "text"},
                "email": {"type": "text"},
            },
        },
        "crm.department": {
            "storage": {"table": "departments"},
            "fields": {
                "id": {"type": "text"},
                "name": {"type": "text"},
                "sortOrder": {"type": "number"},
            },
        },
        "hrm.division": {
            "storage": {"table": "divisions"},
            "fields": {"id": {}, "name": {}},
        },
        "hrm.orgAssignment": {
            "storage": {"table": "org_assignments"},
            "fields": {
                "id": {},
                "userKey": {"column": "user_key"},
                "divisionId": {"column": "division_id"},
            },
        },
        "crm.task": {
            "list": {"tableId": "crm.tasks"},
            "storage": {"table": "tasks"},
            "security": {"list": {"authz": {"require_action": "crm.tasks.read"}}},
            "fields": {
                "title": {"type": "text"},
                "status": {"type": "select"},
                "region": {"type": "text"},
                "ownerId": {"column": "owner_id", "optionSource": "crm.users"},
                "ownerName": {
                    "virtual": True,
                    "compute": {"kind": "labelFrom", "sourceField": "ownerId"},
                },
                "departmentId": {
                    "column": "department_id",
                    "reference": {"entityType": "crm.department", "labelFromRow": "departmentName"},
                },
                "departmentRank": {
                    "storage": {"mode": "virtual"},
                    "compute": {
                        "kind": "join",
                        "joins": [
                            {"entity": "crm.department", "localField": "departmentId", "foreignField": "id"},
                        ],
                        "groupField": "id",
                        "labelField": "name",
                        "orderField": "sortOrder",
                    },
                },
                "priority": {"type": "number"},
                "dueDate": {"column": "due_date", "type": "date"},
                "isDone": {"column": "is_done", "type": "boolean"},
            },
            "views": [
                {
                    "id": "crm.tasks.mine",
                    "name": "My tasks",
                    "filters": [
                        {"field": "ownerId", "operator": "equals", "value": "__current_user__"},
                    ],
                    "metadata": {"filterMode": "any"},
                },
                {
                    "id": "crm.tasks.open",
                    "name": "Open tasks",
                    "isDefault": True,
                    "sorting": [{"id": "title", "desc": True}],
                    "groupBy": {"field": "region"},
                    "filters": [
                        {"field": "status", "operator": "equals", "value": "active"},
                        {"field": "priority", "operator": "lessThan", "value": "3", "valueType": "number"},
                    ],
                },
            ],
        },
        "hrm.employee": {
            "list": {"tableId": "hrm.employees"},
            "storage": {"table": "employees"},
            "fields": {
                "firstName": {"column": "first_name"},
                "lastName": {"column": "last_name"},
                "userEmail": {"column": "user_email"},
                "fullName": {
                    "virtual": True,
                    "compute": {"kind": "concat", "fields": ["firstName", "lastName"], "separator": " "},
                },
                "divisionName": {
                    "virtual": True,
                    "compute": {
                        "kind": "externalAssignmentJoin",
                        "viaEntity": "hrm.orgAssignment",
                        "localField": "userEmail",
                        "viaKeyField": "userKey",
                        "viaValueField": "divisionId",
                        "targetEntity": "hrm.division",
                    },
                },
                "badVirtual": {"virtual": True},
            },
        },
        "misc.unbacked": {
            "list": {"tableId": "misc.unbacked"},
            "fields": {"name": {}},
        },
    },
}


def _seed(conn: sqlite3.Connection) -> None:
    conn.executemany(
        "INSERT INTO users (id, name, email) VALUES (?, ?, ?)",
        [
            ("u1", "Alice", "alice@example.com"),
            ("u2", "Bob", "bob@example.com"),
            ("u3", "Alice", "alice.b@example.com"),
        ],
    )
    conn.executemany(
        'INSERT INTO departments (id, name, "sortOrder") VALUES (?, ?, ?)',
        [("d1", "Engineering", 2), ("d2", "Sales", 1), ("d3", "Support", None)],
    )
    conn.executemany(
        "INSERT INTO tasks (id, title, status, region, owner_id, department_id, priority, due_date, is_done) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        [
            ("t1", "Alpha", "active", "East", "u1", "d2", 3, "2026-01-10", 0),
            ("t2", "Bravo", "active", "West", "u1", "d1", 1, "2026-02-15", 1),
            ("t3", "Charlie", "inactive", "East", "u2", "d1", 2, "2026-03-01", 0),
            ("t4", "Delta", "active", "East", "u3", None, 5, None, 0),
            ("t5", "Echo", "active", None, "u9", "d3", 1, "2026-01-20", 1),
            ("t6", "Foxtrot", "inactive", "West", None, "d2", 4, "2026-04-30", 0),
        ],
    )
    conn.executemany(
        "INSERT INTO divisions (id, name) VALUES (?, ?)",
        [("div1", "Research"), ("div2", "Operations")],
    )
    conn.executemany(
        "INSERT INTO org_assignments (id, user_key, division_id) VALUES (?, ?, ?)",
        [
            ("a1", "ada@example.com", "div1"),
            ("a2", "alan@example.com", "div2"),
            ("a3", "ada2@example.com", "div1"),
        ],
    )
    conn.executemany(
        "INSERT INTO employees (id, first_name, last_name, user_email) VALUES (?, ?, ?, ?)",
        [
            ("e1", "Ada", "Lovelace", "ada@example.com"),
            ("e2", "Alan", "Turing", "alan@example.com"),
            ("e3", "Ada", "Lovelace", "ada2@example.com"),
            ("e4", "Grace", None, "grace@example.com"),
        ],
    )


@pytest.fixture()
def catalog():
    return catalog_from_dict(CATALOG)


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    db_file = tmp_path / "test.db"
    monkeypatch.setattr("dashpack.config.DB_PATH", db_file)
    monkeypatch.setattr("dashpack.config.AUTH_ENABLED", False)
    with get_connection(db_file) as conn:
        conn.executescript(_SCHEMA_SQL)
        _seed(conn)
    return db_file


@pytest.fixture()
def conn(tmp_db):
    with get_connection(tmp_db) as c:
        yield c


@pytest.fixture()
def catalog_file(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(CATALOG))
    return path
