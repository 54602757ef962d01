"""Table-data JSON routes (/api/table-data/...)."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ...database import get_connection
from ...views.engine import GroupMetaEngine, GroupMetaRequest, query_grouped_table
from ...views.errors import GroupMetaError, StoreError
from ...views.static_views import apply_saved_view, get_static_view, get_static_views_for_table

log = logging.getLogger(__name__)

router = APIRouter()


def _json_error(message: str, status: int = 400) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _user(request: Request) -> dict | None:
    return getattr(request.state, "user", None)


def _engine(request: Request) -> GroupMetaEngine:
    return request.app.state.engine


async def _read_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _prepare(request: Request, user: dict, body: dict) -> GroupMetaRequest:
    """Turn a request body into an authorized engine request.

    Raises GroupMetaError subclasses; returns the request ready to run.
    """
    engine = _engine(request)
    req = replace(GroupMetaRequest.from_dict(body), caller_id=user.get("id") or None)

    view_id = body.get("viewId")
    view_id = view_id.strip() if isinstance(view_id, str) else ""
    if view_id:
        found = get_static_view(engine.catalog, view_id)
        if found is None:
            raise GroupMetaError("View not found", status=404)
        table_id, view = found
        req = apply_saved_view(req, table_id, view, explicit_filter_mode=bool(body.get("filterMode")))

    spec = engine.check_request(req)
    action = spec.required_action
    if action and not request.app.state.authorize(user, action):
        log.info("Denied %s on %s for %s", action, spec.key, user.get("id"))
        raise GroupMetaError("Forbidden", status=403)
    return req


def _run(engine: GroupMetaEngine, req: GroupMetaRequest, flatten: bool) -> dict:
    try:
        with get_connection(read_only=True) as conn:
            if flatten:
                return query_grouped_table(engine, conn, req)
            return engine.build_group_meta(conn, req)
    except sqlite3.Error as exc:
        raise StoreError(f"Store unavailable: {exc}") from exc


async def _handle(request: Request, flatten: bool) -> JSONResponse:
    user = _user(request)
    if not user:
        return _json_error("Unauthorized", 401)
    body = await _read_body(request)
    if body is None:
        return _json_error("Invalid JSON body", 400)
    try:
        req = _prepare(request, user, body)
        result = await run_in_threadpool(_run, _engine(request), req, flatten)
    except GroupMetaError as exc:
        return _json_error(exc.message, exc.status)
    if flatten:
        result["viewId"] = body.get("viewId") or None
    return JSONResponse(result)


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------

@router.get("/health")
def health():
    return {"status": "ok"}


# ------------------------------------------------------------------
# Grouping
# ------------------------------------------------------------------

@router.post("/table-data/group-meta")
async def group_meta(request: Request):
    """Group counts and order (and optionally rows) for a table."""
    return await _handle(request, flatten=False)


@router.post("/table-data/query")
async def table_data_query(request: Request):
    """Grouped table query: every group's rows flattened into ``items``."""
    return await _handle(request, flatten=True)


# ------------------------------------------------------------------
# Built-in views
# ------------------------------------------------------------------

@router.get("/table-views/static")
def static_views(request: Request, table_id: str = Query("", alias="tableId")):
    if not _user(request):
        return _json_error("Unauthorized", 401)
    table_id = table_id.strip()
    if not table_id:
        return _json_error("Missing tableId", 400)
    return {"items": get_static_views_for_table(_engine(request).catalog, table_id)}
