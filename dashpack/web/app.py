"""FastAPI application factory for the dashpack table-data API."""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import FastAPI

from .. import config
from ..views.engine import GroupMetaEngine
from ..views.registry import EntityCatalog, load_catalog

log = logging.getLogger(__name__)

Authorizer = Callable[[dict, str], bool]


def _allow_all(user: dict, action: str) -> bool:
    return True


def create_app(
    catalog: EntityCatalog | None = None,
    authorize: Authorizer | None = None,
) -> FastAPI:
    """Build the app around one entity catalog.

    ``authorize(user, action)`` decides the entity's ``require_action``
    check before a request reaches the engine; the default allows all.
    """
    app = FastAPI(title="dashpack")

    if catalog is None:
        catalog = load_catalog(config.CATALOG_PATH)
    app.state.catalog = catalog
    app.state.engine = GroupMetaEngine(catalog)
    app.state.authorize = authorize or _allow_all

    from .middleware import AuthMiddleware
    app.add_middleware(AuthMiddleware)

    from .routes import table_data
    app.include_router(table_data.router, prefix="/api")

    log.info("dashpack app ready with %d entities", len(catalog))
    return app
