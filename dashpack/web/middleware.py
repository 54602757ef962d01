"""Request identity for the dashpack web layer."""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .. import config

log = logging.getLogger(__name__)

# Stand-in caller when the host runs without authentication (local dev, tests)
LOCAL_USER = {
    "id": "local-admin",
    "email": "admin@localhost",
    "name": "Admin",
    "roles": ["admin"],
}


class AuthMiddleware(BaseHTTPMiddleware):
    """Ensure ``request.state.user`` is set before the routes run.

    With auth enabled the host's own session middleware (mounted outside
    this one) is expected to have populated it; a missing user stays None
    and the routes answer 401.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        if not config.AUTH_ENABLED:
            request.state.user = dict(LOCAL_USER)
        elif not getattr(request.state, "user", None):
            request.state.user = None
        return await call_next(request)
