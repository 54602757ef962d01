"""Errors raised by the grouping engine.

Every error carries the HTTP-like ``status`` the transport layer should
answer with. None of them are retried.
"""

from __future__ import annotations


class GroupMetaError(Exception):
    """Base class for request-terminating engine failures."""

    status = 500

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class InputError(GroupMetaError):
    """The request is missing something it needs (tableId, groupBy.field)."""

    status = 400


class NotFoundError(GroupMetaError):
    """Unknown tableId (404) or an entity with no backing table (500)."""

    status = 404


class ResolutionError(GroupMetaError):
    """The group-by field could not be resolved by any strategy."""

    status = 400

    def __init__(self, field_key: str) -> None:
        super().__init__(f"Unknown groupBy field: {field_key}")
        self.field_key = field_key


class StoreError(GroupMetaError):
    """A store round-trip failed; wraps the driver exception."""

    status = 500
