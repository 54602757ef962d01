"""Configuration loading from environment variables and defaults."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

log = logging.getLogger(__name__)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_int(key: str, default: int) -> int:
    raw = _env(key, str(default))
    try:
        return int(raw)
    except ValueError:
        log.warning("Invalid %s %r, falling back to %d", key, raw, default)
        return default


# Database
DB_PATH = Path(_env("DASHPACK_DB_PATH", "") or str(_PROJECT_ROOT / "data" / "dashpack.db"))

# Entity catalog (JSON document with an "entities" map)
CATALOG_PATH = Path(_env("DASHPACK_CATALOG_PATH", "") or str(_PROJECT_ROOT / "data" / "catalog.json"))

# Per-group row page: default and hard cap
MAX_GROUP_PAGE_SIZE = 10000
GROUP_PAGE_SIZE = min(MAX_GROUP_PAGE_SIZE, max(1, _env_int("DASHPACK_GROUP_PAGE_SIZE", MAX_GROUP_PAGE_SIZE)))

# Authentication (host middleware populates request.state.user when enabled)
AUTH_ENABLED = _env("DASHPACK_AUTH_ENABLED", "false").lower() in ("true", "1", "yes")

# Logging
LOG_LEVEL = _env("DASHPACK_LOG_LEVEL", "INFO").upper()
