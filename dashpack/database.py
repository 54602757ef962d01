"""SQLite connection management for the backing store."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from . import config

log = logging.getLogger(__name__)


def _db_path() -> Path:
    return config.DB_PATH


@contextmanager
def get_connection(
    db_path: Path | None = None, *, read_only: bool = False,
) -> Iterator[sqlite3.Connection]:
    """Yield a connection with ``sqlite3.Row`` rows.

    Grouping requests open it ``read_only`` (``mode=ro``): a missing file
    raises ``sqlite3.OperationalError`` instead of being created, and any
    write fails. Otherwise commits on clean exit and rolls back on exception.
    """
    path = Path(db_path or _db_path())
    if read_only:
        conn = sqlite3.connect(f"file:{path.as_posix()}?mode=ro", uri=True)
    else:
        conn = sqlite3.connect(str(path))
        conn.execute("PRAGMA foreign_keys=ON;")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if not read_only:
            conn.commit()
    except Exception:
        conn.rollback()
        log.debug("Rolled back connection to %s", path)
        raise
    finally:
        conn.close()
