# propflow/core/utils/db.py
"""Database failures the long-running loops back off on instead of exiting.

Covers both backends: psycopg errors from PostgreSQL, and SQLite lock
contention surfacing through aiosqlite.
"""

from __future__ import annotations

import sqlite3

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

SQLITE_BUSY_MARKERS = ('database is locked', 'database is busy')


def lost_connection(exc: DBAPIError) -> bool:
    """SQLAlchemy marks errors whose pooled connection was dropped or invalidated."""
    return bool(getattr(exc, 'connection_invalidated', False)) or bool(
        getattr(exc, 'is_disconnect', False)
    )


def is_sqlite_busy(exc: BaseException) -> bool:
    driver_exc = exc.orig if isinstance(exc, DBAPIError) else exc
    if not isinstance(driver_exc, sqlite3.OperationalError):
        return False
    message = str(driver_exc).lower()
    return any(marker in message for marker in SQLITE_BUSY_MARKERS)


def is_retryable_connection_error(exc: BaseException) -> bool:
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() if lost_connection(exc):
            return True
        case _:
            return is_sqlite_busy(exc)
