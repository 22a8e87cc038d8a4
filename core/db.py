"""
core/db.py -- Engine construction and driver-error classification.

Both stores (auth/store.py and sites/store.py) build their engines here so the
SQLite tuning lives in one place:

  WAL journal mode: readers proceed without blocking during writes. Set per
  connection because SQLite PRAGMAs are not inherited by new pool connections.

  check_same_thread=False: FastAPI runs sync route handlers in a thread pool,
  so one pooled connection may be used from several threads over its life.

Unique-violation detection reads the DBAPI error's structured code instead of
its message text:
  PostgreSQL (psycopg 3 / psycopg2): SQLSTATE 23505
  SQLite (Python 3.11+):             SQLITE_CONSTRAINT_UNIQUE / _PRIMARYKEY

Layer rule: core/ is the kernel. No imports from api/, auth/, or sites/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

_PG_UNIQUE_VIOLATION = "23505"
_SQLITE_UNIQUE_ERRORS = frozenset({"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"})


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url with SQLite tuning applied when relevant."""
    connect_args: dict = {}
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
    # Bound values (OAuth tokens among them) must never appear in error text.
    engine = create_engine(db_url, connect_args=connect_args, hide_parameters=True)
    if is_sqlite:
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def is_unique_violation(exc: IntegrityError) -> bool:
    """Return True if exc was raised by a unique constraint or unique index."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate == _PG_UNIQUE_VIOLATION
    return getattr(orig, "sqlite_errorname", None) in _SQLITE_UNIQUE_ERRORS


def error_detail(exc: Exception) -> str:
    """Driver message for exc without the SQL statement or bound parameters."""
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else type(exc).__name__


def constraint_name(exc: IntegrityError) -> str | None:
    """Best-effort name of the violated constraint (PostgreSQL only)."""
    diag = getattr(exc.orig, "diag", None)
    return getattr(diag, "constraint_name", None)


# ---------------------------------------------------------------------------
# Timestamps -- stored as ISO 8601 UTC strings, same as every other column
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as an ISO 8601 UTC string.

    Naive datetimes are treated as UTC. Normalizing the offset keeps the
    lexicographic order of stored strings equal to chronological order, which
    the expiry sweep relies on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp. Returns None for NULL or malformed values."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
