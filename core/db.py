"""
core/db.py -- Shared SQLAlchemy engine factory and timestamp helpers.

Every store (auth/store.py, auth/audit.py, tenancy/store.py,
enforcement/store.py) builds its engine here so the connection policy is the
same everywhere:

  - SQLite: check_same_thread=False (FastAPI runs sync handlers in a thread
    pool), WAL journal mode, and a busy timeout.
  - Other drivers: connect_timeout.
  - pool_timeout on pooled engines, so a saturated pool raises instead of
    hanging the request.

A store call that exceeds the timeout raises an SQLAlchemyError. Callers on
the enforcement path catch it and fail closed.

Timestamps are stored as ISO 8601 UTC strings (same convention as the rest of
the schema). parse_iso() treats naive values as UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

DEFAULT_TIMEOUT_SECONDS = 5.0


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently keep their own
    journal mode.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def make_engine(db_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Engine:
    """Create an engine with bounded waits for the given URL."""
    connect_args: dict = {}
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        connect_args["connect_timeout"] = max(1, int(timeout))
    if not _is_memory_sqlite(db_url):
        kwargs["pool_timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Time and identifiers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return as_utc(dt).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp. Returns None for empty or malformed values.

    A trailing "Z" is read as UTC. Naive values are taken to be UTC.
    """
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return str(uuid.uuid4())
