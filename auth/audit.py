"""
auth/audit.py -- Append-only audit log for auth and enforcement events.

Audit is best-effort observability, not a transactional guarantee: record()
never raises. A failed insert is written to the application log with its
traceback and the caller's primary operation carries on. Callers must not
wrap record() in their own try/except or branch on its outcome.

Rows are only ever inserted. There is no update or delete method, and the
core services never read the log back; list_events() exists for the admin
API.

Layer rule: no imports from api/, tenancy/, enforcement/, or cache/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Column, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import AuditEvent, AuditEventType
from core.db import DEFAULT_TIMEOUT_SECONDS, make_engine, new_id, to_iso, utcnow

logger = logging.getLogger("storegate.audit")

_metadata = MetaData()

_audit_log = Table(
    "auth_audit_log",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("event_type", String(40), nullable=False, index=True),
    Column("identity_id", String(36), index=True),
    Column("performed_by", String(36)),
    Column("description", Text),
    Column("metadata", Text),  # JSON object serialized as text
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(40), nullable=False, index=True),
)


class AuditLog:
    """Write-mostly recorder shared by AuthService, SessionManager and EnforcementEngine.

    Usage:
        audit = AuditLog("sqlite:///:memory:")
        audit.record(AuditEventType.login, identity_id=user_id, description="User logged in")
    """

    def __init__(
        self,
        db_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        self._clock = clock
        _metadata.create_all(self.engine)

    def record(
        self,
        event_type: AuditEventType,
        identity_id: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        performed_by: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Append one event. Never raises."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_log.insert().values(
                        id=new_id(),
                        event_type=AuditEventType(event_type).value,
                        identity_id=identity_id,
                        performed_by=performed_by,
                        description=description,
                        metadata=json.dumps(metadata or {}, default=str),
                        ip_address=ip_address,
                        user_agent=user_agent,
                        created_at=to_iso(self._clock()),
                    )
                )
                conn.commit()
        except Exception:
            logger.exception("Audit write failed for event %s (identity=%s)", event_type, identity_id)

    def list_events(
        self,
        identity_id: str | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Newest-first read for administrators. Filters are ANDed."""
        query = _audit_log.select()
        if identity_id is not None:
            query = query.where(_audit_log.c.identity_id == identity_id)
        if event_type is not None:
            query = query.where(_audit_log.c.event_type == AuditEventType(event_type).value)
        query = query.order_by(_audit_log.c.created_at.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_event(row) -> AuditEvent:
    try:
        metadata = json.loads(row.metadata) if row.metadata else {}
    except ValueError:
        metadata = {}
    return AuditEvent(
        id=row.id,
        event_type=row.event_type,
        identity_id=row.identity_id,
        performed_by=row.performed_by,
        description=row.description,
        metadata=metadata,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
