"""
auth/sessions.py -- Session Manager: issue, validate, and revoke opaque tokens.

Lifecycle per session:

    Active --(expires_at passes)--> Expired
    Active --(revoke)-------------> Revoked

Neither Expired nor Revoked has a way back. Rows are never deleted.

validate() is on the hot path of every authenticated request. It returns
None for anything that is not a live session of an active identity; callers
treat None as "unauthenticated", never as an error to retry.

The last_activity_at stamp is best-effort. With an executor injected (the API
wires a small ThreadPoolExecutor) the write happens off the request thread;
without one it runs inline. Either way a failure is logged and does not
affect the validation result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Executor
from datetime import datetime, timedelta

from auth.audit import AuditLog
from auth.credentials import generate_token
from auth.models import AuditEventType, AuthenticatedUser, IdentityStatus, Session
from auth.roles import RoleLedger
from auth.store import IdentityStore
from core.db import parse_iso, to_iso, utcnow

logger = logging.getLogger("storegate.sessions")

DEFAULT_SESSION_HOURS = 24 * 7


class SessionManager:
    def __init__(
        self,
        store: IdentityStore,
        roles: RoleLedger,
        audit: AuditLog,
        duration: timedelta = timedelta(hours=DEFAULT_SESSION_HOURS),
        clock: Callable[[], datetime] = utcnow,
        executor: Executor | None = None,
    ) -> None:
        self._store = store
        self._roles = roles
        self._audit = audit
        self._duration = duration
        self._clock = clock
        self._executor = executor

    def create(self, identity_id: str, ip_address: str | None = None, user_agent: str | None = None) -> Session:
        """Issue a new session. Existing sessions for the identity stay valid."""
        session = self.new_session(identity_id, ip_address=ip_address, user_agent=user_agent)
        session.id = self._store.create_session(session)
        self.record_created(session)
        return session

    def new_session(self, identity_id: str, ip_address: str | None = None, user_agent: str | None = None) -> Session:
        """An unsaved session for callers that persist it in their own transaction (signup)."""
        now = self._clock()
        return Session(
            identity_id=identity_id,
            token=generate_token(),
            issued_at=to_iso(now),
            expires_at=to_iso(now + self._duration),
            last_activity_at=to_iso(now),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def record_created(self, session: Session) -> None:
        self._audit.record(
            AuditEventType.session_created,
            identity_id=session.identity_id,
            description="New session created",
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )

    def validate(self, token: str) -> AuthenticatedUser | None:
        """Return the session's user if the token is live, else None."""
        if not token:
            return None
        session = self._store.get_session_by_token(token)
        if session is None:
            return None
        now = self._clock()
        expires_at = parse_iso(session.expires_at)
        expired = expires_at is None or expires_at < now
        if expired or session.revoked:
            return None

        identity = self._store.get_identity(session.identity_id)
        if identity is None or identity.status != IdentityStatus.active.value:
            return None

        self._schedule_touch(session.id, to_iso(now))
        return AuthenticatedUser.from_identity(identity, self._roles.current_role(identity.id))

    def get(self, token: str) -> Session | None:
        """Raw session row for a token, whatever its state."""
        return self._store.get_session_by_token(token)

    def revoke(
        self,
        token: str,
        reason: str,
        event_type: AuditEventType = AuditEventType.session_revoked,
        performed_by: str | None = None,
    ) -> bool:
        """Revoke a session. Idempotent: an already revoked token returns True unchanged.

        Returns False only when the token is unknown.
        """
        session = self._store.get_session_by_token(token)
        if session is None:
            return False
        if session.revoked:
            return True
        if self._store.revoke_session(token, to_iso(self._clock()), reason):
            self._audit.record(
                event_type,
                identity_id=session.identity_id,
                description=reason,
                performed_by=performed_by,
            )
        return True

    def revoke_all(self, identity_id: str, reason: str, performed_by: str | None = None) -> int:
        """Revoke every live session of an identity. Returns how many were revoked."""
        count = self._store.revoke_sessions_for_identity(identity_id, to_iso(self._clock()), reason)
        if count:
            self._audit.record(
                AuditEventType.session_revoked,
                identity_id=identity_id,
                description=reason,
                metadata={"sessions": count},
                performed_by=performed_by,
            )
        return count

    def list_active(self, identity_id: str) -> list[Session]:
        """Non-revoked, unexpired sessions, newest first."""
        now = self._clock()
        live = []
        for session in self._store.list_sessions(identity_id):
            expires_at = parse_iso(session.expires_at)
            if expires_at is not None and expires_at >= now:
                live.append(session)
        return live

    # ------------------------------------------------------------------
    # Activity tracking
    # ------------------------------------------------------------------

    def _schedule_touch(self, session_id: str, at: str) -> None:
        if self._executor is None:
            self._touch(session_id, at)
            return
        try:
            self._executor.submit(self._touch, session_id, at)
        except RuntimeError:
            # Executor already shut down (process is stopping).
            logger.debug("Skipped activity update for session %s", session_id)

    def _touch(self, session_id: str, at: str) -> None:
        try:
            self._store.touch_session(session_id, at)
        except Exception:
            logger.warning("Could not record activity for session %s", session_id, exc_info=True)
