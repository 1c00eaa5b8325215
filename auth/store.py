"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_* functions are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Invariants enforced at the DB level:
  - auth_identities.email is UNIQUE (always stored lower-cased).
  - auth_credentials.identity_id is UNIQUE (one credential per identity).
  - auth_sessions.token is UNIQUE.
  - uq_role_current_per_identity: a partial unique index allowing at most one
    row per identity with is_current = 1 AND revoked = 0. RoleLedger also
    serialises writers per identity; the index is the backstop if two
    processes race.

Multi-row writes that must be all-or-nothing (account creation, role
replacement, credential replacement) run inside engine.begin() so a failure
rolls back every statement.

Layer rule: no imports from api/, tenancy/, enforcement/, or cache/.
"""

from __future__ import annotations

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, select, text
from sqlalchemy.engine import Engine

from auth.models import Credential, Identity, Profile, RoleAssignment, Session
from core.db import DEFAULT_TIMEOUT_SECONDS, make_engine, new_id, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "auth_identities",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("full_name", Text),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verified_at", String(40)),
    Column("login_count", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

_credentials = Table(
    "auth_credentials",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36), nullable=False, unique=True),
    Column("password_hash", String(64), nullable=False),
    Column("password_salt", String(64), nullable=False),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("must_change_password", Integer, nullable=False, server_default="0"),
    Column("password_changed_at", String(40)),
)

_sessions = Table(
    "auth_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36), nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("issued_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("last_activity_at", String(40)),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(40)),
    Column("revoked_reason", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
)

_role_assignments = Table(
    "auth_role_assignments",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("identity_id", String(36), nullable=False, index=True),
    Column("role", String(30), nullable=False),
    Column("assigned_by", String(36)),
    Column("assigned_at", String(40), nullable=False),
    Column("assigned_reason", Text),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_by", String(36)),
    Column("revoked_at", String(40)),
    Column("revoked_reason", Text),
    Column("is_current", Integer, nullable=False, server_default="1"),
)

Index(
    "uq_role_current_per_identity",
    _role_assignments.c.identity_id,
    unique=True,
    sqlite_where=text("is_current = 1 AND revoked = 0"),
    postgresql_where=text("is_current = 1 AND revoked = 0"),
)

_profiles = Table(
    "user_profiles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(320), nullable=False),
    Column("full_name", Text),
    Column("role", String(30), nullable=False, server_default="guest"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for identities, credentials, sessions, role assignments and profiles.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        identity_id = store.create_account(identity, credential, profile, first_role)
        session = store.get_session_by_token(token)
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        identity: Identity,
        credential: Credential,
        profile: Profile,
        role: RoleAssignment,
        session: Session | None = None,
    ) -> str:
        """Insert identity, credential, profile, first role and first session in one transaction.

        Raises sqlalchemy.exc.IntegrityError if the email already exists. On
        any error nothing is written. Returns the identity id.
        """
        identity_id = identity.id or new_id()
        now = to_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                _identities.insert().values(
                    id=identity_id,
                    email=identity.email.lower(),
                    full_name=identity.full_name,
                    status=identity.status,
                    email_verified=1 if identity.email_verified else 0,
                    login_count=identity.login_count,
                    created_at=identity.created_at or now,
                )
            )
            conn.execute(
                _credentials.insert().values(
                    id=credential.id or new_id(),
                    identity_id=identity_id,
                    password_hash=credential.password_hash,
                    password_salt=credential.password_salt,
                    failed_attempts=0,
                    must_change_password=1 if credential.must_change_password else 0,
                    password_changed_at=credential.password_changed_at or now,
                )
            )
            conn.execute(
                _profiles.insert().values(
                    id=identity_id,
                    email=profile.email.lower(),
                    full_name=profile.full_name,
                    role=profile.role,
                )
            )
            conn.execute(_role_assignments.insert().values(**_role_values(role, identity_id)))
            if session is not None:
                session.identity_id = identity_id
                session.id = session.id or new_id()
                conn.execute(_sessions.insert().values(**_session_values(session)))
        return identity_id

    def get_identity(self, identity_id: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_email(self, email: str, status: str | None = None) -> Identity | None:
        """Case-insensitive lookup. Pass status to restrict to e.g. active identities."""
        query = _identities.select().where(_identities.c.email == email.lower())
        if status is not None:
            query = query.where(_identities.c.status == status)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_identity(row) if row is not None else None

    def record_login(self, identity_id: str, at: str) -> None:
        """Bump login_count and stamp last_login_at in a single UPDATE."""
        with self.engine.connect() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(login_count=_identities.c.login_count + 1, last_login_at=at)
            )
            conn.commit()

    def set_identity_status(self, identity_id: str, status: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(status=status))
            conn.commit()
        return result.rowcount > 0

    def mark_email_verified(self, identity_id: str, at: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(email_verified=1, email_verified_at=at)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_credential(self, identity_id: str) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.identity_id == identity_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def increment_failed_attempts(self, credential_id: str) -> int:
        """Atomically add one to failed_attempts and return the new value.

        The increment is done in SQL (failed_attempts = failed_attempts + 1)
        so two concurrent wrong-password attempts both count.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.id == credential_id)
                .values(failed_attempts=_credentials.c.failed_attempts + 1)
            )
            value = conn.execute(
                select(_credentials.c.failed_attempts).where(_credentials.c.id == credential_id)
            ).scalar()
        return value or 0

    def reset_failed_attempts(self, credential_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_credentials.update().where(_credentials.c.id == credential_id).values(failed_attempts=0))
            conn.commit()

    def set_locked_until(self, identity_id: str, locked_until: str | None, reset_attempts: bool = False) -> bool:
        """Set or clear the lockout timestamp. reset_attempts also zeroes failed_attempts."""
        values: dict = {"locked_until": locked_until}
        if reset_attempts:
            values["failed_attempts"] = 0
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update().where(_credentials.c.identity_id == identity_id).values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def replace_credential(self, credential: Credential) -> str:
        """Delete the identity's credential row and insert the new one atomically."""
        credential_id = credential.id or new_id()
        with self.engine.begin() as conn:
            conn.execute(_credentials.delete().where(_credentials.c.identity_id == credential.identity_id))
            conn.execute(
                _credentials.insert().values(
                    id=credential_id,
                    identity_id=credential.identity_id,
                    password_hash=credential.password_hash,
                    password_salt=credential.password_salt,
                    failed_attempts=0,
                    locked_until=None,
                    must_change_password=1 if credential.must_change_password else 0,
                    password_changed_at=credential.password_changed_at or to_iso(utcnow()),
                )
            )
        return credential_id

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> str:
        session.id = session.id or new_id()
        with self.engine.connect() as conn:
            conn.execute(_sessions.insert().values(**_session_values(session)))
            conn.commit()
        return session.id

    def get_session_by_token(self, token: str) -> Session | None:
        """Exact token lookup, revoked or not. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, at: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_activity_at=at))
            conn.commit()

    def revoke_session(self, token: str, at: str, reason: str) -> bool:
        """Revoke one session. Returns False if the token is unknown or already revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token == token) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=at, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_sessions_for_identity(self, identity_id: str, at: str, reason: str) -> int:
        """Revoke every non-revoked session of an identity. Returns the number revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.identity_id == identity_id) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=at, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def list_sessions(self, identity_id: str, include_revoked: bool = False) -> list[Session]:
        """Sessions for an identity, newest first."""
        query = _sessions.select().where(_sessions.c.identity_id == identity_id)
        if not include_revoked:
            query = query.where(_sessions.c.revoked == 0)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_sessions.c.issued_at.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    def get_current_role_assignment(self, identity_id: str) -> RoleAssignment | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _role_assignments.select()
                .where(
                    (_role_assignments.c.identity_id == identity_id)
                    & (_role_assignments.c.is_current == 1)
                    & (_role_assignments.c.revoked == 0)
                )
                .order_by(_role_assignments.c.assigned_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_role_assignment(row) if row is not None else None

    def replace_current_role(
        self,
        assignment: RoleAssignment,
        revoked_by: str | None,
        revoked_at: str,
        revoked_reason: str,
    ) -> RoleAssignment:
        """Revoke the current role row (if any) and insert assignment, in one transaction.

        The UPDATE runs before the INSERT so the partial unique index never
        sees two current rows. Callers must hold the per-identity lock.
        """
        assignment.id = assignment.id or new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _role_assignments.update()
                .where(
                    (_role_assignments.c.identity_id == assignment.identity_id)
                    & (_role_assignments.c.is_current == 1)
                    & (_role_assignments.c.revoked == 0)
                )
                .values(
                    is_current=0,
                    revoked=1,
                    revoked_by=revoked_by,
                    revoked_at=revoked_at,
                    revoked_reason=revoked_reason,
                )
            )
            conn.execute(_role_assignments.insert().values(**_role_values(assignment, assignment.identity_id)))
        return assignment

    def list_role_assignments(self, identity_id: str) -> list[RoleAssignment]:
        """Full ledger for one identity, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _role_assignments.select()
                .where(_role_assignments.c.identity_id == identity_id)
                .order_by(_role_assignments.c.assigned_at.desc())
            ).fetchall()
        return [_row_to_role_assignment(r) for r in rows]

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, identity_id: str) -> Profile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.id == identity_id)).fetchone()
        if row is None:
            return None
        return Profile(id=row.id, email=row.email, full_name=row.full_name, role=row.role)

    def update_profile_role(self, identity_id: str, role: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_profiles.update().where(_profiles.c.id == identity_id).values(role=role))
            conn.commit()
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _role_values(role: RoleAssignment, identity_id: str) -> dict:
    return {
        "id": role.id or new_id(),
        "identity_id": identity_id,
        "role": role.role,
        "assigned_by": role.assigned_by,
        "assigned_at": role.assigned_at or to_iso(utcnow()),
        "assigned_reason": role.assigned_reason,
        "revoked": 1 if role.revoked else 0,
        "is_current": 1 if role.is_current else 0,
    }


def _session_values(session: Session) -> dict:
    issued_at = session.issued_at or to_iso(utcnow())
    return {
        "id": session.id,
        "identity_id": session.identity_id,
        "token": session.token,
        "issued_at": issued_at,
        "expires_at": session.expires_at,
        "last_activity_at": session.last_activity_at or issued_at,
        "revoked": 0,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
    }


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        status=row.status,
        email_verified=bool(row.email_verified),
        email_verified_at=row.email_verified_at,
        login_count=row.login_count or 0,
        last_login_at=row.last_login_at,
        created_at=row.created_at,
    )


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        identity_id=row.identity_id,
        password_hash=row.password_hash,
        password_salt=row.password_salt,
        failed_attempts=row.failed_attempts or 0,
        locked_until=row.locked_until,
        must_change_password=bool(row.must_change_password),
        password_changed_at=row.password_changed_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        identity_id=row.identity_id,
        token=row.token,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        last_activity_at=row.last_activity_at,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _row_to_role_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        id=row.id,
        identity_id=row.identity_id,
        role=row.role,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at,
        assigned_reason=row.assigned_reason,
        revoked=bool(row.revoked),
        revoked_by=row.revoked_by,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
        is_current=bool(row.is_current),
    )
