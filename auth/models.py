"""
auth/models.py -- Domain dataclasses and closed enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes own the domain shape.

Enums subclass str so values round-trip through the database and JSON
without conversion, and so comparisons against raw column values work.

Layer rule: no imports from api/, tenancy/, enforcement/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    guest = "guest"
    retail = "retail"
    b2b_pending = "b2b_pending"
    b2b_approved = "b2b_approved"
    vip = "vip"
    sales_rep = "sales_rep"
    vendor = "vendor"
    admin = "admin"


class IdentityStatus(str, Enum):
    active = "active"
    suspended = "suspended"
    deleted = "deleted"


class AuditEventType(str, Enum):
    signup = "signup"
    login = "login"
    logout = "logout"
    login_failed = "login_failed"
    password_changed = "password_changed"
    password_reset_requested = "password_reset_requested"
    password_reset_completed = "password_reset_completed"
    email_verified = "email_verified"
    email_changed = "email_changed"
    role_assigned = "role_assigned"
    role_revoked = "role_revoked"
    role_changed = "role_changed"
    account_suspended = "account_suspended"
    account_reactivated = "account_reactivated"
    account_deleted = "account_deleted"
    session_created = "session_created"
    session_revoked = "session_revoked"
    approval_granted = "approval_granted"
    approval_denied = "approval_denied"
    # Written by the enforcement engine when it changes catalog state.
    subscription_expired = "subscription_expired"
    products_archived = "products_archived"
    promo_usage_recorded = "promo_usage_recorded"


class LoginFailure(str, Enum):
    """Typed negative outcome of AuthService.login()."""

    invalid_credentials = "invalid_credentials"
    account_locked = "account_locked"


@dataclass
class Identity:
    """A person known to the platform.

    email is always stored lower-cased; lookups lower-case their input too.
    Identities are never deleted -- status moves to "deleted" instead.
    """

    email: str
    id: str | None = None
    full_name: str | None = None
    status: str = IdentityStatus.active.value
    email_verified: bool = False
    email_verified_at: str | None = None
    login_count: int = 0
    last_login_at: str | None = None
    created_at: str | None = None


@dataclass
class Credential:
    """Salted password hash for one Identity.

    Replaced wholesale on password change. failed_attempts and locked_until
    are the only fields login touches.
    """

    identity_id: str
    password_hash: str
    password_salt: str
    id: str | None = None
    failed_attempts: int = 0
    locked_until: str | None = None  # ISO 8601
    must_change_password: bool = False
    password_changed_at: str | None = None


@dataclass
class Session:
    """An opaque bearer token bound to one Identity.

    Rows are never deleted: revocation flips revoked and records why, so the
    table doubles as an audit trail of every issued token.
    """

    identity_id: str
    token: str
    expires_at: str  # ISO 8601
    id: str | None = None
    issued_at: str | None = None
    last_activity_at: str | None = None
    revoked: bool = False
    revoked_at: str | None = None
    revoked_reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class RoleAssignment:
    """Append-only ledger entry. At most one row per identity is current and not revoked."""

    identity_id: str
    role: str
    id: str | None = None
    assigned_by: str | None = None
    assigned_at: str | None = None
    assigned_reason: str | None = None
    revoked: bool = False
    revoked_by: str | None = None
    revoked_at: str | None = None
    revoked_reason: str | None = None
    is_current: bool = True


@dataclass
class Profile:
    """Denormalized profile row owned by the storefront; only role is kept in sync here."""

    id: str
    email: str
    role: str
    full_name: str | None = None


@dataclass
class AuditEvent:
    """Immutable fact. Written by auth and enforcement, never updated or deleted."""

    event_type: str
    id: str | None = None
    identity_id: str | None = None
    performed_by: str | None = None
    description: str | None = None
    metadata: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None


@dataclass
class AuthenticatedUser:
    """An active Identity together with its current role.

    This is what every authenticated request sees. It is a read view, not a
    stored row: role comes from the role ledger at validation time.
    """

    id: str
    email: str
    role: Role
    status: str
    full_name: str | None = None
    email_verified: bool = False
    last_login_at: str | None = None

    @classmethod
    def from_identity(cls, identity: Identity, role: Role) -> "AuthenticatedUser":
        return cls(
            id=identity.id,
            email=identity.email,
            role=role,
            status=identity.status,
            full_name=identity.full_name,
            email_verified=identity.email_verified,
            last_login_at=identity.last_login_at,
        )


@dataclass
class AuthResult:
    """Successful signup or login: who, and the session that was issued."""

    user: AuthenticatedUser
    session: Session


@dataclass
class LoginResult:
    """Outcome of a login attempt. Exactly one of (user and session) or failure is set."""

    user: AuthenticatedUser | None = None
    session: Session | None = None
    failure: LoginFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.session is not None
