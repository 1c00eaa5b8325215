"""
auth/service.py -- Auth Service: signup, login, logout, and account administration.

Orchestrates the Credential Store, Session Manager, Role Assignment Ledger and
Audit Log. It holds no state of its own beyond the collaborators passed in at
construction, so tests substitute any of them freely.

Outcome conventions:
  signup  -> AuthResult, or raises a ValidationError subclass.
  login   -> LoginResult whose failure is a LoginFailure member on rejection.
  others  -> bool / None for "did not happen".
  signup and login wrap store failures in ServiceUnavailableError so the
  caller can show "try again"; the administrative methods log and return
  False instead.

Timing: an unknown email still runs one hash so the response time of a
rejected login does not reveal whether the account exists.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.audit import AuditLog
from auth.credentials import generate_salt, hash_password, verify_password
from auth.errors import EmailAlreadyRegistered, InvalidSignupError, ServiceUnavailableError
from auth.models import (
    AuditEventType,
    AuthenticatedUser,
    AuthResult,
    Credential,
    Identity,
    IdentityStatus,
    LoginFailure,
    LoginResult,
    Profile,
    Role,
)
from auth.roles import RoleLedger
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.db import new_id, parse_iso, to_iso, utcnow

logger = logging.getLogger("storegate.auth")

DEFAULT_ROLE = Role.retail

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fixed salt for the timing-equalization hash on unknown emails.
_DUMMY_SALT = "0" * 32

_STATUS_EVENTS: dict[IdentityStatus, AuditEventType] = {
    IdentityStatus.active: AuditEventType.account_reactivated,
    IdentityStatus.suspended: AuditEventType.account_suspended,
    IdentityStatus.deleted: AuditEventType.account_deleted,
}


class AuthService:
    """Constructed once per process and shared across requests.

    Usage:
        service = AuthService(store, sessions, roles, audit)
        result = service.signup("a@example.com", "secret")
        login = service.login("a@example.com", "secret")
        if login.ok:
            user = service.validate_session(login.session.token)
    """

    def __init__(
        self,
        store: IdentityStore,
        sessions: SessionManager,
        roles: RoleLedger,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
        password_min_length: int = 1,
        lockout_threshold: int = 0,
        lockout_duration: timedelta = timedelta(minutes=15),
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._roles = roles
        self._audit = audit
        self._clock = clock
        self._password_min_length = max(1, password_min_length)
        self._lockout_threshold = lockout_threshold
        self._lockout_duration = lockout_duration

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    def signup(
        self,
        email: str,
        password: str,
        full_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise InvalidSignupError("A valid email address is required.")
        if not password or len(password) < self._password_min_length:
            raise InvalidSignupError(f"Password must be at least {self._password_min_length} characters.")

        try:
            if self._store.get_identity_by_email(email) is not None:
                raise EmailAlreadyRegistered(email)

            identity_id = new_id()
            now = to_iso(self._clock())
            salt = generate_salt()
            identity = Identity(
                id=identity_id,
                email=email,
                full_name=full_name or None,
                status=IdentityStatus.active.value,
                created_at=now,
            )
            credential = Credential(
                identity_id=identity_id,
                password_hash=hash_password(password, salt),
                password_salt=salt,
                password_changed_at=now,
            )
            profile = Profile(id=identity_id, email=email, full_name=full_name or None, role=DEFAULT_ROLE.value)
            first_role = self._roles.new_assignment(identity_id, DEFAULT_ROLE, reason="Default role at signup")
            session = self._sessions.new_session(identity_id, ip_address=ip_address, user_agent=user_agent)
            try:
                self._store.create_account(identity, credential, profile, first_role, session)
            except IntegrityError as exc:
                # Lost a race with a concurrent signup for the same email.
                raise EmailAlreadyRegistered(email) from exc

            self._audit.record(
                AuditEventType.signup,
                identity_id=identity_id,
                description="User account created",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self._sessions.record_created(session)
        except SQLAlchemyError as exc:
            logger.exception("Signup failed for %s", email)
            raise ServiceUnavailableError() from exc

        logger.info("New account %s created", identity_id)
        return AuthResult(user=AuthenticatedUser.from_identity(identity, DEFAULT_ROLE), session=session)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        email = (email or "").strip().lower()
        try:
            return self._login(email, password or "", ip_address, user_agent)
        except SQLAlchemyError as exc:
            logger.exception("Login failed for %s", email)
            raise ServiceUnavailableError() from exc

    def _login(self, email: str, password: str, ip_address: str | None, user_agent: str | None) -> LoginResult:
        identity = self._store.get_identity_by_email(email, status=IdentityStatus.active.value)
        if identity is None:
            hash_password(password, _DUMMY_SALT)
            self._audit.record(
                AuditEventType.login_failed,
                description=f"Failed login attempt for {email}",
                metadata={"reason": "user_not_found"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return LoginResult(failure=LoginFailure.invalid_credentials)

        credential = self._store.get_credential(identity.id)
        if credential is None:
            return LoginResult(failure=LoginFailure.invalid_credentials)

        now = self._clock()
        locked_until = parse_iso(credential.locked_until)
        if locked_until is not None and locked_until > now:
            self._audit.record(
                AuditEventType.login_failed,
                identity_id=identity.id,
                description="Login attempt on locked account",
                metadata={"reason": "account_locked"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return LoginResult(failure=LoginFailure.account_locked)

        if not verify_password(password, credential.password_salt, credential.password_hash):
            attempts = self._store.increment_failed_attempts(credential.id)
            metadata: dict = {"attempts": attempts}
            if self._lockout_threshold and attempts >= self._lockout_threshold:
                until = to_iso(now + self._lockout_duration)
                self._store.set_locked_until(identity.id, until)
                metadata["locked_until"] = until
                logger.warning("Account %s locked after %d failed attempts", identity.id, attempts)
            self._audit.record(
                AuditEventType.login_failed,
                identity_id=identity.id,
                description="Invalid password",
                metadata=metadata,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return LoginResult(failure=LoginFailure.invalid_credentials)

        self._store.reset_failed_attempts(credential.id)
        self._store.record_login(identity.id, to_iso(now))
        role = self._roles.current_role(identity.id)
        self._audit.record(
            AuditEventType.login,
            identity_id=identity.id,
            description="User logged in successfully",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session = self._sessions.create(identity.id, ip_address=ip_address, user_agent=user_agent)
        identity.login_count += 1
        identity.last_login_at = to_iso(now)
        return LoginResult(user=AuthenticatedUser.from_identity(identity, role), session=session)

    def logout(self, token: str) -> bool:
        """Revoke the session behind token. False when the token is unknown."""
        try:
            return self._sessions.revoke(token, "User logout", event_type=AuditEventType.logout)
        except SQLAlchemyError:
            logger.exception("Logout failed")
            return False

    def validate_session(self, token: str) -> AuthenticatedUser | None:
        """Identity for a live session token, or None. Store errors count as None."""
        try:
            return self._sessions.validate(token)
        except SQLAlchemyError:
            logger.exception("Session validation failed")
            return None

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def change_role(self, identity_id: str, new_role: Role, actor: str | None, reason: str | None = None) -> bool:
        """Replace the identity's current role and sync the profile copy.

        Raises ValueError for a role outside the Role enum.
        """
        new_role = Role(new_role)
        try:
            if self._store.get_identity(identity_id) is None:
                return False
            self._roles.assign(identity_id, new_role, actor=actor, reason=reason)
            self._store.update_profile_role(identity_id, new_role.value)
        except SQLAlchemyError:
            logger.exception("Role change to %s failed for %s", new_role.value, identity_id)
            return False
        self._audit.record(
            AuditEventType.role_changed,
            identity_id=identity_id,
            description=f"Role changed to {new_role.value}",
            metadata={"new_role": new_role.value, "reason": reason},
            performed_by=actor,
        )
        return True

    # ------------------------------------------------------------------
    # Account administration
    # ------------------------------------------------------------------

    def change_password(self, identity_id: str, current_password: str, new_password: str) -> bool:
        """Replace the credential after checking the current password.

        All sessions are revoked; the caller logs in again with the new
        password. Returns False on a wrong current password or store error.
        """
        if not new_password or len(new_password) < self._password_min_length:
            raise InvalidSignupError(f"Password must be at least {self._password_min_length} characters.")
        try:
            credential = self._store.get_credential(identity_id)
            if credential is None or not verify_password(
                current_password or "", credential.password_salt, credential.password_hash
            ):
                return False
            salt = generate_salt()
            self._store.replace_credential(
                Credential(
                    identity_id=identity_id,
                    password_hash=hash_password(new_password, salt),
                    password_salt=salt,
                    password_changed_at=to_iso(self._clock()),
                )
            )
            self._sessions.revoke_all(identity_id, "Password changed", performed_by=identity_id)
        except SQLAlchemyError:
            logger.exception("Password change failed for %s", identity_id)
            return False
        self._audit.record(AuditEventType.password_changed, identity_id=identity_id, description="Password changed")
        return True

    def set_status(
        self,
        identity_id: str,
        status: IdentityStatus,
        actor: str | None,
        reason: str | None = None,
    ) -> bool:
        """Suspend, reactivate or delete an identity. Suspend and delete end all sessions."""
        status = IdentityStatus(status)
        try:
            if not self._store.set_identity_status(identity_id, status.value):
                return False
            if status is not IdentityStatus.active:
                self._sessions.revoke_all(identity_id, f"Account {status.value}", performed_by=actor)
        except SQLAlchemyError:
            logger.exception("Status change to %s failed for %s", status.value, identity_id)
            return False
        self._audit.record(
            _STATUS_EVENTS[status],
            identity_id=identity_id,
            description=reason or f"Account {status.value}",
            performed_by=actor,
        )
        return True

    def verify_email(self, identity_id: str) -> bool:
        try:
            updated = self._store.mark_email_verified(identity_id, to_iso(self._clock()))
        except SQLAlchemyError:
            logger.exception("Email verification failed for %s", identity_id)
            return False
        if updated:
            self._audit.record(AuditEventType.email_verified, identity_id=identity_id, description="Email verified")
        return updated

    def unlock(self, identity_id: str, actor: str | None) -> bool:
        """Clear a lockout and the failed-attempt counter."""
        try:
            cleared = self._store.set_locked_until(identity_id, None, reset_attempts=True)
        except SQLAlchemyError:
            logger.exception("Unlock failed for %s", identity_id)
            return False
        if cleared:
            logger.info("Account %s unlocked by %s", identity_id, actor)
        return cleared

    def get_user(self, identity_id: str) -> AuthenticatedUser | None:
        """Read view of any identity (any status) with its current role."""
        identity = self._store.get_identity(identity_id)
        if identity is None:
            return None
        return AuthenticatedUser.from_identity(identity, self._roles.current_role(identity_id))
