"""Unit tests for auth/service.py -- signup, login, logout and account administration.

Covers:
- the end-to-end scenario: signup, login, failed login, logout, validate
- signup validation and duplicate email handling
- failed_attempts increments by one per wrong password and resets on success
- a locked account fails as account_locked without touching failed_attempts
- the optional lockout threshold
- store failures surface as ServiceUnavailableError
- change_role, change_password, set_status, verify_email, unlock
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import EmailAlreadyRegistered, InvalidSignupError, ServiceUnavailableError
from auth.models import AuditEventType, IdentityStatus, LoginFailure, Role
from auth.service import AuthService
from core.db import to_iso


def _attempts(identity_store, identity_id: str) -> int:
    return identity_store.get_credential(identity_id).failed_attempts


class TestScenario:
    def test_signup_login_fail_logout(self, auth_service, identity_store):
        signup = auth_service.signup("a@x.com", "pw1")
        assert signup.user.role is Role.retail
        assert signup.session.token

        login = auth_service.login("a@x.com", "pw1")
        assert login.ok
        assert login.user.id == signup.user.id
        assert login.user.role is Role.retail

        bad = auth_service.login("a@x.com", "wrong")
        assert not bad.ok
        assert bad.failure is LoginFailure.invalid_credentials
        assert _attempts(identity_store, signup.user.id) == 1

        assert auth_service.logout(login.session.token)
        assert auth_service.validate_session(login.session.token) is None


class TestSignup:
    def test_email_is_lowercased(self, auth_service, identity_store):
        result = auth_service.signup("  Mixed@Example.COM ", "pw")
        assert result.user.email == "mixed@example.com"
        assert identity_store.get_identity_by_email("MIXED@example.com") is not None

    def test_profile_and_audit_written(self, auth_service, identity_store, audit):
        result = auth_service.signup("p@example.com", "pw", full_name="Pat")
        profile = identity_store.get_profile(result.user.id)
        assert profile.role == "retail"
        assert profile.full_name == "Pat"
        types = [e.event_type for e in audit.list_events(identity_id=result.user.id)]
        assert "signup" in types
        assert "session_created" in types

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@b", "a b@c.com"])
    def test_rejects_bad_email(self, auth_service, email):
        with pytest.raises(InvalidSignupError):
            auth_service.signup(email, "pw")

    def test_rejects_empty_password(self, auth_service):
        with pytest.raises(InvalidSignupError):
            auth_service.signup("e@example.com", "")

    def test_password_min_length(self, identity_store, sessions, roles, audit, clock):
        service = AuthService(identity_store, sessions, roles, audit, clock=clock, password_min_length=8)
        with pytest.raises(InvalidSignupError):
            service.signup("short@example.com", "1234567")
        assert service.signup("long@example.com", "12345678").user.email == "long@example.com"

    def test_duplicate_email(self, auth_service):
        auth_service.signup("dup@example.com", "pw")
        with pytest.raises(EmailAlreadyRegistered):
            auth_service.signup("DUP@example.com", "pw2")

    def test_store_failure_is_service_unavailable(self, auth_service, identity_store, monkeypatch):
        def fail(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(identity_store, "get_identity_by_email", fail)
        with pytest.raises(ServiceUnavailableError):
            auth_service.signup("x@example.com", "pw")
        with pytest.raises(ServiceUnavailableError):
            auth_service.login("x@example.com", "pw")

    def test_failed_session_insert_leaves_no_account(self, auth_service, identity_store, sessions, monkeypatch):
        def fail(session):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr("auth.store._session_values", fail)
        with pytest.raises(ServiceUnavailableError):
            auth_service.signup("retry@example.com", "pw")
        assert identity_store.get_identity_by_email("retry@example.com") is None

        monkeypatch.undo()
        result = auth_service.signup("retry@example.com", "pw")
        assert sessions.validate(result.session.token).id == result.user.id


class TestLogin:
    def test_unknown_email_is_invalid_credentials(self, auth_service, audit):
        result = auth_service.login("ghost@example.com", "pw")
        assert result.failure is LoginFailure.invalid_credentials
        failed = audit.list_events(event_type=AuditEventType.login_failed)
        assert failed[0].metadata == {"reason": "user_not_found"}

    def test_failed_attempts_increment_then_reset(self, auth_service, identity_store):
        user_id = auth_service.signup("c@example.com", "right").user.id
        for expected in range(1, 6):
            auth_service.login("c@example.com", "wrong")
            assert _attempts(identity_store, user_id) == expected

        assert auth_service.login("c@example.com", "right").ok
        assert _attempts(identity_store, user_id) == 0

    def test_locked_account_fails_without_changing_attempts(self, auth_service, identity_store, clock):
        user_id = auth_service.signup("l@example.com", "right").user.id
        auth_service.login("l@example.com", "wrong")
        identity_store.set_locked_until(user_id, to_iso(clock.now + timedelta(minutes=10)))

        result = auth_service.login("l@example.com", "right")
        assert result.failure is LoginFailure.account_locked
        assert result.session is None
        assert _attempts(identity_store, user_id) == 1

    def test_expired_lock_allows_login(self, auth_service, identity_store, clock):
        user_id = auth_service.signup("l2@example.com", "right").user.id
        identity_store.set_locked_until(user_id, to_iso(clock.now + timedelta(minutes=10)))
        clock.advance(minutes=11)
        assert auth_service.login("l2@example.com", "right").ok

    def test_lockout_threshold_locks_account(self, identity_store, sessions, roles, audit, clock):
        service = AuthService(
            identity_store,
            sessions,
            roles,
            audit,
            clock=clock,
            lockout_threshold=3,
            lockout_duration=timedelta(minutes=15),
        )
        user_id = service.signup("t@example.com", "right").user.id
        for _ in range(3):
            assert service.login("t@example.com", "wrong").failure is LoginFailure.invalid_credentials

        assert service.login("t@example.com", "right").failure is LoginFailure.account_locked
        clock.advance(minutes=16)
        assert service.login("t@example.com", "right").ok
        assert _attempts(identity_store, user_id) == 0

    def test_lockout_disabled_by_default(self, auth_service):
        auth_service.signup("n@example.com", "right")
        for _ in range(20):
            auth_service.login("n@example.com", "wrong")
        assert auth_service.login("n@example.com", "right").ok

    def test_suspended_identity_cannot_log_in(self, auth_service):
        user_id = auth_service.signup("s@example.com", "pw").user.id
        auth_service.set_status(user_id, IdentityStatus.suspended, actor="admin")
        assert auth_service.login("s@example.com", "pw").failure is LoginFailure.invalid_credentials

    def test_login_records_login_count(self, auth_service, identity_store, clock):
        user_id = auth_service.signup("cnt@example.com", "pw").user.id
        auth_service.login("cnt@example.com", "pw")
        auth_service.login("cnt@example.com", "pw")
        identity = identity_store.get_identity(user_id)
        assert identity.login_count == 2
        assert identity.last_login_at == to_iso(clock.now)


class TestAdministration:
    def test_change_role_syncs_profile_and_audits(self, auth_service, identity_store, audit):
        user_id = auth_service.signup("role@example.com", "pw").user.id
        assert auth_service.change_role(user_id, Role.vip, actor="admin-1", reason="Loyalty")
        assert auth_service.get_user(user_id).role is Role.vip
        assert identity_store.get_profile(user_id).role == "vip"
        event = audit.list_events(identity_id=user_id, event_type=AuditEventType.role_changed)[0]
        assert event.performed_by == "admin-1"
        assert event.metadata == {"new_role": "vip", "reason": "Loyalty"}

    def test_change_role_unknown_identity(self, auth_service):
        assert auth_service.change_role("missing", Role.vip, actor=None) is False

    def test_change_password_revokes_sessions(self, auth_service):
        signup = auth_service.signup("pwd@example.com", "old")
        assert not auth_service.change_password(signup.user.id, "wrong", "new")
        assert auth_service.change_password(signup.user.id, "old", "new")

        assert auth_service.validate_session(signup.session.token) is None
        assert not auth_service.login("pwd@example.com", "old").ok
        assert auth_service.login("pwd@example.com", "new").ok

    def test_set_status_suspend_and_reactivate(self, auth_service, audit):
        signup = auth_service.signup("st@example.com", "pw")
        user_id = signup.user.id
        assert auth_service.set_status(user_id, IdentityStatus.suspended, actor="admin-1")
        assert auth_service.validate_session(signup.session.token) is None
        assert auth_service.get_user(user_id).status == "suspended"

        assert auth_service.set_status(user_id, IdentityStatus.active, actor="admin-1")
        assert auth_service.login("st@example.com", "pw").ok
        types = [e.event_type for e in audit.list_events(identity_id=user_id)]
        assert "account_suspended" in types
        assert "account_reactivated" in types

    def test_set_status_unknown_identity(self, auth_service):
        assert auth_service.set_status("missing", IdentityStatus.deleted, actor=None) is False

    def test_verify_email(self, auth_service):
        user_id = auth_service.signup("v@example.com", "pw").user.id
        assert auth_service.verify_email(user_id)
        assert auth_service.get_user(user_id).email_verified

    def test_unlock_clears_lock_and_attempts(self, auth_service, identity_store, clock):
        user_id = auth_service.signup("u@example.com", "pw").user.id
        auth_service.login("u@example.com", "bad")
        identity_store.set_locked_until(user_id, to_iso(clock.now + timedelta(hours=1)))
        assert auth_service.unlock(user_id, actor="admin-1")
        assert _attempts(identity_store, user_id) == 0
        assert auth_service.login("u@example.com", "pw").ok
