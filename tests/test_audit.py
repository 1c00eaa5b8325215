"""Unit tests for auth/audit.py -- append-only audit log.

Covers:
- record() persists every field, metadata round-trips as a dict
- list_events() filters and orders newest first
- record() never raises when the insert fails
"""

from sqlalchemy.exc import OperationalError

from auth.models import AuditEventType


def test_record_and_read_back(audit, clock):
    audit.record(
        AuditEventType.login,
        identity_id="id-1",
        description="User logged in successfully",
        metadata={"attempt": 1},
        performed_by="id-1",
        ip_address="203.0.113.9",
        user_agent="pytest",
    )
    [event] = audit.list_events()
    assert event.event_type == "login"
    assert event.identity_id == "id-1"
    assert event.metadata == {"attempt": 1}
    assert event.ip_address == "203.0.113.9"
    assert event.user_agent == "pytest"
    assert event.created_at.startswith("2026-03-01T12:00:00")


def test_list_events_filters_and_orders(audit, clock):
    audit.record(AuditEventType.signup, identity_id="a")
    clock.advance(seconds=1)
    audit.record(AuditEventType.login, identity_id="a")
    clock.advance(seconds=1)
    audit.record(AuditEventType.login, identity_id="b")

    assert [e.event_type for e in audit.list_events(identity_id="a")] == ["login", "signup"]
    assert [e.identity_id for e in audit.list_events(event_type=AuditEventType.login)] == ["b", "a"]
    assert len(audit.list_events(limit=2)) == 2


def test_missing_metadata_reads_as_empty_dict(audit):
    audit.record(AuditEventType.logout, identity_id="x")
    assert audit.list_events()[0].metadata == {}


class _BrokenEngine:
    def connect(self):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))


def test_record_swallows_store_errors(audit, monkeypatch, caplog):
    monkeypatch.setattr(audit, "engine", _BrokenEngine())
    audit.record(AuditEventType.login_failed, identity_id="x")
    assert "Audit write failed" in caplog.text
