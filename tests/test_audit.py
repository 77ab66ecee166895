"""Tests for audit recording and the reporting queries built on it."""

from datetime import timedelta

import pytest

from gatekeeper.service.audit import (
    AuditReader,
    AuditSink,
    RequestContext,
    determine_severity,
    parse_event_type,
)
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import LoginAttempt


@pytest.mark.parametrize(
    "event_type,expected",
    [
        ("auth:login", ("auth", "login")),
        ("admin:block_ip", ("admin", "block_ip")),
        ("security:refresh_token_reuse", ("security", "refresh_token_reuse")),
        ("mystery:thing", ("security", "mystery:thing")),
        ("bare_action", ("security", "bare_action")),
    ],
)
def test_parse_event_type(event_type, expected):
    assert parse_event_type(event_type) == expected


@pytest.mark.parametrize(
    "event_type,success,expected",
    [
        ("auth:login", True, "info"),
        ("auth:failed_login", False, "warning"),
        ("security:account_locked", False, "error"),
        ("security:refresh_token_reuse", False, "warning"),
        ("security:session_idle_timeout", False, "warning"),
        ("auth:totp_disable_failed", False, "warning"),
        ("security:session_idle_timeout", True, "info"),
        ("auth:something_else", False, "info"),
    ],
)
def test_determine_severity(event_type, success, expected):
    assert determine_severity(event_type, success) == expected


class BrokenStore(MemoryStore):
    def append_audit_event(self, event):
        raise RuntimeError("audit table unavailable")


def test_write_failure_is_swallowed():
    sink = AuditSink(BrokenStore())

    assert sink.record("auth:login", user_id="u1") is None


def test_record_copies_request_context(clock):
    store = MemoryStore()
    sink = AuditSink(store, clock=clock)
    ctx = RequestContext(ip="203.0.113.7", user_agent="curl/8", method="POST", path="/api/auth/login")

    event = sink.record(
        "auth:failed_login", ctx=ctx, email="a@example.com", success=False, reason="invalid_credentials"
    )

    assert event.severity == "warning"
    assert event.ip == "203.0.113.7" and event.path == "/api/auth/login"
    assert event.created_at == clock.now
    assert event.details == {"success": False, "reason": "invalid_credentials"}
    assert store.list_audit_events()[0].id == event.id


class TestReader:
    @pytest.fixture
    def populated(self, clock):
        store = MemoryStore()
        sink = AuditSink(store, clock=clock)
        for _ in range(3):
            sink.record("auth:login", user_id="u1")
            clock.advance(minutes=1)
        sink.record("auth:failed_login", user_id="u1", success=False)
        sink.record("security:refresh_token_reuse", user_id="u1", success=False)
        sink.record("admin:suspend_user", user_id="admin-1", target_type="user", target_id="u1")
        sink.record("auth:login", user_id="u2")
        return store

    def test_activity_pagination(self, populated, clock):
        reader = AuditReader(populated, clock=clock)

        first = reader.activity("u1", page=1, limit=2)
        last = reader.activity("u1", page=3, limit=2)

        assert first["pagination"] == {"page": 1, "limit": 2, "total": 5, "total_pages": 3}
        assert len(first["logs"]) == 2 and len(last["logs"]) == 1
        assert first["logs"][0]["created_at"] == clock.now.isoformat()
        assert last["logs"][0]["action"] == "login"

    def test_activity_filters(self, populated, clock):
        reader = AuditReader(populated, clock=clock)

        assert reader.activity("u1", action="login")["pagination"]["total"] == 3
        assert reader.activity("u1", category="security")["pagination"]["total"] == 1
        since = reader.activity("u1", start=clock.now - timedelta(seconds=30))
        assert since["pagination"]["total"] == 2

    def test_user_views(self, populated, clock):
        reader = AuditReader(populated, clock=clock)

        assert reader.login_history("u1")["pagination"]["total"] == 3
        assert reader.security_events("u1")["pagination"]["total"] == 2
        stats = reader.user_stats("u1")
        assert stats["total_activities"] == 5
        assert stats["failed_logins"] == 1
        assert stats["categories"] == {"auth": 4, "security": 1}

    def test_admin_views(self, populated, clock):
        reader = AuditReader(populated, clock=clock)
        populated.add_login_attempt(
            LoginAttempt(email="x@example.com", success=False, failure_reason="invalid_credentials")
        )

        assert reader.all_logs()["pagination"]["total"] == 7
        assert reader.all_logs(severity="warning")["pagination"]["total"] == 2
        assert reader.all_logs(user_id="u2")["pagination"]["total"] == 1
        assert reader.failed_logins()["logs"][0]["email"] == "x@example.com"
        stats = reader.admin_stats()
        assert stats["admin_actions"] == 1
        assert stats["security_events"] == 1

    def test_limit_is_capped(self, populated, clock):
        page = AuditReader(populated, clock=clock).all_logs(limit=1000)

        assert page["pagination"]["limit"] == 100
