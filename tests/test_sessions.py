"""Tests for session lifecycle: creation, idle and absolute expiry, revocation."""

import pytest

from gatekeeper.service.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    SessionIdleTimeoutError,
)
from gatekeeper.service.sessions import parse_user_agent
from gatekeeper.service.tokens import hash_token

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def manager(runtime):
    return runtime.sessions


@pytest.fixture
def owner(runtime):
    return runtime.store.create_user("owner@example.com")


@pytest.fixture
def intruder(runtime):
    return runtime.store.create_user("intruder@example.com")


class TestCreateAndTouch:
    def test_create_records_device_and_expiry(self, manager, owner, clock):
        session = manager.create(owner.id, "hash-1", ip="203.0.113.9", user_agent=CHROME_WINDOWS)

        assert len(session.session_token) == 64
        assert session.is_active
        assert session.device_info.browser == "Chrome"
        assert session.device_info.os == "Windows"
        assert session.device_info.device == "Desktop"
        assert (session.expires_at - clock.now).days == 7

    def test_touch_moves_last_activity_forward(self, manager, owner, clock):
        session = manager.create(owner.id, "hash-1")
        clock.advance(minutes=10)

        touched = manager.touch(session.session_token)

        assert touched.last_activity == clock.now

    def test_activity_keeps_session_alive_past_idle_window(self, manager, owner, clock):
        session = manager.create(owner.id, "hash-1")
        for _ in range(4):
            clock.advance(minutes=10)
            manager.touch(session.session_token)

        assert manager.touch(session.session_token).is_active


class TestExpiry:
    def test_idle_timeout_deactivates_session(self, manager, owner, clock, runtime):
        session = manager.create(owner.id, "hash-1")
        clock.advance(minutes=16)

        with pytest.raises(SessionIdleTimeoutError) as excinfo:
            manager.touch(session.session_token)
        assert excinfo.value.error_code == "SESSION_IDLE_TIMEOUT"

        stored = runtime.store.get_session(session.id)
        assert stored.is_active is False
        assert stored.revoke_reason == "idle_timeout"

        clock.advance(seconds=1)
        with pytest.raises(AuthenticationError):
            manager.touch(session.session_token)

    def test_absolute_expiry_applies_even_when_active(self, manager, owner, clock):
        session = manager.create(
            owner.id, "hash-1", absolute_expiry=clock.now + manager.idle_timeout / 3
        )
        clock.advance(minutes=6)

        with pytest.raises(AuthenticationError) as excinfo:
            manager.touch(session.session_token)
        assert not isinstance(excinfo.value, SessionIdleTimeoutError)

    def test_unknown_token_is_rejected(self, manager):
        with pytest.raises(AuthenticationError):
            manager.touch("0" * 64)
        with pytest.raises(AuthenticationError):
            manager.touch(None)


class TestRevocation:
    def test_revoked_session_fails_next_touch(self, manager, owner):
        session = manager.create(owner.id, "hash-1")

        assert manager.revoke(session.session_token) is True
        assert manager.revoke(session.session_token) is False
        with pytest.raises(AuthenticationError):
            manager.touch(session.session_token)

    def test_revoke_all_can_keep_the_current_session(self, manager, owner):
        current = manager.create(owner.id, "hash-1")
        manager.create(owner.id, "hash-2")
        manager.create(owner.id, "hash-3")

        assert manager.revoke_all(owner.id, except_token=current.session_token) == 2
        assert [s.id for s in manager.list_active(owner.id)] == [current.id]

    def test_revoke_by_id_checks_ownership(self, manager, owner, intruder):
        session = manager.create(owner.id, "hash-1")

        with pytest.raises(AuthorizationError):
            manager.revoke_by_id(intruder.id, session.id)
        with pytest.raises(NotFoundError):
            manager.revoke_by_id(owner.id, "missing")

        manager.revoke_by_id(owner.id, session.id)
        assert manager.list_active(owner.id) == []

    def test_trust_marks_session(self, manager, owner, intruder):
        session = manager.create(owner.id, "hash-1")

        with pytest.raises(AuthorizationError):
            manager.trust(intruder.id, session.id)
        assert manager.trust(owner.id, session.id).is_trusted is True


class TestRefreshBinding:
    def test_verify_and_rebind(self, manager, owner):
        session = manager.create(owner.id, hash_token("refresh-old"))

        assert manager.verify(session.session_token, "refresh-old") is True
        assert manager.verify(session.session_token, "refresh-other") is False
        assert manager.verify(None, "refresh-old") is False

        assert manager.rebind(session.session_token, "refresh-old", hash_token("refresh-new"))
        assert manager.verify(session.session_token, "refresh-new") is True
        assert manager.verify(session.session_token, "refresh-old") is False
        # the old token can no longer move the binding
        assert not manager.rebind(session.session_token, "refresh-old", hash_token("refresh-x"))


class TestStatsAndCleanup:
    def test_stats_group_active_sessions_by_device(self, manager, owner):
        manager.create(owner.id, "h1", user_agent=CHROME_WINDOWS)
        manager.create(owner.id, "h2", user_agent=SAFARI_IPHONE)
        revoked = manager.create(owner.id, "h3", user_agent=SAFARI_IPHONE)
        manager.revoke(revoked.session_token)

        stats = manager.stats(owner.id)

        assert stats["active_sessions"] == 2
        assert stats["total_sessions"] == 3
        assert stats["sessions_by_device"] == {"Desktop": 1, "Mobile": 1}

    def test_cleanup_removes_expired_and_long_revoked_sessions(self, manager, owner, clock, runtime):
        outlived = manager.create(owner.id, "h1")
        revoked = manager.create(owner.id, "h2")
        manager.revoke(revoked.session_token)
        expired = manager.create(owner.id, "h3", absolute_expiry=clock.now)

        clock.advance(days=31)
        result = manager.cleanup()

        assert runtime.store.get_session(revoked.id) is None
        assert runtime.store.get_session(expired.id) is None
        assert runtime.store.get_session(outlived.id) is None
        assert sum(result.values()) >= 3


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (None, ("Unknown", "Unknown", "Unknown")),
        (CHROME_WINDOWS, ("Chrome", "Windows", "Desktop")),
        (SAFARI_IPHONE, ("Safari", "iOS", "Mobile")),
        (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0; rv:121.0) Gecko/20100101 Firefox/121.0",
            ("Firefox", "macOS", "Desktop"),
        ),
        (
            "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Safari/604.1",
            ("Safari", "iOS", "Tablet"),
        ),
    ],
)
def test_parse_user_agent(user_agent, expected):
    info = parse_user_agent(user_agent)

    assert (info.browser, info.os, info.device) == expected
