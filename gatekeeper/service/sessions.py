from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.crypto import constant_time_equals
from gatekeeper.service.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    SessionIdleTimeoutError,
)
from gatekeeper.service.tokens import hash_token
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import DeviceInfo, Session

logger = get_logger(__name__)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Best-effort browser/OS/device classification; never raises."""
    if not user_agent:
        return DeviceInfo()

    browser = "Unknown"
    if "Firefox" in user_agent:
        browser = "Firefox"
    elif "Chrome" in user_agent:
        browser = "Chrome"
    elif "Safari" in user_agent:
        browser = "Safari"
    elif "Edge" in user_agent:
        browser = "Edge"
    elif "Opera" in user_agent or "OPR" in user_agent:
        browser = "Opera"

    # iOS and Android UAs also mention "Mac OS" and "Linux"
    os_name = "Unknown"
    if "Windows" in user_agent:
        os_name = "Windows"
    elif any(marker in user_agent for marker in ("iPhone", "iPad", "iOS")):
        os_name = "iOS"
    elif "Mac OS" in user_agent:
        os_name = "macOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Linux" in user_agent:
        os_name = "Linux"

    device = "Desktop"
    if any(marker in user_agent for marker in ("Mobile", "Android", "iPhone")):
        device = "Mobile"
    elif any(marker in user_agent for marker in ("Tablet", "iPad")):
        device = "Tablet"

    return DeviceInfo(browser=browser, os=os_name, device=device)


def generate_session_token() -> str:
    return secrets.token_hex(32)


class SessionManager:
    """Durable per-login sessions with idle and absolute expiry.

    States: active, idle-expired, revoked, absolute-expired. Only ``touch``
    moves a session forward in time; revocation is visible to the very next
    read because every check goes back to the store.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.session_idle_timeout_minutes)

    def create(
        self,
        owner_id: str,
        refresh_token_hash: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        absolute_expiry: Optional[datetime] = None,
    ) -> Session:
        now = self._clock()
        expires_at = absolute_expiry or now + timedelta(days=self.settings.session_absolute_ttl_days)
        session = self.store.create_session(
            owner_id,
            generate_session_token(),
            expires_at=expires_at,
            refresh_token_hash=refresh_token_hash,
            user_agent=user_agent or "",
            device_info=parse_user_agent(user_agent),
            ip=ip,
            now=now,
        )
        self.logger.info(
            "session_created",
            user_id=owner_id,
            session_id=session.id,
            device=session.device_info.device,
        )
        return session

    def touch(self, session_token: Optional[str]) -> Session:
        """Enforce idle/absolute expiry, then advance ``last_activity``."""
        session = self.store.get_session_by_token(session_token) if session_token else None
        if not session or not session.is_active:
            raise AuthenticationError("Session is no longer valid")
        now = self._clock()
        if session.expires_at <= now:
            self.store.deactivate_session(session.session_token, reason="expired", now=now)
            raise AuthenticationError("Session is no longer valid")
        if now - session.last_activity > self.idle_timeout:
            self.store.deactivate_session(session.session_token, reason="idle_timeout", now=now)
            self.logger.info(
                "session_idle_timeout", user_id=session.user_id, session_id=session.id
            )
            raise SessionIdleTimeoutError(
                "Session expired due to inactivity. Please log in again."
            )
        touched = self.store.touch_session(session.session_token, now)
        if touched is None:
            # revoked between the read and the write
            raise AuthenticationError("Session is no longer valid")
        return touched

    def revoke(self, session_token: Optional[str], *, reason: str = "logout") -> bool:
        if not session_token:
            return False
        revoked = self.store.deactivate_session(session_token, reason=reason, now=self._clock())
        if revoked:
            self.logger.info("session_revoked", reason=reason)
        return revoked

    def revoke_all(self, owner_id: str, except_token: Optional[str] = None, *, reason: str = "revoke_all") -> int:
        count = self.store.revoke_user_sessions(
            owner_id, except_token=except_token, reason=reason, now=self._clock()
        )
        self.logger.info("sessions_revoked", user_id=owner_id, count=count, reason=reason)
        return count

    def verify(self, session_token: Optional[str], presented_refresh_token: Optional[str]) -> bool:
        """True when the session is live and bound to the presented refresh token."""
        if not session_token or not presented_refresh_token:
            return False
        session = self.store.get_session_by_token(session_token)
        if not session or not session.is_active or session.expires_at <= self._clock():
            return False
        return constant_time_equals(session.refresh_token_hash, hash_token(presented_refresh_token))

    def rebind(self, session_token: str, old_refresh_token: str, new_refresh_hash: str) -> bool:
        """Move a session to the next refresh-token lineage after rotation."""
        return self.store.rotate_session_refresh_hash(
            session_token, hash_token(old_refresh_token), new_refresh_hash
        )

    def list_active(self, owner_id: str) -> List[Session]:
        now = self._clock()
        return [
            s for s in self.store.list_user_sessions(owner_id) if s.is_active and s.expires_at > now
        ]

    def revoke_by_id(self, owner_id: str, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if not session:
            raise NotFoundError("Session not found")
        if session.user_id != owner_id:
            raise AuthorizationError("You do not have permission to perform this action")
        self.store.deactivate_session(session.session_token, reason="user_revoked", now=self._clock())
        return session

    def trust(self, owner_id: str, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if not session:
            raise NotFoundError("Session not found")
        if session.user_id != owner_id:
            raise AuthorizationError("You do not have permission to perform this action")
        return self.store.update_session(session_id, is_trusted=True)

    def stats(self, owner_id: str) -> dict:
        now = self._clock()
        sessions = self.store.list_user_sessions(owner_id)
        active = [s for s in sessions if s.is_active and s.expires_at > now]
        by_device: dict[str, int] = {}
        for s in active:
            by_device[s.device_info.device] = by_device.get(s.device_info.device, 0) + 1
        return {
            "active_sessions": len(active),
            "total_sessions": len(sessions),
            "suspicious_sessions": sum(
                1 for s in sessions if s.flagged_as_suspicious and s.is_active
            ),
            "sessions_by_device": by_device,
        }

    def cleanup(self) -> dict:
        """Garbage-collect absolutely-expired and long-inactive sessions."""
        now = self._clock()
        expired = self.store.delete_expired_sessions(now)
        inactive = self.store.delete_inactive_sessions(
            now - timedelta(days=self.settings.inactive_session_retention_days)
        )
        if expired or inactive:
            self.logger.info("session_cleanup", expired=expired, inactive=inactive)
        return {"expired": expired, "inactive": inactive}
