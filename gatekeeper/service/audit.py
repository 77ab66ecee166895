from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from gatekeeper.logging import get_logger
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import AUDIT_CATEGORIES, AUDIT_SEVERITIES, AuditEvent

logger = get_logger(__name__)

LOGIN_HISTORY_ACTIONS = ("login", "login_2fa", "google_login", "logout")
STATS_WINDOW = timedelta(days=30)


@dataclass
class RequestContext:
    """Request metadata copied onto audit events and login attempts."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    session_id: Optional[str] = None


def parse_event_type(event_type: str) -> tuple[str, str]:
    """Split ``category:action``; a bare action or unknown category is a security event."""
    if ":" in event_type:
        category, action = event_type.split(":", 1)
        if category in AUDIT_CATEGORIES:
            return category, action
        return "security", event_type
    return "security", event_type


def determine_severity(event_type: str, success: bool) -> str:
    if success:
        return "info"
    if any(marker in event_type for marker in ("suspended", "locked")):
        return "error"
    category, action = parse_event_type(event_type)
    # a failed security event is never routine
    if category == "security":
        return "warning"
    if any(marker in action for marker in ("failed", "unauthorized", "invalid", "reuse")):
        return "warning"
    return "info"


class AuditSink:
    """Append-only, best-effort audit writer.

    A failed write is logged locally and swallowed: the operation being
    described has already happened and must not be rolled back or turned
    into an error response because the audit store is unavailable.
    """

    def __init__(self, store: MemoryStore, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        event_type: str,
        *,
        ctx: Optional[RequestContext] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        ctx = ctx or RequestContext()
        category, action = parse_event_type(event_type)
        level = severity if severity in AUDIT_SEVERITIES else determine_severity(event_type, success)
        payload = dict(details or {})
        payload.setdefault("success", success)
        if reason:
            payload.setdefault("reason", reason)
        try:
            event = AuditEvent(
                category=category,
                action=action,
                severity=level,
                user_id=user_id,
                user_email=email,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                method=ctx.method,
                path=ctx.path,
                success=success,
                error_message=reason,
                details=payload,
                target_type=target_type,
                target_id=target_id,
                session_id=ctx.session_id,
                created_at=self._clock(),
            )
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_type=event_type,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        log_fn = logger.info if success else logger.warning
        log_fn("security_event", event_type=event_type, user_id=user_id, ip=ctx.ip, severity=level)
        return event


def _paginate(rows: Sequence[Any], page: int, limit: int) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    start = (page - 1) * limit
    items = rows[start : start + limit]
    return {
        "logs": [item.to_public() if hasattr(item, "to_public") else item for item in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": len(rows),
            "total_pages": math.ceil(len(rows) / limit) if rows else 0,
        },
    }


def _count_by(rows: Sequence[AuditEvent], attr: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for row in rows:
        key = getattr(row, attr)
        counts[key] = counts.get(key, 0) + 1
    return counts


class AuditReader:
    """Read-only query surface used by reporting routes."""

    def __init__(self, store: MemoryStore, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def activity(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        category: Optional[str] = None,
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        rows = self.store.list_audit_events(
            user_id=user_id,
            category=category,
            actions=[action] if action else None,
            since=start,
            until=end,
        )
        return _paginate(rows, page, limit)

    def login_history(self, user_id: str, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        rows = self.store.list_audit_events(
            user_id=user_id, category="auth", actions=LOGIN_HISTORY_ACTIONS
        )
        return _paginate(rows, page, limit)

    def security_events(self, user_id: str, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        rows = [
            e
            for e in self.store.list_audit_events(user_id=user_id)
            if e.category == "security" or not e.success or e.severity != "info"
        ]
        return _paginate(rows, page, limit)

    def user_stats(self, user_id: str) -> Dict[str, Any]:
        since = self._clock() - STATS_WINDOW
        rows = self.store.list_audit_events(user_id=user_id)
        recent = [e for e in rows if e.created_at >= since]
        return {
            "total_activities": len(rows),
            "recent_activities": len(recent),
            "failed_logins": sum(1 for e in recent if e.category == "auth" and not e.success),
            "categories": _count_by(rows, "category"),
        }

    def all_logs(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> Dict[str, Any]:
        rows = self.store.list_audit_events(user_id=user_id, category=category, success=success)
        if severity:
            rows = [e for e in rows if e.severity == severity]
        return _paginate(rows, page, limit)

    def admin_security_events(self, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        rows = [
            e
            for e in self.store.list_audit_events()
            if e.category == "security" or e.severity in ("warning", "error", "critical")
        ]
        return _paginate(rows, page, limit)

    def failed_logins(self, *, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        attempts = self.store.list_login_attempts(success=False)
        rows: List[Dict[str, Any]] = [
            {
                "id": a.id,
                "email": a.email,
                "ip": a.ip,
                "user_agent": a.user_agent,
                "failure_reason": a.failure_reason,
                "user_id": a.user_id,
                "provider": a.provider,
                "created_at": a.created_at.isoformat(),
            }
            for a in attempts
        ]
        return _paginate(rows, page, limit)

    def admin_stats(self) -> Dict[str, Any]:
        since = self._clock() - STATS_WINDOW
        rows = self.store.list_audit_events()
        recent = [e for e in rows if e.created_at >= since]
        return {
            "total_logs": len(rows),
            "recent_logs": len(recent),
            "failed_logins": sum(1 for e in recent if e.category == "auth" and not e.success),
            "security_events": sum(1 for e in recent if e.category == "security"),
            "admin_actions": sum(1 for e in recent if e.category == "admin"),
            "categories": _count_by(recent, "category"),
            "severity": _count_by(recent, "severity"),
        }
