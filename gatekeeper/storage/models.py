from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AuthProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


class LoginFailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_SUSPENDED = "account_suspended"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    INVALID_2FA_CODE = "invalid_2fa_code"


AUDIT_CATEGORIES = frozenset(
    {
        "auth",
        "user",
        "admin",
        "security",
        "payment",
        "product",
        "order",
        "profile",
        "cart",
        "favorite",
    }
)
AUDIT_SEVERITIES = ("info", "warning", "error", "critical")

# Fields encrypted at rest by the repository boundary
ENCRYPTED_USER_FIELDS = ("phone", "totp_secret")


@dataclass
class User:
    """Durable credential record; one per identity."""

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    password_hash: Optional[str] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    role: str = Role.USER.value
    # email verification
    is_email_verified: bool = False
    email_verification_pin_hash: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    # password reset
    password_reset_token_hash: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    # TOTP
    totp_enabled: bool = False
    totp_verified: bool = False
    totp_secret: Optional[str] = None
    totp_backup_codes: List[str] = field(default_factory=list)
    totp_last_step: Optional[int] = None
    # federated identity
    auth_provider: str = AuthProvider.LOCAL.value
    google_id: Optional[str] = None
    # lockout
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    # password lifecycle; history is most-recent-first
    password_changed_at: Optional[datetime] = None
    password_expires_at: Optional[datetime] = None
    password_history: List[str] = field(default_factory=list)
    refresh_token_hash: Optional[str] = None
    refresh_token_expires: Optional[datetime] = None
    is_active: bool = True
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        return bool(self.account_locked_until and self.account_locked_until > now)

    def to_public(self) -> dict:
        """Profile view safe for API output; never includes hashes or secrets."""
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "profile_image": self.profile_image,
            "role": self.role,
            "auth_provider": self.auth_provider,
            "is_email_verified": self.is_email_verified,
            "totp_enabled": self.totp_enabled,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "password_expires_at": (
                self.password_expires_at.isoformat() if self.password_expires_at else None
            ),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeviceInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Unknown"


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    refresh_token_hash: Optional[str] = None
    user_agent: str = ""
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    ip: Optional[str] = None
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    is_trusted: bool = False
    flagged_as_suspicious: bool = False
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    def to_public(self, *, current_token: Optional[str] = None) -> dict:
        return {
            "id": self.id,
            "device_info": {
                "browser": self.device_info.browser,
                "os": self.device_info.os,
                "device": self.device_info.device,
            },
            "ip": self.ip,
            "last_activity": self.last_activity.isoformat(),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_trusted": self.is_trusted,
            "flagged_as_suspicious": self.flagged_as_suspicious,
            "is_current": current_token is not None and current_token == self.session_token,
        }


@dataclass
class AuditEvent:
    category: str
    action: str
    severity: str = "info"
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    details: Dict | None = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    session_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "action": self.action,
            "severity": self.severity,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "method": self.method,
            "path": self.path,
            "success": self.success,
            "error_message": self.error_message,
            "details": self.details,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class LoginAttempt:
    email: str
    success: bool
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    user_id: Optional[str] = None
    provider: str = AuthProvider.LOCAL.value
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
