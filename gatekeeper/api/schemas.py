from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

MAX_PASSWORD_LENGTH = 128

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{7,20}$")


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError("invalid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or any(len(l) > 63 or not _EMAIL_DOMAIN_LABEL.match(l) for l in labels):
        raise ValueError("invalid email address format")
    return normalized


def _bounded_password(value: str) -> str:
    # strength rules live in the service so the configured minimum applies
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class Envelope(BaseModel):
    """Success body: ``{"success": true, "message": ..., "data": ...}``."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    success: bool = False
    message: str
    code: str
    details: Optional[Any] = None


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1)
    first_name: str = Field(default="", max_length=50)
    last_name: str = Field(default="", max_length=50)
    phone: Optional[str] = Field(default=None, max_length=20)
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _bounded_password(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if not _PHONE_PATTERN.match(value.strip()):
            raise ValueError("invalid phone number")
        return value.strip()


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyEmailRequest(BaseModel):
    email: str
    pin: str = Field(..., pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class MFALoginRequest(BaseModel):
    mfa_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=6, max_length=16)
    use_backup_code: bool = False


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class GoogleLoginRequest(BaseModel):
    credential: str = Field(..., min_length=1, max_length=8192)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _bounded_password(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _bounded_password(value)


class TOTPConfirmRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=128)
    code: str = Field(..., pattern=r"^\d{6}$")


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class SuspendRequest(BaseModel):
    reason: str = Field(default="", max_length=500)
