from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Security policy and collaborator settings for the auth core."""

    # Token signing
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("gatekeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeeper-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES", ge=1)

    # Sessions; idle timeout is independent of the refresh token lifetime
    session_idle_timeout_minutes: int = env_field(
        15, "SESSION_IDLE_TIMEOUT_MINUTES", ge=1
    )
    session_absolute_ttl_days: int = env_field(7, "SESSION_ABSOLUTE_TTL_DAYS", ge=1)
    inactive_session_retention_days: int = env_field(
        30, "INACTIVE_SESSION_RETENTION_DAYS", ge=1
    )
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS", ge=60)

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(5, "LOCKOUT_DURATION_MINUTES")

    # Password policy; argon2id parameters set the work factor
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=8)
    password_expiry_days: int = env_field(90, "PASSWORD_EXPIRY_DAYS", ge=1)
    password_expiry_warning_days: int = env_field(
        14, "PASSWORD_EXPIRY_WARNING_DAYS", ge=0
    )
    password_history_limit: int = env_field(5, "PASSWORD_HISTORY_LIMIT", ge=1)
    email_verification_ttl_minutes: int = env_field(
        10, "EMAIL_VERIFICATION_TTL_MINUTES", ge=1
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # MFA
    totp_issuer: str = env_field("Gatekeeper", "TOTP_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1)

    # Field-level encryption of PII
    field_encryption_key: str | None = env_field(None, "FIELD_ENCRYPTION_KEY")

    # Federated identity (Google)
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "GOOGLE_TOKENINFO_URL"
    )
    federation_timeout_seconds: float = env_field(5.0, "FEDERATION_TIMEOUT_SECONDS", gt=0)

    # CAPTCHA
    captcha_secret_key: str | None = env_field(None, "RECAPTCHA_SECRET_KEY")
    captcha_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify", "RECAPTCHA_VERIFY_URL"
    )
    captcha_score_threshold: float = env_field(0.5, "RECAPTCHA_SCORE_THRESHOLD")
    captcha_timeout_seconds: float = env_field(5.0, "RECAPTCHA_TIMEOUT_SECONDS", gt=0)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeeper", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Storage and shared state
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    login_attempt_retention_days: int = env_field(
        30, "LOGIN_ATTEMPT_RETENTION_DAYS", ge=1
    )

    # Transport
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT", ge=1)
    auth_rate_window_seconds: int = env_field(900, "AUTH_RATE_WINDOW_SECONDS", ge=1)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    test_mode: bool = env_field(False, "TEST_MODE")
    dev_mode: bool = env_field(False, "DEV_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("lockout_duration_minutes")
    @classmethod
    def _validate_lockout_duration(cls, value: int) -> int:
        if not 5 <= value <= 30:
            raise ValueError("lockout_duration_minutes must be between 5 and 30")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Per-process secrets keep tests hermetic; tokens do not survive restarts
            logger.warning("jwt_secret_generated", test_mode=True)
            if not self.jwt_access_secret:
                self.jwt_access_secret = secrets.token_urlsafe(48)
            if not self.jwt_refresh_secret:
                self.jwt_refresh_secret = secrets.token_urlsafe(48)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
