from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Bearer material and one-time secrets never reach a sink, not even partially
_SECRET_KEY_MARKERS = ("password", "secret", "token", "authorization", "cookie", "pin", "otp")
_SECRET_KEYS = frozenset({"code", "backup_code", "credential", "captcha"})
# Identifying but useful for support: masked, not dropped
_MASKED_KEYS = frozenset({"email", "user_email", "phone"})
# Structured fields whose names merely contain a marker word
_SAFE_KEYS = frozenset(
    {"error_code", "status_code", "failure_reason", "token_type", "password_expired", "sessions_revoked"}
)


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in _SAFE_KEYS:
            continue
        value = event_dict[key]
        if value is None or isinstance(value, bool):
            continue
        if lowered in _MASKED_KEYS:
            text = str(value)
            event_dict[key] = _mask_email(text) if "@" in text else "***" + text[-2:]
        elif lowered in _SECRET_KEYS or any(marker in lowered for marker in _SECRET_KEY_MARKERS):
            event_dict[key] = "[redacted]"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, console: bool = False
) -> None:
    """Install the structlog pipeline; JSON lines unless a console renderer is requested."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_FRAGMENTS = [
    re.compile(p)
    for p in (
        # filesystem paths
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/\S+",
        r"(?i)\b[a-z]:\\\S+",
        # key=value credentials and connection strings
        r"(?i)\b(password|secret|token|key|pin|credential)\s*[:=]\s*\S+",
        r"(?i)\b(?:redis|rediss|smtp)://\S+",
        # bearer material and argon2 digests
        r"(?i)bearer\s+\S+",
        r"\$argon2(?:id|i|d)\$\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]", limit: int = 500) -> str:
    """Scrub paths, credentials, and hashes from an error string shown in dev responses."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= limit else error[: limit - 3] + "..."
