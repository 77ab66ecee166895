from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from gatekeeper.config import Settings, get_settings, reset_settings_cache
from gatekeeper.logging import get_logger
from gatekeeper.service.audit import AuditReader, AuditSink
from gatekeeper.service.auth import AuthService
from gatekeeper.service.captcha import CaptchaVerifier
from gatekeeper.service.crypto import FieldCipher, PasswordHasher
from gatekeeper.service.email import EmailService
from gatekeeper.service.federated import GoogleIdentityVerifier
from gatekeeper.service.mfa import MFAService
from gatekeeper.service.sessions import SessionManager
from gatekeeper.service.tokens import TokenService
from gatekeeper.storage.cache import MemoryCache, SecurityCache
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton service graph for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            persistent=bool(self.settings.shared_fs_root),
        )

        self.cipher = FieldCipher(self.settings.field_encryption_key)
        if not self.cipher.configured:
            logger.warning(
                "field_encryption_key_missing",
                message="PII fields cannot be stored until FIELD_ENCRYPTION_KEY is set",
            )
        try:
            self.store = MemoryStore(fs_root=self.settings.shared_fs_root, cipher=self.cipher)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise

        self.cache: SecurityCache = self._build_cache()

        self.hasher = PasswordHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.audit = AuditSink(self.store, clock=clock)
        self.audit_reader = AuditReader(self.store, clock=clock)
        self.tokens = TokenService(self.settings, clock=clock)
        self.sessions = SessionManager(self.store, self.settings, clock=clock)
        self.mfa = MFAService(self.store, self.hasher, self.settings, self.audit, clock=clock)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.federated = GoogleIdentityVerifier(self.settings)
        self.captcha = CaptchaVerifier(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            tokens=self.tokens,
            sessions=self.sessions,
            mfa=self.mfa,
            audit=self.audit,
            email=self.email,
            federated=self.federated,
            clock=clock,
        )
        logger.info("runtime_init_completed", cache=type(self.cache).__name__)

    def _build_cache(self) -> SecurityCache:
        if not self.settings.redis_url:
            return MemoryCache()
        try:
            cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            if not (self.settings.test_mode or self.settings.dev_mode):
                raise RuntimeError(
                    "Redis is configured but unreachable; fix REDIS_URL or unset it for a "
                    "process-local blocklist and rate limiter."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return MemoryCache()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
