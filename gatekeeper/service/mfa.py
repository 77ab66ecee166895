from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import os
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.audit import AuditSink, RequestContext
from gatekeeper.service.crypto import PasswordHasher
from gatekeeper.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidHashFormat,
    NotFoundError,
    ValidationError,
)
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import User

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# accepted drift, in time steps either side of now
TOTP_WINDOW = 1
SECRET_BYTES = 20


def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(SECRET_BYTES)).decode("ascii").rstrip("=")


def totp_at(secret: str, step: int, *, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) for a time step; empty string for a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def generate_backup_code() -> str:
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def _normalize_backup_code(code: str) -> str:
    compact = "".join(ch for ch in (code or "").upper() if ch.isalnum())
    if len(compact) != 8:
        return ""
    return f"{compact[:4]}-{compact[4:]}"


class MFAService:
    """TOTP enrolment, login verification, and single-use backup codes."""

    def __init__(
        self,
        store: MemoryStore,
        hasher: PasswordHasher,
        settings: Settings,
        audit: AuditSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.audit = audit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def current_step(self) -> int:
        return int(self._clock().timestamp()) // TOTP_INTERVAL

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _matching_step(self, secret: Optional[str], code: str) -> Optional[int]:
        if not secret or not code or not code.isdigit() or len(code) != TOTP_DIGITS:
            return None
        now_step = self.current_step()
        for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
            step = now_step + offset
            expected = totp_at(secret, step)
            if expected and hmac.compare_digest(expected, code):
                return step
        return None

    def _verify_live_code(self, user: User, code: str) -> bool:
        step = self._matching_step(user.totp_secret, code.strip())
        if step is None:
            return False
        # each time step is accepted at most once per identity
        if not self.store.claim_totp_step(user.id, step):
            logger.warning("totp_replay_rejected", user_id=user.id)
            return False
        return True

    async def _hash_codes(self, codes: List[str]) -> List[str]:
        return [await asyncio.to_thread(self.hasher.hash, code) for code in codes]

    async def _issue_backup_codes(self) -> tuple[List[str], List[str]]:
        codes = [generate_backup_code() for _ in range(self.settings.backup_code_count)]
        return codes, await self._hash_codes(codes)

    async def _require_password(self, user: User, password: str) -> None:
        if not user.password_hash:
            raise AuthenticationError("Password confirmation is required")
        try:
            ok = await asyncio.to_thread(self.hasher.verify, password or "", user.password_hash)
        except InvalidHashFormat:
            logger.error("password_hash_malformed", user_id=user.id)
            ok = False
        if not ok:
            raise AuthenticationError("Invalid password")

    def setup(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        if user.totp_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        secret = generate_totp_secret()
        self.store.update_user(user_id, totp_secret=secret, totp_verified=False)
        label = quote(f"{self.settings.totp_issuer}:{user.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.settings.totp_issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return {"secret": secret, "otpauth_uri": f"otpauth://totp/{label}?{query}"}

    async def confirm_setup(
        self, user_id: str, secret: str, code: str, *, ctx: Optional[RequestContext] = None
    ) -> List[str]:
        """Enable TOTP after a valid code; returns the plaintext backup codes once."""
        user = self._require_user(user_id)
        if user.totp_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not user.totp_secret or not hmac.compare_digest(user.totp_secret, secret or ""):
            raise ValidationError("No pending authenticator setup for this secret")
        if not self._verify_live_code(user, code or ""):
            self.audit.record(
                "auth:totp_setup_failed", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="invalid_2fa_code",
            )
            raise ValidationError("Invalid verification code")
        codes, digests = await self._issue_backup_codes()
        self.store.update_user(
            user_id, totp_enabled=True, totp_verified=True, totp_backup_codes=digests
        )
        self.audit.record("auth:totp_enabled", ctx=ctx, user_id=user.id, email=user.email)
        return codes

    async def verify_login(self, user_id: str, code: str, *, use_backup_code: bool = False) -> bool:
        user = self._require_user(user_id)
        if not user.totp_enabled:
            return False
        if not use_backup_code:
            return self._verify_live_code(user, code or "")

        candidate = _normalize_backup_code(code)
        if not candidate:
            return False
        for digest in user.totp_backup_codes:
            try:
                matched = await asyncio.to_thread(self.hasher.verify, candidate, digest)
            except InvalidHashFormat:
                logger.error("backup_code_hash_malformed", user_id=user.id)
                continue
            if matched:
                # consumed atomically; a concurrent use of the same code loses
                consumed = self.store.remove_backup_code(user.id, digest)
                if consumed:
                    logger.info(
                        "backup_code_consumed",
                        user_id=user.id,
                        remaining=len(user.totp_backup_codes) - 1,
                    )
                return consumed
        return False

    async def disable(self, user_id: str, password: str, *, ctx: Optional[RequestContext] = None) -> None:
        user = self._require_user(user_id)
        if not user.totp_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        try:
            await self._require_password(user, password)
        except AuthenticationError:
            self.audit.record(
                "auth:totp_disable_failed", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="invalid_password",
            )
            raise
        self.store.update_user(
            user_id,
            totp_enabled=False,
            totp_verified=False,
            totp_secret=None,
            totp_backup_codes=[],
            totp_last_step=None,
        )
        self.audit.record("auth:totp_disabled", ctx=ctx, user_id=user.id, email=user.email)

    async def regenerate_backup_codes(
        self, user_id: str, password: str, *, ctx: Optional[RequestContext] = None
    ) -> List[str]:
        user = self._require_user(user_id)
        if not user.totp_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        await self._require_password(user, password)
        codes, digests = await self._issue_backup_codes()
        self.store.update_user(user_id, totp_backup_codes=digests)
        self.audit.record("auth:backup_codes_regenerated", ctx=ctx, user_id=user.id, email=user.email)
        return codes

    def status(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        return {
            "enabled": user.totp_enabled,
            "verified": user.totp_verified,
            "backup_codes_remaining": len(user.totp_backup_codes),
        }
