from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.audit import AuditSink, RequestContext
from gatekeeper.service.crypto import (
    PasswordHasher,
    constant_time_equals,
    random_otp,
    random_token,
    sha256_hex,
    validate_password_strength,
)
from gatekeeper.service.email import EmailService
from gatekeeper.service.errors import (
    AccountLockedError,
    AccountSuspendedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidHashFormat,
    NotFoundError,
    PasswordExpiredError,
    SessionIdleTimeoutError,
    TokenInvalidError,
    ValidationError,
)
from gatekeeper.service.federated import GoogleIdentityVerifier
from gatekeeper.service.lockout import LockoutPolicy, LockoutState
from gatekeeper.service.mfa import MFAService
from gatekeeper.service.sessions import SessionManager
from gatekeeper.service.tokens import INVALID_TOKEN_MESSAGE, TokenPair, TokenService, hash_token
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.models import (
    AuthProvider,
    LoginAttempt,
    LoginFailureReason,
    Role,
    Session,
    User,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
ACCOUNT_LOCKED_MESSAGE = "Account locked due to multiple failed login attempts"
EMAIL_NOT_VERIFIED_MESSAGE = "Please verify your email before logging in"
ACCOUNT_SUSPENDED_MESSAGE = "Your account has been suspended"
DUPLICATE_EMAIL_MESSAGE = "User with this email already exists"
PERMISSION_DENIED_MESSAGE = "You do not have permission to perform this action"
AUTH_REQUIRED_MESSAGE = "Authentication required"
INVALID_PIN_MESSAGE = "Invalid or expired verification code"
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"
PASSWORD_REUSE_MESSAGE = "New password must not match any of your recent passwords"

# Routes reachable while the password is expired
PASSWORD_EXPIRY_EXEMPT_PATHS = frozenset({"/api/auth/change-password", "/api/auth/logout"})


@dataclass
class AuthContext:
    """Identity resolved for one authenticated request."""

    user: User
    session: Optional[Session] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None


@dataclass
class AuthResult:
    user: User
    session: Optional[Session] = None
    tokens: Optional[TokenPair] = None
    requires_totp: bool = False
    mfa_token: Optional[str] = None


@dataclass
class PasswordExpiryStatus:
    expired: bool
    days_remaining: Optional[int]
    warning: bool


class AuthService:
    """Sequences credential checks, MFA, token issuance, and sessions.

    Login runs lockout, suspension, verification, and password checks in that
    order and short-circuits on the first failure. Every terminal outcome
    records a login attempt and an audit event. Unknown identities and wrong
    passwords collapse to the same error and take the same hashing time.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        tokens: TokenService,
        sessions: SessionManager,
        mfa: MFAService,
        audit: AuditSink,
        email: Optional[EmailService] = None,
        federated: Optional[GoogleIdentityVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.sessions = sessions
        self.mfa = mfa
        self.audit = audit
        self.email = email
        self.federated = federated
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.lockout = LockoutPolicy(
            threshold=settings.lockout_threshold,
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )
        self._pending: Set[asyncio.Task] = set()
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _dispatch(self, coro: Awaitable[bool], *, kind: str) -> None:
        """Run an outbound email without holding up the response."""

        async def _run() -> None:
            try:
                delivered = await coro
            except Exception as exc:
                self.logger.error(
                    "email_dispatch_failed", kind=kind, error_type=type(exc).__name__, error=str(exc)
                )
                return
            if not delivered:
                self.logger.warning("email_not_delivered", kind=kind)

        task = asyncio.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain_background(self) -> None:
        """Wait for in-flight email dispatches (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _record_attempt(
        self,
        email: str,
        success: bool,
        *,
        ctx: Optional[RequestContext],
        reason: Optional[LoginFailureReason] = None,
        user_id: Optional[str] = None,
        provider: AuthProvider = AuthProvider.LOCAL,
    ) -> None:
        ctx = ctx or RequestContext()
        try:
            self.store.add_login_attempt(
                LoginAttempt(
                    email=(email or "").strip().lower(),
                    success=success,
                    ip=ctx.ip,
                    user_agent=ctx.user_agent,
                    failure_reason=reason.value if reason else None,
                    user_id=user_id,
                    provider=provider.value,
                    created_at=self._now(),
                )
            )
        except Exception as exc:
            self.logger.error(
                "login_attempt_write_failed", error_type=type(exc).__name__, error=str(exc)
            )

    def _fail_login(
        self,
        email: str,
        reason: LoginFailureReason,
        *,
        ctx: Optional[RequestContext],
        user: Optional[User] = None,
        provider: AuthProvider = AuthProvider.LOCAL,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._record_attempt(
            email, False, ctx=ctx, reason=reason, user_id=user.id if user else None, provider=provider
        )
        self.audit.record(
            "auth:failed_login",
            ctx=ctx,
            user_id=user.id if user else None,
            email=email,
            success=False,
            reason=reason.value,
            details={"provider": provider.value, **(details or {})},
        )
        self.logger.warning("login_failed", reason=reason.value, ip=(ctx or RequestContext()).ip)

    async def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            await asyncio.to_thread(self.hasher.dummy_verify, password or "")
            return False
        try:
            return await asyncio.to_thread(self.hasher.verify, password or "", user.password_hash)
        except InvalidHashFormat:
            self.logger.error("password_hash_malformed", user_id=user.id)
            return False

    def _require_strong(self, password: str) -> None:
        problems = validate_password_strength(
            password or "", min_length=self.settings.password_min_length
        )
        if problems:
            raise ValidationError(
                "Password does not meet security requirements", detail={"errors": problems}
            )

    async def _ensure_not_reused(self, user: User, new_password: str) -> None:
        previous: List[str] = [d for d in [user.password_hash, *user.password_history] if d]
        for digest in previous[: self.settings.password_history_limit + 1]:
            try:
                matched = await asyncio.to_thread(self.hasher.verify, new_password, digest)
            except InvalidHashFormat:
                continue
            if matched:
                raise ValidationError(PASSWORD_REUSE_MESSAGE)

    async def _store_new_password(self, user: User, new_password: str, **extra: Any) -> User:
        now = self._now()
        digest = await asyncio.to_thread(self.hasher.hash, new_password)
        history = list(user.password_history)
        if user.password_hash:
            history.insert(0, user.password_hash)
        updated = self.store.update_user(
            user.id,
            password_hash=digest,
            password_history=history[: self.settings.password_history_limit],
            password_changed_at=now,
            password_expires_at=now + timedelta(days=self.settings.password_expiry_days),
            refresh_token_hash=None,
            refresh_token_expires=None,
            **extra,
        )
        if updated is None:
            raise NotFoundError("User not found")
        return updated

    def _open_session(self, user: User, *, ctx: Optional[RequestContext]) -> AuthResult:
        """Create a session bound to a fresh token pair and persist the refresh hash."""
        ctx = ctx or RequestContext()
        now = self._now()
        refresh_token, refresh_exp = self.tokens.issue_refresh_token(user)
        refresh_hash = hash_token(refresh_token)
        session = self.sessions.create(
            user.id, refresh_hash, ip=ctx.ip, user_agent=ctx.user_agent
        )
        access_token, access_exp = self.tokens.issue_access_token(user, session_id=session.id)
        updated = self.store.update_user(
            user.id,
            refresh_token_hash=refresh_hash,
            refresh_token_expires=refresh_exp,
            last_login=now,
            failed_login_attempts=0,
            account_locked_until=None,
        )
        return AuthResult(
            user=updated or user,
            session=session,
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                access_expires_at=access_exp,
                refresh_expires_at=refresh_exp,
            ),
        )

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # ------------------------------------------------------------------
    # registration and email verification
    # ------------------------------------------------------------------
    def _new_verification_pin(self) -> tuple[str, dict]:
        pin = random_otp(6)
        return pin, {
            "email_verification_pin_hash": sha256_hex(pin),
            "email_verification_expires": self._now()
            + timedelta(minutes=self.settings.email_verification_ttl_minutes),
        }

    def _send_pin(self, email: str, pin: str) -> None:
        if self.email is None:
            self.logger.warning("email_service_missing", kind="verification_pin")
            return
        self._dispatch(
            self.email.send_verification_pin(
                email, pin, ttl_minutes=self.settings.email_verification_ttl_minutes
            ),
            kind="verification_pin",
        )

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> User:
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValidationError("A valid email address is required")
        self._require_strong(password)
        if self.store.get_user_by_email(normalized):
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE)

        now = self._now()
        digest = await asyncio.to_thread(self.hasher.hash, password)
        pin, pin_fields = self._new_verification_pin()
        try:
            user = self.store.create_user(
                normalized,
                first_name=first_name or "",
                last_name=last_name or "",
                phone=phone,
                password_hash=digest,
                password_changed_at=now,
                password_expires_at=now + timedelta(days=self.settings.password_expiry_days),
                **pin_fields,
            )
        except ConstraintViolation as exc:
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE) from exc

        self._send_pin(user.email, pin)
        self.audit.record(
            "auth:register", ctx=ctx, user_id=user.id, email=user.email,
            target_type="user", target_id=user.id,
        )
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def resend_verification(self, email: str, *, ctx: Optional[RequestContext] = None) -> None:
        """Issue a new PIN; unknown or already-verified emails get the same silent result."""
        user = self.store.get_user_by_email(email)
        if not user or user.is_email_verified:
            self.logger.info("verification_resend_skipped")
            return
        pin, pin_fields = self._new_verification_pin()
        self.store.update_user(user.id, **pin_fields)
        self._send_pin(user.email, pin)
        self.audit.record("auth:verification_resent", ctx=ctx, user_id=user.id, email=user.email)

    async def verify_email(
        self, email: str, pin: str, *, ctx: Optional[RequestContext] = None
    ) -> AuthResult:
        user = self.store.get_user_by_email(email)
        if not user:
            raise ValidationError(INVALID_PIN_MESSAGE)
        if user.is_email_verified:
            raise ValidationError("Email is already verified")
        now = self._now()
        expires = user.email_verification_expires
        if (
            not expires
            or expires < now
            or not constant_time_equals(user.email_verification_pin_hash, sha256_hex((pin or "").strip()))
        ):
            self.audit.record(
                "auth:email_verification_failed", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="invalid_pin",
            )
            raise ValidationError(INVALID_PIN_MESSAGE)

        verified = self.store.update_user(
            user.id,
            is_email_verified=True,
            email_verification_pin_hash=None,
            email_verification_expires=None,
        )
        result = self._open_session(verified or user, ctx=ctx)
        self.audit.record("auth:email_verified", ctx=ctx, user_id=user.id, email=user.email)
        return result

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------
    async def login(
        self, email: str, password: str, *, ctx: Optional[RequestContext] = None
    ) -> AuthResult:
        normalized = (email or "").strip().lower()
        user = self.store.get_user_by_email(normalized)
        if not user or not user.password_hash:
            await asyncio.to_thread(self.hasher.dummy_verify, password or "")
            self._fail_login(normalized, LoginFailureReason.INVALID_CREDENTIALS, ctx=ctx, user=user)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        now = self._now()
        current = LockoutState(user.failed_login_attempts, user.account_locked_until)
        state = self.lockout.before_attempt(current, now)
        if state != current:
            self.store.update_user(
                user.id, failed_login_attempts=state.failed_attempts, account_locked_until=None
            )

        if self.lockout.is_locked(state, now):
            await asyncio.to_thread(self.hasher.dummy_verify, password or "")
            self._fail_login(normalized, LoginFailureReason.ACCOUNT_LOCKED, ctx=ctx, user=user)
            raise AccountLockedError(
                ACCOUNT_LOCKED_MESSAGE,
                detail={"locked_until": state.locked_until.isoformat()},
            )
        if user.is_suspended or not user.is_active:
            await asyncio.to_thread(self.hasher.dummy_verify, password or "")
            self._fail_login(normalized, LoginFailureReason.ACCOUNT_SUSPENDED, ctx=ctx, user=user)
            raise AccountSuspendedError(ACCOUNT_SUSPENDED_MESSAGE)
        if not user.is_email_verified:
            await asyncio.to_thread(self.hasher.dummy_verify, password or "")
            self._fail_login(normalized, LoginFailureReason.EMAIL_NOT_VERIFIED, ctx=ctx, user=user)
            raise EmailNotVerifiedError(EMAIL_NOT_VERIFIED_MESSAGE)

        if not await self._verify_password(user, password):
            failed = self.lockout.on_failure(state, now)
            self.store.update_user(
                user.id,
                failed_login_attempts=failed.failed_attempts,
                account_locked_until=failed.locked_until,
            )
            self._fail_login(
                normalized,
                LoginFailureReason.INVALID_CREDENTIALS,
                ctx=ctx,
                user=user,
                details={"failed_attempts": failed.failed_attempts},
            )
            if self.lockout.is_locked(failed, now):
                self.audit.record(
                    "security:account_locked", ctx=ctx, user_id=user.id, email=user.email,
                    success=False, reason="too_many_failed_attempts",
                    details={"locked_until": failed.locked_until.isoformat()},
                )
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        cleared = self.lockout.on_success()
        user = self.store.update_user(
            user.id,
            failed_login_attempts=cleared.failed_attempts,
            account_locked_until=cleared.locked_until,
        ) or user

        if user.totp_enabled:
            self.audit.record("auth:login_2fa_required", ctx=ctx, user_id=user.id, email=user.email)
            return AuthResult(
                user=user, requires_totp=True, mfa_token=self.tokens.issue_mfa_challenge(user)
            )

        result = self._open_session(user, ctx=ctx)
        self._record_attempt(normalized, True, ctx=ctx, user_id=user.id)
        self.audit.record(
            "auth:login", ctx=ctx, user_id=user.id, email=user.email,
            details={"session_id": result.session.id if result.session else None},
        )
        return result

    async def verify_mfa_login(
        self,
        mfa_token: str,
        code: str,
        *,
        use_backup_code: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> AuthResult:
        claims = self.tokens.verify_mfa_challenge(mfa_token)
        user = self.store.get_user(claims["sub"])
        if not user or not user.is_active:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if user.is_suspended:
            self._fail_login(user.email, LoginFailureReason.ACCOUNT_SUSPENDED, ctx=ctx, user=user)
            raise AccountSuspendedError(ACCOUNT_SUSPENDED_MESSAGE)

        if not await self.mfa.verify_login(user.id, code, use_backup_code=use_backup_code):
            self._fail_login(
                user.email,
                LoginFailureReason.INVALID_2FA_CODE,
                ctx=ctx,
                user=user,
                details={"backup_code": use_backup_code},
            )
            raise AuthenticationError("Invalid verification code")

        result = self._open_session(user, ctx=ctx)
        self._record_attempt(user.email, True, ctx=ctx, user_id=user.id)
        self.audit.record(
            "auth:login_2fa", ctx=ctx, user_id=user.id, email=user.email,
            details={"backup_code": use_backup_code},
        )
        return result

    async def google_login(self, credential: str, *, ctx: Optional[RequestContext] = None) -> AuthResult:
        if self.federated is None:
            raise AuthenticationError("Google authentication is not configured")
        try:
            identity = await self.federated.verify(credential)
        except AuthenticationError:
            self.audit.record(
                "auth:google_login", ctx=ctx, success=False, reason="credential_rejected"
            )
            raise
        if not identity.email_verified:
            self._fail_login(
                identity.email, LoginFailureReason.INVALID_CREDENTIALS, ctx=ctx,
                provider=AuthProvider.GOOGLE, details={"cause": "email_unverified"},
            )
            raise AuthenticationError("Google account email is not verified")

        user = self.store.get_user_by_google_id(identity.subject_id) or self.store.get_user_by_email(
            identity.email
        )
        created = False
        if user is None:
            try:
                user = self.store.create_user(
                    identity.email,
                    first_name=identity.given_name,
                    last_name=identity.family_name,
                    profile_image=identity.picture_url,
                    auth_provider=AuthProvider.GOOGLE.value,
                    google_id=identity.subject_id,
                    is_email_verified=True,
                )
            except ConstraintViolation as exc:
                raise ConflictError(DUPLICATE_EMAIL_MESSAGE) from exc
            created = True
        elif user.google_id is None:
            # link an existing local account that owns the same verified email
            user = self.store.update_user(
                user.id,
                google_id=identity.subject_id,
                is_email_verified=True,
                profile_image=user.profile_image or identity.picture_url,
            ) or user
            self.logger.info("google_account_linked", user_id=user.id)

        now = self._now()
        if user.is_locked(now):
            self._fail_login(
                user.email, LoginFailureReason.ACCOUNT_LOCKED, ctx=ctx, user=user,
                provider=AuthProvider.GOOGLE,
            )
            raise AccountLockedError(ACCOUNT_LOCKED_MESSAGE)
        if user.is_suspended or not user.is_active:
            self._fail_login(
                user.email, LoginFailureReason.ACCOUNT_SUSPENDED, ctx=ctx, user=user,
                provider=AuthProvider.GOOGLE,
            )
            raise AccountSuspendedError(ACCOUNT_SUSPENDED_MESSAGE)

        result = self._open_session(user, ctx=ctx)
        self._record_attempt(
            user.email, True, ctx=ctx, user_id=user.id, provider=AuthProvider.GOOGLE
        )
        self.audit.record(
            "auth:google_login", ctx=ctx, user_id=user.id, email=user.email,
            details={"created": created},
        )
        return result

    # ------------------------------------------------------------------
    # token rotation and logout
    # ------------------------------------------------------------------
    async def refresh(
        self,
        refresh_token: str,
        *,
        session_token: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AuthResult:
        """Rotate both tokens; exactly one caller wins for a given refresh token."""
        claims = self.tokens.verify_refresh(refresh_token)
        user = self.store.get_user(claims["sub"])
        if not user or not user.is_active or user.is_suspended:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)

        presented_hash = hash_token(refresh_token)
        if not constant_time_equals(user.refresh_token_hash, presented_hash):
            self.audit.record(
                "security:refresh_token_reuse", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="superseded_refresh_token",
            )
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)

        # a refresh token only works through a live session bound to it
        session: Optional[Session] = None
        if session_token:
            if self.sessions.verify(session_token, refresh_token):
                session = self.store.get_session_by_token(session_token)
        else:
            session = next(
                (
                    s
                    for s in self.sessions.list_active(user.id)
                    if constant_time_equals(s.refresh_token_hash, presented_hash)
                ),
                None,
            )
        if session is None or session.user_id != user.id:
            self.logger.warning("refresh_without_live_session", user_id=user.id)
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        try:
            session = self.sessions.touch(session.session_token)
        except SessionIdleTimeoutError:
            self.audit.record(
                "security:session_idle_timeout", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="idle_timeout",
            )
            raise

        new_refresh, refresh_exp = self.tokens.issue_refresh_token(user)
        new_hash = hash_token(new_refresh)
        if not self.store.compare_and_swap_refresh_hash(user.id, presented_hash, new_hash, refresh_exp):
            self.logger.warning("refresh_rotation_lost_race", user_id=user.id)
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        self.sessions.rebind(session.session_token, refresh_token, new_hash)

        access, access_exp = self.tokens.issue_access_token(user, session_id=session.id)
        self.audit.record(
            "auth:token_refresh", ctx=ctx, user_id=user.id, email=user.email,
            details={"session_id": session.id},
        )
        return AuthResult(
            user=user,
            session=session,
            tokens=TokenPair(
                access_token=access,
                refresh_token=new_refresh,
                access_expires_at=access_exp,
                refresh_expires_at=refresh_exp,
            ),
        )

    async def logout(
        self,
        user_id: str,
        session_token: Optional[str],
        *,
        ctx: Optional[RequestContext] = None,
    ) -> None:
        self.sessions.revoke(session_token, reason="logout")
        user = self.store.update_user(user_id, refresh_token_hash=None, refresh_token_expires=None)
        self.audit.record(
            "auth:logout", ctx=ctx, user_id=user_id, email=user.email if user else None
        )

    # ------------------------------------------------------------------
    # password lifecycle
    # ------------------------------------------------------------------
    async def forgot_password(self, email: str, *, ctx: Optional[RequestContext] = None) -> None:
        """Start a reset; the caller always sees the same outcome."""
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active or not user.password_hash:
            self.logger.info("password_reset_skipped")
            return
        token = random_token(48)
        self.store.update_user(
            user.id,
            password_reset_token_hash=sha256_hex(token),
            password_reset_expires=self._now()
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        if self.email is not None:
            self._dispatch(
                self.email.send_password_reset(
                    user.email, token, ttl_minutes=self.settings.password_reset_ttl_minutes
                ),
                kind="password_reset",
            )
        self.audit.record(
            "auth:password_reset_requested", ctx=ctx, user_id=user.id, email=user.email
        )

    async def reset_password(
        self, token: str, new_password: str, *, ctx: Optional[RequestContext] = None
    ) -> None:
        user = self.store.get_user_by_reset_token_hash(sha256_hex(token or ""))
        if (
            not user
            or not user.password_reset_expires
            or user.password_reset_expires < self._now()
        ):
            raise ValidationError(INVALID_RESET_TOKEN_MESSAGE)
        self._require_strong(new_password)
        await self._ensure_not_reused(user, new_password)
        updated = await self._store_new_password(
            user,
            new_password,
            password_reset_token_hash=None,
            password_reset_expires=None,
            failed_login_attempts=0,
            account_locked_until=None,
        )
        self.sessions.revoke_all(user.id, reason="password_reset")
        self.audit.record("auth:password_reset", ctx=ctx, user_id=user.id, email=user.email)
        if self.email is not None:
            self._dispatch(self.email.send_password_changed(updated.email), kind="password_changed")

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        session_token: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuthResult]:
        """Change the password, sign out every other session, and re-issue tokens for this one."""
        user = self._require_user(user_id)
        if not await self._verify_password(user, current_password):
            self.audit.record(
                "auth:password_change_failed", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="invalid_current_password",
            )
            raise AuthenticationError("Current password is incorrect")
        self._require_strong(new_password)
        await self._ensure_not_reused(user, new_password)
        updated = await self._store_new_password(user, new_password)
        revoked = self.sessions.revoke_all(
            user.id, except_token=session_token, reason="password_changed"
        )
        self.audit.record(
            "auth:password_changed", ctx=ctx, user_id=user.id, email=user.email,
            details={"sessions_revoked": revoked},
        )
        if self.email is not None:
            self._dispatch(self.email.send_password_changed(updated.email), kind="password_changed")

        session = self.store.get_session_by_token(session_token) if session_token else None
        if not session or not session.is_active:
            return None
        refresh, refresh_exp = self.tokens.issue_refresh_token(updated)
        refresh_hash = hash_token(refresh)
        self.store.update_session(session.id, refresh_token_hash=refresh_hash)
        self.store.compare_and_swap_refresh_hash(updated.id, None, refresh_hash, refresh_exp)
        access, access_exp = self.tokens.issue_access_token(updated, session_id=session.id)
        return AuthResult(
            user=updated,
            session=session,
            tokens=TokenPair(
                access_token=access,
                refresh_token=refresh,
                access_expires_at=access_exp,
                refresh_expires_at=refresh_exp,
            ),
        )

    def password_expiry(self, user: User) -> PasswordExpiryStatus:
        if not user.password_expires_at or not user.password_hash:
            return PasswordExpiryStatus(expired=False, days_remaining=None, warning=False)
        remaining = user.password_expires_at - self._now()
        if remaining.total_seconds() <= 0:
            return PasswordExpiryStatus(expired=True, days_remaining=0, warning=False)
        days = remaining.days + (1 if remaining.seconds or remaining.microseconds else 0)
        return PasswordExpiryStatus(
            expired=False,
            days_remaining=days,
            warning=days <= self.settings.password_expiry_warning_days,
        )

    def check_password_expiry(self, user: User, *, path: str = "") -> PasswordExpiryStatus:
        """Block expired passwords everywhere but the change-password route."""
        status = self.password_expiry(user)
        if status.expired and path not in PASSWORD_EXPIRY_EXEMPT_PATHS:
            raise PasswordExpiredError(
                "Your password has expired. Please change your password.",
                detail={"password_expires_at": user.password_expires_at.isoformat()},
            )
        return status

    # ------------------------------------------------------------------
    # request authentication
    # ------------------------------------------------------------------
    async def authenticate(
        self,
        access_token: Optional[str],
        session_token: Optional[str] = None,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> AuthContext:
        if not access_token:
            raise AuthenticationError(AUTH_REQUIRED_MESSAGE)
        claims = self.tokens.verify_access(access_token)
        user = self.store.get_user(claims["sub"])
        if not user or not user.is_active:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if user.is_suspended:
            raise AccountSuspendedError(ACCOUNT_SUSPENDED_MESSAGE)

        # every issued access token names its session
        bound = self.store.get_session(claims.get("sid") or "")
        if not bound or bound.user_id != user.id:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if session_token and not constant_time_equals(bound.session_token, session_token):
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)

        try:
            session = self.sessions.touch(bound.session_token)
        except SessionIdleTimeoutError:
            self.audit.record(
                "security:session_idle_timeout", ctx=ctx, user_id=user.id, email=user.email,
                success=False, reason="idle_timeout",
            )
            raise
        return AuthContext(user=user, session=session, claims=claims)

    async def optional_authenticate(
        self,
        access_token: Optional[str],
        session_token: Optional[str] = None,
        *,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuthContext]:
        if not access_token:
            return None
        try:
            return await self.authenticate(access_token, session_token, ctx=ctx)
        except (AuthenticationError, AuthorizationError):
            return None

    @staticmethod
    def authorize(identity: AuthContext, allowed_roles: Iterable[str]) -> bool:
        allowed = set(allowed_roles)
        return not allowed or identity.role in allowed

    def require_roles(self, identity: AuthContext, allowed_roles: Iterable[str]) -> None:
        if not self.authorize(identity, allowed_roles):
            raise AuthorizationError(PERMISSION_DENIED_MESSAGE)

    def get_me(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        status = self.password_expiry(user)
        profile = user.to_public()
        profile["password_expiry"] = {
            "expired": status.expired,
            "days_remaining": status.days_remaining,
            "warning": status.warning,
        }
        return profile

    # ------------------------------------------------------------------
    # administration
    # ------------------------------------------------------------------
    def suspend_user(
        self, admin: AuthContext, user_id: str, reason: str, *, ctx: Optional[RequestContext] = None
    ) -> User:
        target = self._require_user(user_id)
        if target.id == admin.user_id:
            raise ValidationError("You cannot suspend your own account")
        if target.role == Role.ADMIN.value:
            raise AuthorizationError(PERMISSION_DENIED_MESSAGE)
        updated = self.store.update_user(
            target.id,
            is_suspended=True,
            suspension_reason=reason or None,
            refresh_token_hash=None,
            refresh_token_expires=None,
        )
        revoked = self.sessions.revoke_all(target.id, reason="suspended")
        self.audit.record(
            "admin:suspend_user", ctx=ctx, user_id=admin.user_id, email=admin.user.email,
            target_type="user", target_id=target.id,
            details={"reason": reason, "sessions_revoked": revoked},
        )
        return updated or target

    def unsuspend_user(
        self, admin: AuthContext, user_id: str, *, ctx: Optional[RequestContext] = None
    ) -> User:
        target = self._require_user(user_id)
        updated = self.store.update_user(target.id, is_suspended=False, suspension_reason=None)
        self.audit.record(
            "admin:unsuspend_user", ctx=ctx, user_id=admin.user_id, email=admin.user.email,
            target_type="user", target_id=target.id,
        )
        return updated or target

    def unlock_user(
        self, admin: AuthContext, user_id: str, *, ctx: Optional[RequestContext] = None
    ) -> User:
        target = self._require_user(user_id)
        updated = self.store.update_user(
            target.id, failed_login_attempts=0, account_locked_until=None
        )
        self.audit.record(
            "admin:unlock_user", ctx=ctx, user_id=admin.user_id, email=admin.user.email,
            target_type="user", target_id=target.id,
        )
        return updated or target

    def cleanup(self) -> dict:
        """Periodic housekeeping for sessions and stale login attempts."""
        swept = self.sessions.cleanup()
        pruned = self.store.prune_login_attempts(
            self._now() - timedelta(days=self.settings.login_attempt_retention_days)
        )
        return {**swept, "login_attempts": pruned}
