from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from gatekeeper.api.dependencies import (
    REFRESH_COOKIE,
    SESSION_COOKIE,
    auth_payload,
    clear_auth_cookies,
    enforce_auth_rate_limit,
    get_admin_identity,
    get_current_identity,
    request_context,
    set_auth_cookies,
    set_csrf_cookie,
    verify_captcha,
)
from gatekeeper.api.schemas import (
    EmailRequest,
    Envelope,
    GoogleLoginRequest,
    LoginRequest,
    MFALoginRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    RefreshRequest,
    RegisterRequest,
    SuspendRequest,
    TOTPConfirmRequest,
    VerifyEmailRequest,
)
from gatekeeper.logging import get_logger
from gatekeeper.service.auth import AuthContext
from gatekeeper.service.errors import AuthenticationError
from gatekeeper.service.runtime import get_runtime

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
totp_router = APIRouter(prefix="/api/auth/totp", tags=["totp"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
audit_router = APIRouter(prefix="/api/audit", tags=["audit"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])

_rate_limited = [Depends(enforce_auth_rate_limit)]


class BlockIPRequest(BaseModel):
    ip: str = Field(..., min_length=2, max_length=64)
    reason: str = Field(default="manual", max_length=200)
    ttl_seconds: Optional[int] = Field(default=None, ge=60)


# ----------------------------------------------------------------------
# /api/auth
# ----------------------------------------------------------------------
@auth_router.post("/register", response_model=Envelope, status_code=201, dependencies=_rate_limited)
async def register(body: RegisterRequest, request: Request):
    """Create a local account and send the email verification PIN.

    The account cannot log in until the PIN is confirmed via ``/verify-email``.
    """
    await verify_captcha(request, body.captcha_token)
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        ctx=request_context(request),
    )
    return Envelope(
        message="Registration successful. Please check your email for the verification code.",
        data={"user": user.to_public()},
    )


@auth_router.post("/verify-email", response_model=Envelope, dependencies=_rate_limited)
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.verify_email(body.email, body.pin, ctx=request_context(request))
    set_auth_cookies(response, result)
    return Envelope(message="Email verified successfully", data=auth_payload(result))


@auth_router.post("/resend-verification", response_model=Envelope, dependencies=_rate_limited)
async def resend_verification(body: EmailRequest, request: Request):
    await get_runtime().auth.resend_verification(body.email, ctx=request_context(request))
    return Envelope(
        message="If the account exists and is not yet verified, a new code has been sent."
    )


@auth_router.post("/login", response_model=Envelope, dependencies=_rate_limited)
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login.

    When TOTP is enabled the response carries ``requires_totp`` and an
    ``mfa_token`` for ``/login/2fa`` instead of session cookies.
    """
    await verify_captcha(request, body.captcha_token)
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, ctx=request_context(request))
    if result.requires_totp:
        return Envelope(
            message="Two-factor authentication required",
            data={"requires_totp": True, "mfa_token": result.mfa_token},
        )
    set_auth_cookies(response, result)
    return Envelope(message="Login successful", data=auth_payload(result))


@auth_router.post("/login/2fa", response_model=Envelope, dependencies=_rate_limited)
async def login_second_factor(body: MFALoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa_login(
        body.mfa_token,
        body.code,
        use_backup_code=body.use_backup_code,
        ctx=request_context(request),
    )
    set_auth_cookies(response, result)
    return Envelope(message="Login successful", data=auth_payload(result))


@auth_router.post("/google", response_model=Envelope, dependencies=_rate_limited)
async def google_login(body: GoogleLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.google_login(body.credential, ctx=request_context(request))
    set_auth_cookies(response, result)
    return Envelope(message="Login successful", data=auth_payload(result))


@auth_router.post("/refresh", response_model=Envelope)
async def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise AuthenticationError("Refresh token required")
    result = await runtime.auth.refresh(
        token,
        session_token=request.cookies.get(SESSION_COOKIE),
        ctx=request_context(request),
    )
    set_auth_cookies(response, result)
    return Envelope(message="Token refreshed", data=auth_payload(result))


@auth_router.post("/logout", response_model=Envelope)
async def logout(
    request: Request, response: Response, identity: AuthContext = Depends(get_current_identity)
):
    session_token = identity.session.session_token if identity.session else None
    await get_runtime().auth.logout(
        identity.user_id, session_token, ctx=request_context(request)
    )
    clear_auth_cookies(response)
    return Envelope(message="Logged out successfully")


@auth_router.post("/forgot-password", response_model=Envelope, dependencies=_rate_limited)
async def forgot_password(body: EmailRequest, request: Request):
    await get_runtime().auth.forgot_password(body.email, ctx=request_context(request))
    return Envelope(
        message="If an account with that email exists, a password reset link has been sent."
    )


@auth_router.post("/reset-password", response_model=Envelope, dependencies=_rate_limited)
async def reset_password(body: PasswordResetConfirm, request: Request):
    await get_runtime().auth.reset_password(
        body.token, body.new_password, ctx=request_context(request)
    )
    return Envelope(message="Password has been reset. Please log in with your new password.")


@auth_router.post("/change-password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    identity: AuthContext = Depends(get_current_identity),
):
    result = await get_runtime().auth.change_password(
        identity.user_id,
        body.current_password,
        body.new_password,
        session_token=identity.session.session_token if identity.session else None,
        ctx=request_context(request),
    )
    if result is not None:
        set_auth_cookies(response, result)
    return Envelope(message="Password changed successfully")


@auth_router.get("/me", response_model=Envelope)
async def me(identity: AuthContext = Depends(get_current_identity)):
    return Envelope(data={"user": get_runtime().auth.get_me(identity.user_id)})


@auth_router.get("/csrf-token", response_model=Envelope)
async def csrf_token(response: Response):
    return Envelope(data={"csrf_token": set_csrf_cookie(response)})


# ----------------------------------------------------------------------
# /api/auth/totp
# ----------------------------------------------------------------------
@totp_router.post("/setup", response_model=Envelope)
async def totp_setup(identity: AuthContext = Depends(get_current_identity)):
    data = get_runtime().mfa.setup(identity.user_id)
    return Envelope(
        message="Scan the QR code with your authenticator app, then confirm a code", data=data
    )


@totp_router.post("/verify-setup", response_model=Envelope)
async def totp_verify_setup(
    body: TOTPConfirmRequest, request: Request, identity: AuthContext = Depends(get_current_identity)
):
    codes = await get_runtime().mfa.confirm_setup(
        identity.user_id, body.secret, body.code, ctx=request_context(request)
    )
    return Envelope(
        message="Two-factor authentication enabled. Store these backup codes safely.",
        data={"backup_codes": codes},
    )


@totp_router.post("/disable", response_model=Envelope)
async def totp_disable(
    body: PasswordConfirmRequest,
    request: Request,
    identity: AuthContext = Depends(get_current_identity),
):
    await get_runtime().mfa.disable(identity.user_id, body.password, ctx=request_context(request))
    return Envelope(message="Two-factor authentication disabled")


@totp_router.post("/backup-codes/regenerate", response_model=Envelope)
async def totp_regenerate_codes(
    body: PasswordConfirmRequest,
    request: Request,
    identity: AuthContext = Depends(get_current_identity),
):
    codes = await get_runtime().mfa.regenerate_backup_codes(
        identity.user_id, body.password, ctx=request_context(request)
    )
    return Envelope(message="Backup codes regenerated", data={"backup_codes": codes})


@totp_router.get("/status", response_model=Envelope)
async def totp_status(identity: AuthContext = Depends(get_current_identity)):
    return Envelope(data=get_runtime().mfa.status(identity.user_id))


# ----------------------------------------------------------------------
# /api/sessions
# ----------------------------------------------------------------------
@sessions_router.get("", response_model=Envelope)
async def list_sessions(identity: AuthContext = Depends(get_current_identity)):
    current = identity.session.session_token if identity.session else None
    sessions = get_runtime().sessions.list_active(identity.user_id)
    return Envelope(data={"sessions": [s.to_public(current_token=current) for s in sessions]})


@sessions_router.get("/stats", response_model=Envelope)
async def session_stats(identity: AuthContext = Depends(get_current_identity)):
    return Envelope(data=get_runtime().sessions.stats(identity.user_id))


@sessions_router.delete("/others", response_model=Envelope)
async def revoke_other_sessions(
    request: Request, identity: AuthContext = Depends(get_current_identity)
):
    runtime = get_runtime()
    current = identity.session.session_token if identity.session else None
    count = runtime.sessions.revoke_all(identity.user_id, except_token=current, reason="user_revoked_others")
    runtime.audit.record(
        "security:sessions_revoked", ctx=request_context(request), user_id=identity.user_id,
        email=identity.user.email, details={"count": count},
    )
    return Envelope(message=f"Revoked {count} session(s)", data={"revoked": count})


@sessions_router.delete("/{session_id}", response_model=Envelope)
async def revoke_session(
    session_id: str, request: Request, identity: AuthContext = Depends(get_current_identity)
):
    runtime = get_runtime()
    revoked = runtime.sessions.revoke_by_id(identity.user_id, session_id)
    runtime.audit.record(
        "security:session_revoked", ctx=request_context(request), user_id=identity.user_id,
        email=identity.user.email, target_type="session", target_id=revoked.id,
    )
    return Envelope(message="Session revoked")


@sessions_router.post("/{session_id}/trust", response_model=Envelope)
async def trust_session(session_id: str, identity: AuthContext = Depends(get_current_identity)):
    session = get_runtime().sessions.trust(identity.user_id, session_id)
    return Envelope(message="Session marked as trusted", data={"session": session.to_public()})


# ----------------------------------------------------------------------
# /api/audit
# ----------------------------------------------------------------------
@audit_router.get("/my-activity", response_model=Envelope)
async def my_activity(
    identity: AuthContext = Depends(get_current_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
):
    data = get_runtime().audit_reader.activity(
        identity.user_id,
        page=page,
        limit=limit,
        category=category,
        action=action,
        start=start_date,
        end=end_date,
    )
    return Envelope(data=data)


@audit_router.get("/login-history", response_model=Envelope)
async def login_history(
    identity: AuthContext = Depends(get_current_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    return Envelope(
        data=get_runtime().audit_reader.login_history(identity.user_id, page=page, limit=limit)
    )


@audit_router.get("/security-events", response_model=Envelope)
async def my_security_events(
    identity: AuthContext = Depends(get_current_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    return Envelope(
        data=get_runtime().audit_reader.security_events(identity.user_id, page=page, limit=limit)
    )


@audit_router.get("/my-stats", response_model=Envelope)
async def my_stats(identity: AuthContext = Depends(get_current_identity)):
    return Envelope(data=get_runtime().audit_reader.user_stats(identity.user_id))


@audit_router.get("/admin/logs", response_model=Envelope)
async def admin_logs(
    admin: AuthContext = Depends(get_admin_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    category: Optional[str] = None,
    severity: Optional[str] = None,
    user_id: Optional[str] = None,
    success: Optional[bool] = None,
):
    data = get_runtime().audit_reader.all_logs(
        page=page, limit=limit, category=category, severity=severity, user_id=user_id, success=success
    )
    return Envelope(data=data)


@audit_router.get("/admin/security-events", response_model=Envelope)
async def admin_security_events(
    admin: AuthContext = Depends(get_admin_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
):
    return Envelope(data=get_runtime().audit_reader.admin_security_events(page=page, limit=limit))


@audit_router.get("/admin/failed-logins", response_model=Envelope)
async def admin_failed_logins(
    admin: AuthContext = Depends(get_admin_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
):
    return Envelope(data=get_runtime().audit_reader.failed_logins(page=page, limit=limit))


@audit_router.get("/admin/stats", response_model=Envelope)
async def admin_stats(admin: AuthContext = Depends(get_admin_identity)):
    return Envelope(data=get_runtime().audit_reader.admin_stats())


@audit_router.get("/admin/users/{user_id}", response_model=Envelope)
async def admin_user_logs(
    user_id: str,
    admin: AuthContext = Depends(get_admin_identity),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
):
    return Envelope(data=get_runtime().audit_reader.activity(user_id, page=page, limit=limit))


# ----------------------------------------------------------------------
# /api/admin
# ----------------------------------------------------------------------
@admin_router.post("/users/{user_id}/suspend", response_model=Envelope)
async def suspend_user(
    user_id: str,
    body: SuspendRequest,
    request: Request,
    admin: AuthContext = Depends(get_admin_identity),
):
    user = get_runtime().auth.suspend_user(admin, user_id, body.reason, ctx=request_context(request))
    return Envelope(message="User suspended", data={"user": user.to_public()})


@admin_router.post("/users/{user_id}/unsuspend", response_model=Envelope)
async def unsuspend_user(
    user_id: str, request: Request, admin: AuthContext = Depends(get_admin_identity)
):
    user = get_runtime().auth.unsuspend_user(admin, user_id, ctx=request_context(request))
    return Envelope(message="User unsuspended", data={"user": user.to_public()})


@admin_router.post("/users/{user_id}/unlock", response_model=Envelope)
async def unlock_user(user_id: str, request: Request, admin: AuthContext = Depends(get_admin_identity)):
    user = get_runtime().auth.unlock_user(admin, user_id, ctx=request_context(request))
    return Envelope(message="User unlocked", data={"user": user.to_public()})


@admin_router.post("/ip-blocks", response_model=Envelope, status_code=201)
async def block_ip(
    body: BlockIPRequest, request: Request, admin: AuthContext = Depends(get_admin_identity)
):
    runtime = get_runtime()
    await runtime.cache.block_ip(body.ip, reason=body.reason, ttl_seconds=body.ttl_seconds)
    runtime.audit.record(
        "admin:block_ip", ctx=request_context(request), user_id=admin.user_id,
        email=admin.user.email, target_type="ip", target_id=body.ip,
        details={"reason": body.reason, "ttl_seconds": body.ttl_seconds},
    )
    logger.info("ip_blocked", ip=body.ip, ttl_seconds=body.ttl_seconds, admin_id=admin.user_id)
    return Envelope(message="IP blocked")


@admin_router.delete("/ip-blocks/{ip}", response_model=Envelope)
async def unblock_ip(ip: str, request: Request, admin: AuthContext = Depends(get_admin_identity)):
    runtime = get_runtime()
    removed = await runtime.cache.unblock_ip(ip)
    logger.info("ip_unblocked", ip=ip, removed=removed, admin_id=admin.user_id)
    runtime.audit.record(
        "admin:unblock_ip", ctx=request_context(request), user_id=admin.user_id,
        email=admin.user.email, target_type="ip", target_id=ip,
    )
    return Envelope(message="IP unblocked" if removed else "IP was not blocked")


@admin_router.post("/maintenance/cleanup", response_model=Envelope)
async def run_cleanup(admin: AuthContext = Depends(get_admin_identity)):
    return Envelope(message="Cleanup complete", data=get_runtime().auth.cleanup())


routers = (auth_router, totp_router, sessions_router, audit_router, admin_router)
