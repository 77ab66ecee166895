from __future__ import annotations

import secrets
from typing import Callable, Optional

from fastapi import Depends, Header, Request, Response

from gatekeeper.logging import get_logger
from gatekeeper.service.audit import RequestContext
from gatekeeper.service.auth import AuthContext, AuthResult
from gatekeeper.service.errors import RateLimitError, ValidationError
from gatekeeper.service.runtime import get_runtime

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
SESSION_COOKIE = "sessionToken"
CSRF_COOKIE = "csrf-token"
CSRF_HEADER = "x-csrf-token"
AUTH_COOKIES = (ACCESS_COOKIE, REFRESH_COOKIE, SESSION_COOKIE)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        method=request.method,
        path=request.url.path,
        session_id=getattr(request.state, "session_id", None),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def set_csrf_cookie(response: Response, token: Optional[str] = None) -> str:
    settings = get_runtime().settings
    token = token or secrets.token_hex(32)
    response.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 3600,
        path="/",
    )
    return token


def set_auth_cookies(response: Response, result: AuthResult) -> None:
    if not result.tokens:
        return
    settings = get_runtime().settings
    common = {"httponly": True, "secure": settings.cookie_secure, "samesite": "strict", "path": "/"}
    response.set_cookie(
        ACCESS_COOKIE,
        result.tokens.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        **common,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        result.tokens.refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 3600,
        **common,
    )
    if result.session:
        response.set_cookie(
            SESSION_COOKIE,
            result.session.session_token,
            max_age=settings.session_absolute_ttl_days * 24 * 3600,
            **common,
        )
    set_csrf_cookie(response)


def clear_auth_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (*AUTH_COOKIES, CSRF_COOKIE):
        response.delete_cookie(name, path="/", secure=settings.cookie_secure, samesite="strict")


def auth_payload(result: AuthResult) -> dict:
    data: dict = {"user": result.user.to_public()}
    if result.session:
        data["session_id"] = result.session.id
    if result.tokens:
        data.update(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            access_expires_at=result.tokens.access_expires_at.isoformat(),
            refresh_expires_at=result.tokens.refresh_expires_at.isoformat(),
            token_type="bearer",
        )
    return data


async def get_current_identity(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Authenticate, touch the session, then apply the password-expiry gate."""
    runtime = get_runtime()
    access_token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    session_token = request.cookies.get(SESSION_COOKIE) or request.headers.get("x-session-token")
    identity = await runtime.auth.authenticate(
        access_token, session_token, ctx=request_context(request)
    )
    request.state.session_id = identity.session_id
    status = runtime.auth.check_password_expiry(identity.user, path=request.url.path)
    if status.warning and status.days_remaining is not None:
        response.headers["X-Password-Expiry-Warning"] = "true"
        response.headers["X-Password-Expiry-Days"] = str(status.days_remaining)
    return identity


async def get_optional_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    access_token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    session_token = request.cookies.get(SESSION_COOKIE) or request.headers.get("x-session-token")
    return await runtime.auth.optional_authenticate(
        access_token, session_token, ctx=request_context(request)
    )


def require_roles(*roles: str) -> Callable:
    async def _dependency(identity: AuthContext = Depends(get_current_identity)) -> AuthContext:
        get_runtime().auth.require_roles(identity, roles)
        return identity

    return _dependency


get_admin_identity = require_roles("admin")


async def enforce_auth_rate_limit(request: Request) -> None:
    runtime = get_runtime()
    key = f"auth:{client_ip(request) or 'unknown'}:{request.url.path}"
    allowed = await runtime.cache.check_rate_limit(
        key, runtime.settings.auth_rate_limit, runtime.settings.auth_rate_window_seconds
    )
    if not allowed:
        logger.warning("auth_rate_limited", path=request.url.path, ip=client_ip(request))
        raise RateLimitError("Too many authentication attempts, please try again later")


async def verify_captcha(request: Request, token: Optional[str]) -> None:
    result = await get_runtime().captcha.verify(token, client_ip(request))
    if not result.success:
        raise ValidationError("CAPTCHA verification failed")
