from __future__ import annotations

import asyncio
import contextlib
import hmac
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gatekeeper.api.dependencies import AUTH_COOKIES, CSRF_COOKIE, CSRF_HEADER, client_ip
from gatekeeper.api.error_handling import error_response, register_exception_handlers
from gatekeeper.api.routes import routers
from gatekeeper.config import get_settings
from gatekeeper.logging import get_logger, set_correlation_id
from gatekeeper.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# Login-type endpoints have no session yet, so there is nothing to forge
_CSRF_EXEMPT_PATHS = {
    "/api/auth/login",
    "/api/auth/login/2fa",
    "/api/auth/register",
    "/api/auth/google",
    "/api/auth/verify-email",
}

_cleanup_task: asyncio.Task | None = None


async def _run_periodic_cleanup(interval_seconds: int) -> None:
    """Sweep expired sessions and stale login attempts until cancelled."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                swept = get_runtime().auth.cleanup()
                logger.info("periodic_cleanup_completed", **swept)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("periodic_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("periodic_cleanup_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_periodic_cleanup(runtime.settings.cleanup_interval_seconds)
    )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        runtime = get_runtime()
        await runtime.auth.drain_background()
        await runtime.cache.close()
        logger.info("runtime_shutdown_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Gatekeeper", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # credentials are allowed, so never fall back to a wildcard
    return ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-CSRF-Token",
        "X-Session-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "X-Password-Expiry-Warning", "X-Password-Expiry-Days"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for cookie-authenticated state-changing requests.

    Bearer-authenticated calls and requests without auth cookies pass through.
    """
    if request.method.upper() in _CSRF_SAFE_METHODS or request.url.path in _CSRF_EXEMPT_PATHS:
        return await call_next(request)
    if request.headers.get("Authorization"):
        return await call_next(request)
    if not any(request.cookies.get(name) for name in AUTH_COOKIES):
        return await call_next(request)
    header_token = request.headers.get(CSRF_HEADER) or ""
    cookie_token = request.cookies.get(CSRF_COOKIE) or ""
    if (
        not header_token
        or not cookie_token
        or not hmac.compare_digest(header_token.encode(), cookie_token.encode())
    ):
        logger.warning("csrf_rejected", path=request.url.path, method=request.method)
        return error_response(403, "Invalid or missing CSRF token", code="csrf_invalid")
    return await call_next(request)


@app.middleware("http")
async def reject_blocked_ips(request: Request, call_next):
    ip = client_ip(request)
    if ip and await get_runtime().cache.is_ip_blocked(ip):
        logger.warning("blocked_ip_rejected", ip=ip, path=request.url.path)
        return error_response(403, "Access denied", code="ip_blocked")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


# registered last so it wraps every other middleware
@app.middleware("http")
async def add_correlation_id(request, call_next):
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
for _router in routers:
    app.include_router(_router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    checks: Dict[str, Any] = {"store": {"status": "healthy", "type": "memory"}}
    verify = getattr(runtime.cache, "verify_connection", None)
    if verify is None:
        checks["cache"] = {"status": "healthy", "type": "memory"}
    else:
        try:
            await asyncio.to_thread(verify)
            checks["cache"] = {"status": "healthy", "type": "redis"}
        except Exception as exc:
            logger.error("health_check_cache_failed", error=str(exc))
            checks["cache"] = {"status": "unhealthy", "type": "redis"}
    healthy = all(c["status"] == "healthy" for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
