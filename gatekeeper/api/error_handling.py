from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from gatekeeper.api.dependencies import clear_auth_cookies
from gatekeeper.api.schemas import ErrorEnvelope
from gatekeeper.config import get_settings
from gatekeeper.logging import get_logger, sanitize_error_message
from gatekeeper.service.errors import ServiceError, SessionIdleTimeoutError
from gatekeeper.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    *,
    expose_details: bool = True,
) -> JSONResponse:
    """Build ``{"success": false, "message", "code"}``; ``details`` only when exposed."""
    body = ErrorEnvelope(
        message=message,
        code=code or _error_code_for_status(status_code),
        details=details if expose_details and details else None,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _dev_mode() -> bool:
    return get_settings().dev_mode


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for domain, storage, and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return error_response(409, exc.message, exc.detail, code="conflict", expose_details=_dev_mode())

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        # password rule violations are actionable, everything else is dev-only
        expose = _dev_mode() or (exc.status_code == 400 and "errors" in exc.detail)
        response = error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, expose_details=expose
        )
        if isinstance(exc, SessionIdleTimeoutError):
            clear_auth_cookies(response)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, count=len(problems))
        return error_response(400, "Validation failed", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error", path=request.url.path, method=request.method, status_code=exc.status_code
            )
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        details = {"error": sanitize_error_message(str(exc))} if _dev_mode() else None
        return error_response(500, "Internal server error", details, code="server_error")
