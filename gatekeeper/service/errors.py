from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Raised by the auth services; the API layer renders it as an error envelope.

    Subclasses pin an HTTP status_code and an error_code string that
    clients branch on:
    - validation_error (400)
    - unauthorized / TOKEN_EXPIRED / TOKEN_INVALID / SESSION_IDLE_TIMEOUT (401)
    - forbidden / ACCOUNT_SUSPENDED / EMAIL_NOT_VERIFIED / PASSWORD_EXPIRED (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any state changed."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """No usable credentials on the request."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but its lifetime has passed; refresh may help."""
    error_code = "TOKEN_EXPIRED"


class TokenInvalidError(AuthenticationError):
    """Bad signature, claims, type, or a superseded refresh token; re-authenticate."""
    error_code = "TOKEN_INVALID"


class SessionIdleTimeoutError(AuthenticationError):
    """Session exceeded the idle window and was deactivated (401)."""
    error_code = "SESSION_IDLE_TIMEOUT"


class AccountLockedError(AuthenticationError):
    error_code = "ACCOUNT_LOCKED"


class AuthorizationError(ServiceError):
    """Authenticated, but the role or account state forbids it."""
    status_code = 403
    error_code = "forbidden"


class AccountSuspendedError(AuthorizationError):
    error_code = "ACCOUNT_SUSPENDED"


class EmailNotVerifiedError(AuthorizationError):
    error_code = "EMAIL_NOT_VERIFIED"


class PasswordExpiredError(AuthorizationError):
    error_code = "PASSWORD_EXPIRED"


class NotFoundError(ServiceError):
    """Unknown user, session or token id."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email already registered or a concurrent update lost the race."""
    status_code = 409
    error_code = "conflict"


class RateLimitError(ServiceError):
    """Too many attempts from one client inside the window."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Unexpected failure; the message is never shown verbatim."""
    status_code = 500
    error_code = "server_error"


class CryptoError(Exception):
    """Base class for crypto primitive failures; never mapped to a client message."""


class HashingError(CryptoError):
    pass


class InvalidHashFormat(CryptoError):
    pass


class EncryptionError(CryptoError):
    pass


class DecryptionError(CryptoError):
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "SessionIdleTimeoutError",
    "AccountLockedError",
    "AuthorizationError",
    "AccountSuspendedError",
    "EmailNotVerifiedError",
    "PasswordExpiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServerError",
    "CryptoError",
    "HashingError",
    "InvalidHashFormat",
    "EncryptionError",
    "DecryptionError",
]
