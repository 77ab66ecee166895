from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.crypto import sha256_hex
from gatekeeper.service.errors import TokenExpiredError, TokenInvalidError
from gatekeeper.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
MFA_CHALLENGE = "mfa_challenge"

INVALID_TOKEN_MESSAGE = "Invalid or expired token"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    @property
    def refresh_token_hash(self) -> str:
        return hash_token(self.refresh_token)


def hash_token(token: str) -> str:
    """Storage form of a refresh token; the raw token is never persisted."""
    return sha256_hex(token)


class TokenService:
    """Issues and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``typ`` claim, so one can never be replayed as the other. Verification
    raises ``TokenExpiredError`` only for otherwise-valid tokens whose ``exp``
    has passed; every other failure is ``TokenInvalidError``.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_access_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, claims: dict[str, Any], token_type: str, ttl: timedelta) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + ttl
        payload = {
            **claims,
            "typ": token_type,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            # unique per issuance so same-second rotations never collide
            "jti": str(uuid.uuid4()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}", expires_at

    def _decode(self, token: Optional[str], token_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        # reject alg confusion (none, RS256 with an HMAC secret, ...)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed", token_type=token_type)
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if not isinstance(payload, dict):
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if payload.get("typ") != token_type:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub"):
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError(INVALID_TOKEN_MESSAGE)
        if exp_ts <= self._clock().timestamp():
            raise TokenExpiredError("Token expired")
        return payload

    def issue_access_token(self, user: User, *, session_id: Optional[str] = None) -> tuple[str, datetime]:
        claims: dict[str, Any] = {"sub": user.id, "email": user.email, "role": user.role}
        if session_id:
            claims["sid"] = session_id
        return self._encode(
            claims, ACCESS, timedelta(minutes=self.settings.access_token_ttl_minutes)
        )

    def issue_refresh_token(self, user: User) -> tuple[str, datetime]:
        return self._encode(
            {"sub": user.id}, REFRESH, timedelta(days=self.settings.refresh_token_ttl_days)
        )

    def issue_pair(self, user: User, *, session_id: Optional[str] = None) -> TokenPair:
        access, access_exp = self.issue_access_token(user, session_id=session_id)
        refresh, refresh_exp = self.issue_refresh_token(user)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue_mfa_challenge(self, user: User) -> str:
        token, _ = self._encode(
            {"sub": user.id},
            MFA_CHALLENGE,
            timedelta(minutes=self.settings.mfa_challenge_ttl_minutes),
        )
        return token

    def verify_access(self, token: Optional[str]) -> dict[str, Any]:
        return self._decode(token, ACCESS)

    def verify_refresh(self, token: Optional[str]) -> dict[str, Any]:
        return self._decode(token, REFRESH)

    def verify_mfa_challenge(self, token: Optional[str]) -> dict[str, Any]:
        return self._decode(token, MFA_CHALLENGE)
