from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import AuthenticationError

logger = get_logger(__name__)

GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
FEDERATION_FAILED_MESSAGE = "Google authentication failed"


@dataclass
class FederatedIdentity:
    subject_id: str
    email: str
    email_verified: bool
    given_name: str = ""
    family_name: str = ""
    picture_url: Optional[str] = None


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


class GoogleIdentityVerifier:
    """Verify a Google ID token credential via the token-info endpoint.

    Every failure mode (timeout, transport error, non-200, audience or issuer
    mismatch, missing claims) fails closed with ``AuthenticationError``.
    """

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.google_client_id)

    async def verify(self, credential: str) -> FederatedIdentity:
        if not self.configured:
            logger.error("google_client_id_missing")
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE)
        if not credential:
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE)

        timeout = httpx.Timeout(self.settings.federation_timeout_seconds)
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(
                    self.settings.google_tokeninfo_url, params={"id_token": credential}
                )
                response.raise_for_status()
                claims = response.json()
        except httpx.TimeoutException as exc:
            logger.error("google_verify_timeout", error=str(exc))
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "google_verify_rejected", status_code=exc.response.status_code
            )
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE) from exc
        except httpx.HTTPError as exc:
            logger.error("google_verify_transport_error", error=str(exc))
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE) from exc
        except ValueError as exc:
            logger.error("google_verify_parse_error", error=str(exc))
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE) from exc

        if not isinstance(claims, dict):
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE)
        if claims.get("aud") != self.settings.google_client_id:
            logger.warning("google_audience_mismatch")
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE)
        if claims.get("iss") not in GOOGLE_ISSUERS:
            logger.warning("google_issuer_mismatch", issuer=claims.get("iss"))
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE)
        subject_id = claims.get("sub")
        email = claims.get("email")
        if not subject_id or not email:
            logger.warning("google_identity_incomplete")
            raise AuthenticationError(FEDERATION_FAILED_MESSAGE)

        return FederatedIdentity(
            subject_id=str(subject_id),
            email=str(email).strip().lower(),
            email_verified=_as_bool(claims.get("email_verified")),
            given_name=claims.get("given_name") or "",
            family_name=claims.get("family_name") or "",
            picture_url=claims.get("picture"),
        )
