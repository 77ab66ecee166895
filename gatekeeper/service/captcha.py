from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CaptchaResult:
    success: bool
    score: Optional[float] = None
    bypassed: bool = False


class CaptchaVerifier:
    """reCAPTCHA v3 verification; timeouts and errors count as failures."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def bypass_allowed(self) -> bool:
        return not self.settings.captcha_secret_key and (
            self.settings.test_mode or self.settings.dev_mode
        )

    async def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> CaptchaResult:
        if self.bypass_allowed:
            return CaptchaResult(success=True, bypassed=True)
        if not self.settings.captcha_secret_key:
            logger.error("captcha_secret_missing")
            return CaptchaResult(success=False)
        if not token:
            return CaptchaResult(success=False)

        form = {"secret": self.settings.captcha_secret_key, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.captcha_timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(self.settings.captcha_verify_url, data=form)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            logger.error("captcha_verify_timeout", error=str(exc))
            return CaptchaResult(success=False)
        except httpx.HTTPError as exc:
            logger.error("captcha_verify_error", error_type=type(exc).__name__, error=str(exc))
            return CaptchaResult(success=False)
        except ValueError as exc:
            logger.error("captcha_verify_parse_error", error=str(exc))
            return CaptchaResult(success=False)

        if not isinstance(payload, dict) or not payload.get("success"):
            logger.warning(
                "captcha_rejected",
                error_codes=payload.get("error-codes") if isinstance(payload, dict) else None,
            )
            return CaptchaResult(success=False)
        score = payload.get("score")
        if score is not None:
            try:
                score = float(score)
            except (TypeError, ValueError):
                return CaptchaResult(success=False)
            if score < self.settings.captcha_score_threshold:
                logger.warning("captcha_low_score", score=score)
                return CaptchaResult(success=False, score=score)
        return CaptchaResult(success=True, score=score)
