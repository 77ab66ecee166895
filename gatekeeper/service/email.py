from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import Optional

from gatekeeper.logging import get_logger

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; color: #1f2933; line-height: 1.5;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h2>{heading}</h2>
    {content}
    <p style="margin-top: 32px; font-size: 12px; color: #5b6470;">{signature}</p>
  </div>
</body>
</html>
"""


@dataclass
class OutboundMail:
    recipient: str
    subject: str
    text: str
    html: str

    @property
    def masked_recipient(self) -> str:
        local, _, domain = self.recipient.partition("@")
        return f"{local[:1]}***@{domain}" if domain else "***"


class EmailService:
    """Transactional mail for verification PINs, reset links and change notices.

    Sends never raise. A failed delivery is logged and comes back as ``False``;
    without an SMTP host the message is only logged, which keeps local
    development and tests free of a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Gatekeeper",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, recipient: str, subject: str, heading: str, paragraphs: list[str]) -> OutboundMail:
        content = "".join(f"<p>{p}</p>" for p in paragraphs)
        html = _LAYOUT.format(heading=escape(heading), content=content, signature=escape(self.from_name))
        return OutboundMail(recipient, subject, text="", html=html)

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            conn = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            conn.starttls(context=context)
        else:
            conn = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout)
        if self.smtp_user and self.smtp_password:
            conn.login(self.smtp_user, self.smtp_password)
        return conn

    def _send_blocking(self, mail: OutboundMail) -> bool:
        if not self.is_configured:
            logger.info("email_not_configured", to=mail.masked_recipient, subject=mail.subject)
            return True

        message = EmailMessage()
        message["Subject"] = mail.subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = mail.recipient
        message.set_content(mail.text)
        message.add_alternative(mail.html, subtype="html")

        try:
            with self._open() as conn:
                conn.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_smtp_login_rejected", host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=mail.masked_recipient)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=mail.masked_recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            return False

        logger.info("email_sent", to=mail.masked_recipient, subject=mail.subject)
        return True

    async def deliver(self, mail: OutboundMail) -> bool:
        return await asyncio.to_thread(self._send_blocking, mail)

    async def send_email(self, to: str, subject: str, html: str, text: Optional[str] = None) -> bool:
        return await self.deliver(OutboundMail(to, subject, text=text or "", html=html))

    async def send_verification_pin(self, to_email: str, pin: str, *, ttl_minutes: int) -> bool:
        mail = self._compose(
            to_email,
            "Your verification code",
            "Confirm your email address",
            [
                "Enter this code to finish creating your account:",
                f'<strong style="font-size: 26px; letter-spacing: 6px;">{escape(pin)}</strong>',
                f"It is valid for {ttl_minutes} minutes.",
            ],
        )
        mail.text = f"Your verification code is {pin}. It is valid for {ttl_minutes} minutes.\n"
        return await self.deliver(mail)

    async def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int) -> bool:
        link = f"{self.base_url}/reset-password?token={token}"
        mail = self._compose(
            to_email,
            "Password reset requested",
            "Reset your password",
            [
                "Someone asked to reset the password on your account.",
                f'<a href="{escape(link)}">Choose a new password</a>',
                f"The link stops working after {ttl_minutes} minutes. "
                "Ignore this message if the request was not yours.",
            ],
        )
        mail.text = (
            f"Open this link to choose a new password:\n{link}\n\n"
            f"The link stops working after {ttl_minutes} minutes.\n"
        )
        return await self.deliver(mail)

    async def send_password_changed(self, to_email: str) -> bool:
        notice = "Your password was just changed and your other sessions were signed out."
        warning = "If this was not you, reset your password right away."
        mail = self._compose(to_email, "Password changed", "Password changed", [notice, warning])
        mail.text = f"{notice}\n{warning}\n"
        return await self.deliver(mail)
