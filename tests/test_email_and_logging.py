import smtplib

import pytest

from gatekeeper import logging as gk_logging
from gatekeeper.service import email as email_module
from gatekeeper.service.email import EmailService, OutboundMail


class FakeSMTP:
    sent: list = []
    fail_login = False

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.tls = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def send_message(self, message):
        FakeSMTP.sent.append((self.tls, message))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def configured(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="hunter2",
        from_email="no-reply@example.com",
        base_url="https://app.example.com/",
    )
    values.update(overrides)
    return EmailService(**values)


class TestEmailService:
    async def test_unconfigured_service_logs_instead_of_sending(self, smtp):
        service = EmailService()

        assert service.is_configured is False
        assert await service.send_password_changed("ada@example.com") is True
        assert smtp.sent == []

    async def test_verification_pin_is_sent_over_starttls(self, smtp):
        delivered = await configured().send_verification_pin("ada@example.com", "482915", ttl_minutes=10)

        assert delivered is True
        tls, message = smtp.sent[0]
        assert tls is True
        assert message["To"] == "ada@example.com"
        assert "482915" in message.get_body(("plain",)).get_content()

    async def test_reset_link_uses_base_url(self, smtp):
        await configured().send_password_reset("ada@example.com", "tok123", ttl_minutes=60)

        _, message = smtp.sent[0]
        assert "https://app.example.com/reset-password?token=tok123" in message.get_body(("plain",)).get_content()

    async def test_login_rejection_reports_failure(self, smtp):
        smtp.fail_login = True

        assert await configured().send_password_changed("ada@example.com") is False

    async def test_transport_error_reports_failure(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("no route")

        monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)

        assert await configured().send_email("ada@example.com", "hi", "<p>hi</p>") is False

    def test_recipient_is_masked(self):
        mail = OutboundMail("ada@example.com", "s", text="", html="")

        assert mail.masked_recipient == "a***@example.com"


class TestLogRedaction:
    def redact(self, **fields):
        return gk_logging._redact_sensitive(None, "info", dict(fields))

    def test_secrets_are_dropped(self):
        out = self.redact(refresh_token="abc", password="pw", pin="123456", code="111111")

        assert set(out.values()) == {"[redacted]"}

    def test_emails_are_masked_not_dropped(self):
        assert self.redact(email="grace@example.com")["email"] == "g***@example.com"

    def test_structured_fields_survive(self):
        out = self.redact(error_code="TOKEN_EXPIRED", token_type="access", totp_enabled=True, ip="10.0.0.1")

        assert out == {"error_code": "TOKEN_EXPIRED", "token_type": "access", "totp_enabled": True, "ip": "10.0.0.1"}


class TestSanitizeErrorMessage:
    @pytest.mark.parametrize(
        "raw,leak",
        [
            ("failed to open /var/lib/gatekeeper/state.json", "/var/lib"),
            ("password=hunter2 rejected", "hunter2"),
            ("bad digest $argon2id$v=19$m=1024,t=1,p=1$abc", "$argon2id"),
            ("cannot reach redis://cache:6379/0", "redis://"),
        ],
    )
    def test_leaks_are_scrubbed(self, raw, leak):
        assert leak not in gk_logging.sanitize_error_message(raw)

    def test_empty_message(self):
        assert gk_logging.sanitize_error_message("") == "An error occurred"

    def test_long_message_is_truncated(self):
        assert len(gk_logging.sanitize_error_message("x" * 900)) == 500


def test_correlation_id_is_adopted_or_minted():
    assert gk_logging.set_correlation_id("req-42") == "req-42"
    assert gk_logging.get_correlation_id() == "req-42"

    minted = gk_logging.set_correlation_id(None)
    assert minted and minted != "req-42"
