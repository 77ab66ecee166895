import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gatekeeper import app as app_module
from gatekeeper.api import schemas
from gatekeeper.config import Settings


def test_cors_allows_local_frontend_with_credentials():
    client = TestClient(app_module.app)
    response = client.get("/health", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["access-control-allow-credentials"] == "true"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_cors_rejects_unknown_origin():
    client = TestClient(app_module.app)
    response = client.get("/health", headers={"Origin": "https://evil.example.com"})

    assert "access-control-allow-origin" not in response.headers


class TestSettings:
    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
        monkeypatch.setenv("COOKIE_SECURE", "true")

        settings = Settings.from_env()

        assert settings.lockout_threshold == 7
        assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
        assert settings.cookie_secure is True

    @pytest.mark.parametrize("minutes", [4, 31])
    def test_lockout_duration_bounds(self, minutes):
        with pytest.raises(ValidationError):
            Settings(test_mode=True, lockout_duration_minutes=minutes)

    def test_secrets_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False)

    def test_test_mode_generates_distinct_secrets(self):
        settings = Settings(test_mode=True)

        assert settings.jwt_access_secret and settings.jwt_refresh_secret
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_shared_secret_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=True, jwt_access_secret="same-secret", jwt_refresh_secret="same-secret")


class TestSchemas:
    def test_email_is_normalized(self):
        body = schemas.LoginRequest(email="  Ada@Example.COM ", password="x")

        assert body.email == "ada@example.com"

    def test_zero_width_characters_are_stripped(self):
        body = schemas.EmailRequest(email="ada\u200b@example.com")

        assert body.email == "ada@example.com"

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a@-bad-.com", "x" * 65 + "@example.com"])
    def test_bad_emails(self, email):
        with pytest.raises(ValidationError):
            schemas.EmailRequest(email=email)

    def test_phone_format(self):
        ok = schemas.RegisterRequest(email="a@example.com", password="x", phone="+1 (555) 010-0100")
        blank = schemas.RegisterRequest(email="a@example.com", password="x", phone="  ")

        assert ok.phone == "+1 (555) 010-0100"
        assert blank.phone is None
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password="x", phone="call me maybe")

    def test_password_length_cap(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password="A1!" + "a" * 200)

    def test_pin_must_be_six_digits(self):
        with pytest.raises(ValidationError):
            schemas.VerifyEmailRequest(email="a@example.com", pin="12345a")
