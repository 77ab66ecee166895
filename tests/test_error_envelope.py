"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "success": false,
    "message": "<human_readable>",
    "code": "<stable_code>",
    "details": <object|array>   # only when safe to expose
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError as SchemaValidationError

from gatekeeper import app as app_module
from gatekeeper.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, error_response
from gatekeeper.api.schemas import Envelope, ErrorEnvelope
from gatekeeper.service.errors import (
    AccountLockedError,
    AuthenticationError,
    PasswordExpiredError,
    RateLimitError,
    ServiceError,
    SessionIdleTimeoutError,
    TokenExpiredError,
)
from gatekeeper.service.runtime import reset_runtime_for_tests


def _body(response):
    return json.loads(response.body)


class TestErrorResponse:
    def test_shape(self):
        response = error_response(401, "Invalid email or password")

        assert response.status_code == 401
        assert _body(response) == {
            "success": False,
            "message": "Invalid email or password",
            "code": "unauthorized",
        }

    def test_explicit_code_wins(self):
        response = error_response(401, "Token expired", code="TOKEN_EXPIRED")

        assert _body(response)["code"] == "TOKEN_EXPIRED"

    def test_details_hidden_unless_exposed(self):
        hidden = error_response(400, "bad", {"field": "email"}, expose_details=False)
        shown = error_response(400, "bad", {"field": "email"})

        assert "details" not in _body(hidden)
        assert _body(shown)["details"] == {"field": "email"}

    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestEnvelopes:
    def test_success_defaults(self):
        assert Envelope().model_dump() == {"success": True, "message": None, "data": None}

    def test_error_requires_code_and_message(self):
        with pytest.raises(SchemaValidationError):
            ErrorEnvelope(message="missing code")


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (AuthenticationError("x"), 401, "unauthorized"),
        (TokenExpiredError("x"), 401, "TOKEN_EXPIRED"),
        (SessionIdleTimeoutError("x"), 401, "SESSION_IDLE_TIMEOUT"),
        (AccountLockedError("x"), 401, "ACCOUNT_LOCKED"),
        (PasswordExpiredError("x"), 403, "PASSWORD_EXPIRED"),
        (RateLimitError("x"), 429, "rate_limited"),
    ],
)
def test_service_error_taxonomy(exc, status, code):
    assert isinstance(exc, ServiceError)
    assert (exc.status_code, exc.error_code) == (status, code)


class TestHandlers:
    @pytest.fixture
    def client(self):
        with TestClient(app_module.app, raise_server_exceptions=False) as test_client:
            yield test_client

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["code"] == "not_found"

    def test_request_validation_becomes_400(self, client):
        response = client.post("/api/auth/login", json={"email": "a@example.com"})

        assert response.status_code == 400
        fields = [problem["field"] for problem in response.json()["details"]]
        assert "password" in fields

    def test_missing_credentials(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["message"] == "Authentication required"

    def test_garbage_bearer_token(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_INVALID"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.json()["status"] == "healthy"

    def test_rate_limit(self, client, monkeypatch):
        monkeypatch.setenv("AUTH_RATE_LIMIT", "2")
        reset_runtime_for_tests()
        payload = {"email": "nobody@example.com", "password": "whatever"}

        codes = [client.post("/api/auth/login", json=payload).status_code for _ in range(3)]

        assert codes == [401, 401, 429]
