"""Tests for outbound verification: Google identity tokens and reCAPTCHA."""

import httpx
import pytest

from gatekeeper.service.captcha import CaptchaVerifier
from gatekeeper.service.errors import AccountSuspendedError, AuthenticationError
from gatekeeper.service.federated import GoogleIdentityVerifier

from support import STRONG_PASSWORD

CLIENT_ID = "client-123.apps.googleusercontent.com"


def google_claims(**overrides):
    claims = {
        "aud": CLIENT_ID,
        "iss": "https://accounts.google.com",
        "sub": "google-sub-1",
        "email": "Grace@Example.com",
        "email_verified": "true",
        "given_name": "Grace",
        "family_name": "Hopper",
        "picture": "https://example.com/grace.png",
    }
    claims.update(overrides)
    return claims


def responding(status=200, payload=None, exc=None):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if exc is not None:
            raise exc
        return httpx.Response(status, json=payload if payload is not None else {})

    return httpx.MockTransport(handler), seen


@pytest.fixture
def google_settings(settings_factory):
    return settings_factory(google_client_id=CLIENT_ID)


class TestGoogleIdentityVerifier:
    async def test_valid_credential(self, google_settings):
        transport, seen = responding(payload=google_claims())
        verifier = GoogleIdentityVerifier(google_settings, transport=transport)

        identity = await verifier.verify("credential-abc")

        assert identity.subject_id == "google-sub-1"
        assert identity.email == "grace@example.com"
        assert identity.email_verified is True
        assert seen[0].url.params["id_token"] == "credential-abc"

    @pytest.mark.parametrize(
        "claims",
        [
            google_claims(aud="someone-else"),
            google_claims(iss="https://evil.example.com"),
            google_claims(sub=None),
            google_claims(email=None),
        ],
    )
    async def test_claim_mismatches_fail_closed(self, google_settings, claims):
        transport, _ = responding(payload=claims)
        verifier = GoogleIdentityVerifier(google_settings, transport=transport)

        with pytest.raises(AuthenticationError):
            await verifier.verify("credential-abc")

    async def test_rejected_token(self, google_settings):
        transport, _ = responding(status=400, payload={"error": "invalid_token"})
        verifier = GoogleIdentityVerifier(google_settings, transport=transport)

        with pytest.raises(AuthenticationError):
            await verifier.verify("credential-abc")

    async def test_timeout_fails_closed(self, google_settings):
        transport, _ = responding(exc=httpx.ReadTimeout("slow"))
        verifier = GoogleIdentityVerifier(google_settings, transport=transport)

        with pytest.raises(AuthenticationError):
            await verifier.verify("credential-abc")

    async def test_unconfigured_client_id(self, settings):
        transport, seen = responding(payload=google_claims())
        verifier = GoogleIdentityVerifier(settings, transport=transport)

        with pytest.raises(AuthenticationError):
            await verifier.verify("credential-abc")
        assert seen == []


class TestGoogleLogin:
    @pytest.fixture
    def use_google(self, runtime, google_settings):
        def _install(payload):
            transport, _ = responding(payload=payload)
            runtime.auth.federated = GoogleIdentityVerifier(google_settings, transport=transport)

        return _install

    async def test_first_login_creates_verified_account(self, runtime, use_google):
        use_google(google_claims())

        result = await runtime.auth.google_login("credential-abc")

        assert result.session is not None
        user = runtime.store.get_user(result.user.id)
        assert user.auth_provider == "google"
        assert user.google_id == "google-sub-1"
        assert user.is_email_verified is True
        assert user.password_hash is None
        attempt = runtime.store.list_login_attempts(email="grace@example.com")[0]
        assert attempt.provider == "google" and attempt.success

    async def test_links_existing_local_account(self, runtime, use_google):
        digest = runtime.hasher.hash(STRONG_PASSWORD)
        local = runtime.store.create_user("grace@example.com", password_hash=digest)
        use_google(google_claims())

        result = await runtime.auth.google_login("credential-abc")

        assert result.user.id == local.id
        assert runtime.store.get_user(local.id).google_id == "google-sub-1"
        # the local password keeps working after linking
        assert (await runtime.auth.login("grace@example.com", STRONG_PASSWORD)).session

    async def test_unverified_google_email_is_refused(self, runtime, use_google):
        use_google(google_claims(email_verified="false"))

        with pytest.raises(AuthenticationError):
            await runtime.auth.google_login("credential-abc")
        assert runtime.store.get_user_by_email("grace@example.com") is None

    async def test_suspended_account_is_refused(self, runtime, use_google):
        use_google(google_claims())
        first = await runtime.auth.google_login("credential-abc")
        runtime.store.update_user(first.user.id, is_suspended=True)

        with pytest.raises(AccountSuspendedError):
            await runtime.auth.google_login("credential-abc")


class TestCaptcha:
    async def test_bypassed_without_secret_in_test_mode(self, settings):
        result = await CaptchaVerifier(settings).verify(None)

        assert result.success and result.bypassed

    async def test_missing_secret_outside_test_mode_fails(self, settings_factory):
        verifier = CaptchaVerifier(settings_factory(test_mode=False, dev_mode=False))

        assert (await verifier.verify("token")).success is False

    async def test_score_threshold(self, settings_factory):
        settings = settings_factory(captcha_secret_key="recaptcha-secret")
        good, seen = responding(payload={"success": True, "score": 0.9})
        poor, _ = responding(payload={"success": True, "score": 0.1})

        ok = await CaptchaVerifier(settings, transport=good).verify("token", "198.51.100.4")
        low = await CaptchaVerifier(settings, transport=poor).verify("token")

        assert ok.success and ok.score == 0.9
        assert not low.success and low.score == 0.1
        assert b"remoteip=198.51.100.4" in seen[0].content

    async def test_provider_rejection_and_timeout(self, settings_factory):
        settings = settings_factory(captcha_secret_key="recaptcha-secret")
        rejected, _ = responding(payload={"success": False, "error-codes": ["invalid-input"]})
        slow, _ = responding(exc=httpx.ConnectTimeout("slow"))

        assert (await CaptchaVerifier(settings, transport=rejected).verify("t")).success is False
        assert (await CaptchaVerifier(settings, transport=slow).verify("t")).success is False
