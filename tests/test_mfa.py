"""Tests for TOTP enrolment, verification, replay protection, and backup codes."""

import pytest

from gatekeeper.service.errors import AuthenticationError, ConflictError, ValidationError
from gatekeeper.service.mfa import TOTP_INTERVAL, generate_backup_code, totp_at

from support import STRONG_PASSWORD


@pytest.fixture
def mfa(runtime):
    return runtime.mfa


@pytest.fixture
def member(runtime):
    digest = runtime.hasher.hash(STRONG_PASSWORD)
    return runtime.store.create_user(
        "member@example.com", password_hash=digest, is_email_verified=True
    )


def _code(mfa, secret, offset=0):
    return totp_at(secret, mfa.current_step() + offset)


async def _enroll(mfa, user_id):
    secret = mfa.setup(user_id)["secret"]
    codes = await mfa.confirm_setup(user_id, secret, _code(mfa, secret))
    return secret, codes


def test_rfc6238_reference_vector():
    # RFC 6238 appendix B, SHA1, T = 59s
    secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
    assert totp_at(secret, 59 // TOTP_INTERVAL, digits=8) == "94287082"


def test_backup_code_format():
    code = generate_backup_code()

    assert len(code) == 9
    assert code[4] == "-"
    assert code.replace("-", "").isalnum()
    assert code == code.upper()


class TestEnrolment:
    def test_setup_returns_secret_and_uri(self, mfa, member, runtime):
        data = mfa.setup(member.id)

        assert data["otpauth_uri"].startswith("otpauth://totp/")
        assert f"secret={data['secret']}" in data["otpauth_uri"]
        stored = runtime.store.get_user(member.id)
        assert stored.totp_secret == data["secret"]
        assert stored.totp_enabled is False

    def test_secret_is_encrypted_at_rest(self, mfa, member, runtime):
        secret = mfa.setup(member.id)["secret"]

        raw = runtime.store.users[member.id].totp_secret
        assert raw != secret
        assert runtime.cipher.decrypt(raw) == secret

    async def test_confirm_enables_and_returns_backup_codes(self, mfa, member, runtime):
        _, codes = await _enroll(mfa, member.id)

        stored = runtime.store.get_user(member.id)
        assert stored.totp_enabled and stored.totp_verified
        assert len(codes) == runtime.settings.backup_code_count
        assert len(stored.totp_backup_codes) == len(codes)
        assert all(digest.startswith("$argon2") for digest in stored.totp_backup_codes)
        assert set(codes).isdisjoint(stored.totp_backup_codes)

    async def test_confirm_rejects_wrong_code(self, mfa, member, runtime):
        secret = mfa.setup(member.id)["secret"]
        wrong = "000000" if _code(mfa, secret) != "000000" else "111111"

        with pytest.raises(ValidationError):
            await mfa.confirm_setup(member.id, secret, wrong)
        assert runtime.store.get_user(member.id).totp_enabled is False

    async def test_confirm_rejects_mismatched_secret(self, mfa, member):
        secret = mfa.setup(member.id)["secret"]

        with pytest.raises(ValidationError):
            await mfa.confirm_setup(member.id, "A" * 32, totp_at(secret, mfa.current_step()))

    async def test_setup_twice_conflicts(self, mfa, member):
        await _enroll(mfa, member.id)

        with pytest.raises(ConflictError):
            mfa.setup(member.id)


class TestLoginVerification:
    async def test_accepts_adjacent_steps(self, mfa, member, clock):
        secret, _ = await _enroll(mfa, member.id)
        clock.advance(seconds=TOTP_INTERVAL * 2)

        assert await mfa.verify_login(member.id, _code(mfa, secret, offset=-1)) is True

    async def test_rejects_codes_outside_window(self, mfa, member, clock):
        secret, _ = await _enroll(mfa, member.id)
        clock.advance(seconds=TOTP_INTERVAL * 4)

        assert await mfa.verify_login(member.id, _code(mfa, secret, offset=-2)) is False
        assert await mfa.verify_login(member.id, _code(mfa, secret, offset=2)) is False

    async def test_same_step_is_accepted_once(self, mfa, member, clock):
        secret, _ = await _enroll(mfa, member.id)
        clock.advance(seconds=TOTP_INTERVAL * 3)
        code = _code(mfa, secret)

        assert await mfa.verify_login(member.id, code) is True
        assert await mfa.verify_login(member.id, code) is False

    async def test_enrolment_code_cannot_be_replayed_at_login(self, mfa, member):
        secret = mfa.setup(member.id)["secret"]
        code = _code(mfa, secret)
        await mfa.confirm_setup(member.id, secret, code)

        assert await mfa.verify_login(member.id, code) is False

    async def test_backup_code_is_single_use(self, mfa, member, runtime):
        _, codes = await _enroll(mfa, member.id)

        assert await mfa.verify_login(member.id, codes[0].lower(), use_backup_code=True) is True
        assert await mfa.verify_login(member.id, codes[0], use_backup_code=True) is False
        remaining = runtime.store.get_user(member.id).totp_backup_codes
        assert len(remaining) == len(codes) - 1

    async def test_every_backup_code_works_exactly_once(self, mfa, member, runtime):
        _, codes = await _enroll(mfa, member.id)
        assert len(codes) == 10

        for code in codes:
            assert await mfa.verify_login(member.id, code, use_backup_code=True) is True
            assert await mfa.verify_login(member.id, code, use_backup_code=True) is False
        assert runtime.store.get_user(member.id).totp_backup_codes == []
        assert mfa.status(member.id)["backup_codes_remaining"] == 0

    async def test_backup_code_without_dash_is_accepted(self, mfa, member):
        _, codes = await _enroll(mfa, member.id)

        assert await mfa.verify_login(member.id, codes[1].replace("-", ""), use_backup_code=True)

    async def test_not_enrolled_never_verifies(self, mfa, member):
        assert await mfa.verify_login(member.id, "123456") is False


class TestDisableAndRegenerate:
    async def test_disable_requires_password(self, mfa, member, runtime):
        await _enroll(mfa, member.id)

        with pytest.raises(AuthenticationError):
            await mfa.disable(member.id, "wrong-password")
        await mfa.disable(member.id, STRONG_PASSWORD)

        stored = runtime.store.get_user(member.id)
        assert stored.totp_enabled is False
        assert stored.totp_secret is None
        assert stored.totp_backup_codes == []

    async def test_disable_when_not_enabled(self, mfa, member):
        with pytest.raises(ValidationError):
            await mfa.disable(member.id, STRONG_PASSWORD)

    async def test_regenerate_replaces_all_codes(self, mfa, member):
        _, old_codes = await _enroll(mfa, member.id)

        new_codes = await mfa.regenerate_backup_codes(member.id, STRONG_PASSWORD)

        assert set(new_codes).isdisjoint(old_codes)
        assert await mfa.verify_login(member.id, old_codes[0], use_backup_code=True) is False
        assert await mfa.verify_login(member.id, new_codes[0], use_backup_code=True) is True

    async def test_status(self, mfa, member):
        assert mfa.status(member.id)["enabled"] is False
        _, codes = await _enroll(mfa, member.id)

        status = mfa.status(member.id)
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == len(codes)
