"""Shared helpers for the test suite."""

from datetime import datetime, timedelta, timezone

from gatekeeper.config import Settings

STRONG_PASSWORD = "Str0ng!Passw0rd"
OTHER_STRONG_PASSWORD = "An0ther!Secret99"


class MutableClock:
    """Callable clock that tests can move forward."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Stands in for EmailService and keeps every message it was asked to send."""

    def __init__(self):
        self.pins: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.changed: list[str] = []

    async def send_verification_pin(self, to, pin, *, ttl_minutes):
        self.pins.append((to, pin))
        return True

    async def send_password_reset(self, to, token, *, ttl_minutes):
        self.resets.append((to, token))
        return True

    async def send_password_changed(self, to):
        self.changed.append(to)
        return True

    def last_pin(self, email: str) -> str:
        return [pin for to, pin in self.pins if to == email][-1]

    def last_reset(self, email: str) -> str:
        return [token for to, token in self.resets if to == email][-1]


def make_settings(**overrides) -> Settings:
    values = dict(
        test_mode=True,
        jwt_access_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-fedcba9876543210",
        field_encryption_key="unit-field-key",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        cookie_secure=False,
    )
    values.update(overrides)
    return Settings(**values)
