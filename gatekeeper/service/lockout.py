from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int
    locked_until: Optional[datetime]


@dataclass(frozen=True)
class LockoutPolicy:
    """Pure lockout decisions over ``(failed_attempts, locked_until, now)``.

    Evaluated before the password check; the caller persists whatever state
    the decision returns. MFA failures never feed into this counter.
    """

    threshold: int = 5
    lock_duration: timedelta = timedelta(minutes=5)

    def is_locked(self, state: LockoutState, now: datetime) -> bool:
        return state.locked_until is not None and state.locked_until > now

    def before_attempt(self, state: LockoutState, now: datetime) -> LockoutState:
        """Clear an elapsed lock so the new attempt starts from zero."""
        if state.locked_until is not None and state.locked_until <= now:
            return LockoutState(failed_attempts=0, locked_until=None)
        return state

    def on_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        attempts = state.failed_attempts + 1
        if attempts >= self.threshold:
            return LockoutState(failed_attempts=attempts, locked_until=now + self.lock_duration)
        return LockoutState(failed_attempts=attempts, locked_until=state.locked_until)

    def on_success(self) -> LockoutState:
        return LockoutState(failed_attempts=0, locked_until=None)
