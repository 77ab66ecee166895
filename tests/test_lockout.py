from datetime import datetime, timedelta, timezone

from gatekeeper.service.lockout import LockoutPolicy, LockoutState

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def test_failures_below_threshold_do_not_lock():
    policy = LockoutPolicy(threshold=5, lock_duration=timedelta(minutes=5))
    state = LockoutState(0, None)
    for _ in range(4):
        state = policy.on_failure(state, NOW)

    assert state.failed_attempts == 4
    assert not policy.is_locked(state, NOW)


def test_threshold_failure_locks_for_duration():
    policy = LockoutPolicy(threshold=5, lock_duration=timedelta(minutes=5))
    state = policy.on_failure(LockoutState(4, None), NOW)

    assert state.locked_until == NOW + timedelta(minutes=5)
    assert policy.is_locked(state, NOW + timedelta(minutes=4, seconds=59))
    assert not policy.is_locked(state, NOW + timedelta(minutes=5))


def test_elapsed_lock_resets_counter_before_next_attempt():
    policy = LockoutPolicy()
    locked = LockoutState(5, NOW)

    assert policy.before_attempt(locked, NOW + timedelta(seconds=1)) == LockoutState(0, None)


def test_active_lock_is_left_alone():
    policy = LockoutPolicy()
    locked = LockoutState(5, NOW + timedelta(minutes=1))

    assert policy.before_attempt(locked, NOW) is locked


def test_success_clears_everything():
    assert LockoutPolicy().on_success() == LockoutState(0, None)
