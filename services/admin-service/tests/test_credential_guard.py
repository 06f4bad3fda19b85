from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from admin_service.domain.account import AccountStatus, AuditAction, Credentials, LockState
from admin_service.domain.credentials import (
    LockoutPolicy,
    changed_password_after,
    is_failed_login,
    is_account_locked,
    record_failed_attempt,
    record_successful_login,
)
from admin_service.domain.errors import AccountDisabledError, AccountLockedError

from conftest import T0


def _fail(state, times, now):
    for _ in range(times):
        state = record_failed_attempt(state, now)
    return state


def test_new_account_is_not_locked(account):
    assert account.lock == LockState(login_attempts=0, lock_until=None)
    assert not is_account_locked(account, T0)


def test_five_failures_lock_for_two_hours(account):
    state = _fail(account, 4, T0)
    assert state.lock.login_attempts == 4
    assert not is_account_locked(state, T0)

    state = record_failed_attempt(state, T0)

    assert state.lock.login_attempts == 5
    assert state.lock.lock_until == T0 + timedelta(hours=2)
    assert is_account_locked(state, T0)
    assert state.audit_log[-1].action == AuditAction.status_changed
    assert "locked until" in state.audit_log[-1].details


def test_failure_while_locked_counts_but_keeps_lock_window(account):
    locked = _fail(account, 5, T0)
    later = T0 + timedelta(minutes=10)

    again = record_failed_attempt(locked, later)

    assert again.lock.login_attempts == 6
    assert again.lock.lock_until == locked.lock.lock_until
    assert again.metrics.failed_login_attempts == 6


def test_successful_login_on_locked_account_raises_without_change(account):
    locked = _fail(account, 5, T0)
    with pytest.raises(AccountLockedError) as excinfo:
        record_successful_login(locked, T0 + timedelta(minutes=1))
    assert excinfo.value.lock_until == T0 + timedelta(hours=2)
    assert locked.lock.login_attempts == 5
    assert locked.metrics.login_count == 0


def test_failure_after_expired_lock_starts_fresh_window(account):
    state = replace(account, lock=LockState(login_attempts=4))
    state = record_failed_attempt(state, T0)
    assert state.lock.login_attempts == 5
    assert state.lock.lock_until == T0 + timedelta(hours=2)

    with pytest.raises(AccountLockedError):
        record_successful_login(state, T0 + timedelta(minutes=30))

    after_lock = T0 + timedelta(hours=2, seconds=1)
    state = record_failed_attempt(state, after_lock)

    assert state.lock.login_attempts == 1
    assert state.lock.lock_until is None
    assert not is_account_locked(state, after_lock)


def test_lock_ends_exactly_at_lock_until(account):
    locked = _fail(account, 5, T0)
    boundary = locked.lock.lock_until
    assert is_account_locked(locked, boundary - timedelta(microseconds=1))
    assert not is_account_locked(locked, boundary)


def test_successful_login_resets_window_and_counts_login(account):
    state = _fail(account, 3, T0)
    later = T0 + timedelta(minutes=2)

    state = record_successful_login(state, later, ip_address="10.0.0.7")

    assert state.lock == LockState()
    assert state.metrics.login_count == 1
    assert state.metrics.last_login == later
    assert state.metrics.last_activity == later
    assert state.metrics.failed_login_attempts == 3
    assert state.audit_log[-1].action == AuditAction.login
    assert state.audit_log[-1].ip_address == "10.0.0.7"


def test_last_login_never_moves_backwards(account):
    later = T0 + timedelta(hours=1)
    state = record_successful_login(account, later)
    state = record_successful_login(state, T0)
    assert state.metrics.last_login == later
    assert state.metrics.login_count == 2


def test_custom_policy_threshold(account):
    policy = LockoutPolicy(max_attempts=2, lock_duration=timedelta(minutes=15))
    state = record_failed_attempt(account, T0, policy)
    state = record_failed_attempt(state, T0, policy)
    assert state.lock.lock_until == T0 + timedelta(minutes=15)


@pytest.mark.parametrize("status", [AccountStatus.suspended, AccountStatus.deleted])
def test_disabled_accounts_cannot_log_in(account, status):
    with pytest.raises(AccountDisabledError):
        record_successful_login(replace(account, status=status), T0)


def test_changed_password_after_compares_token_issue_time(account):
    assert not changed_password_after(account, int(T0.timestamp()))

    changed = replace(
        account,
        credentials=Credentials(password_hash="new", password_changed_at=T0 + timedelta(minutes=5)),
    )
    assert changed_password_after(changed, int(T0.timestamp()))
    assert not changed_password_after(changed, int((T0 + timedelta(minutes=6)).timestamp()))


def test_failed_and_successful_logins_are_told_apart(account):
    state = record_failed_attempt(account, T0)
    state = record_failed_attempt(state, T0)
    state = record_successful_login(state, T0 + timedelta(minutes=1))

    logins = [e for e in state.audit_log if e.action == AuditAction.login]
    assert [e.details for e in logins] == ["failed: attempt 1", "failed: attempt 2", "succeeded"]
    assert [is_failed_login(e) for e in logins] == [True, True, False]
    assert not is_failed_login(state.audit_log[0])
