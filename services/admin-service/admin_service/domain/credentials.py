"""Login-attempt throttling and timed lockout for a single account."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .account import AccountState, AccountStatus, AuditAction, AuditEntry, LockState, advance
from .audit import append_entry
from .errors import AccountDisabledError, AccountLockedError

DISABLED_STATUSES = frozenset({AccountStatus.suspended, AccountStatus.deleted})

# Prefixes of the details on `login` audit entries.
LOGIN_FAILED = "failed"
LOGIN_SUCCEEDED = "succeeded"


@dataclass(frozen=True, slots=True)
class LockoutPolicy:
    """Failure threshold and the fixed lock window it triggers."""

    max_attempts: int = 5
    lock_duration: timedelta = timedelta(hours=2)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.lockout_max_attempts,
            lock_duration=timedelta(seconds=settings.lockout_duration_seconds),
        )


DEFAULT_POLICY = LockoutPolicy()


def is_account_locked(state: AccountState, now: datetime) -> bool:
    """Return ``True`` while ``lock_until`` lies strictly in the future."""
    lock_until = state.lock.lock_until
    return lock_until is not None and lock_until > now


def ensure_usable(state: AccountState, now: datetime) -> None:
    """Raise unless the account may take part in a login or an active session."""
    if is_account_locked(state, now):
        raise AccountLockedError(state.account_id, state.lock.lock_until)
    if state.status in DISABLED_STATUSES:
        raise AccountDisabledError(state.account_id, state.status.value)


def record_failed_attempt(
    state: AccountState,
    now: datetime,
    policy: LockoutPolicy = DEFAULT_POLICY,
    ip_address: str | None = None,
) -> AccountState:
    """Count a failed login and lock the account once the threshold is hit.

    A failure after an expired lock starts a fresh window at attempt 1. A
    failure inside an active lock still counts but never moves ``lock_until``.

    Failures share the ``login`` audit action with successful logins; their
    details read ``"failed: attempt N"``. Use :func:`is_failed_login` to tell
    them apart.
    """
    lock = state.lock
    if lock.lock_until is not None and not is_account_locked(state, now):
        attempts, lock_until = 1, None
    else:
        attempts, lock_until = lock.login_attempts + 1, lock.lock_until

    tripped = False
    if lock_until is None and attempts >= policy.max_attempts:
        lock_until = now + policy.lock_duration
        tripped = True

    metrics = replace(state.metrics, failed_login_attempts=state.metrics.failed_login_attempts + 1)
    updated = replace(
        state,
        lock=LockState(login_attempts=attempts, lock_until=lock_until),
        metrics=metrics,
        updated_at=now,
    )
    updated = append_entry(
        updated,
        AuditAction.login,
        now,
        details=f"{LOGIN_FAILED}: attempt {attempts}",
        ip_address=ip_address,
    )
    if tripped:
        updated = append_entry(
            updated,
            AuditAction.status_changed,
            now,
            details=f"locked until {lock_until.isoformat()}",
            ip_address=ip_address,
        )
    return updated


def record_successful_login(
    state: AccountState, now: datetime, ip_address: str | None = None
) -> AccountState:
    """Clear the failure window and bump login metrics.

    Raises ``AccountLockedError`` without touching state when the account is
    inside a lock window.
    """
    ensure_usable(state, now)
    metrics = replace(
        state.metrics,
        login_count=state.metrics.login_count + 1,
        last_login=advance(state.metrics.last_login, now),
        last_activity=advance(state.metrics.last_activity, now),
    )
    updated = replace(state, lock=LockState(), metrics=metrics, updated_at=now)
    return append_entry(updated, AuditAction.login, now, details=LOGIN_SUCCEEDED, ip_address=ip_address)


def changed_password_after(state: AccountState, issued_at: int) -> bool:
    """Return ``True`` when the password changed after a token's ``iat`` (epoch seconds)."""
    changed_at = state.credentials.password_changed_at
    if changed_at is None:
        return False
    return issued_at < int(changed_at.timestamp())


def is_failed_login(entry: AuditEntry) -> bool:
    """Return ``True`` for ``login`` audit entries written by :func:`record_failed_attempt`."""
    return entry.action == AuditAction.login and (entry.details or "").startswith(f"{LOGIN_FAILED}:")
