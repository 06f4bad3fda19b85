"""Session lifecycle and session-time rollups."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from .account import (
    AccountState,
    AccountStatus,
    AuditAction,
    DeviceInfo,
    Location,
    SessionState,
    advance,
)
from .audit import append_entry
from .credentials import ensure_usable
from .errors import NoOpenSessionError, SessionAlreadyOpenError

_MILLISECOND = timedelta(milliseconds=1)


def start_session(
    state: AccountState,
    now: datetime,
    device: DeviceInfo | None = None,
    location: Location | None = None,
) -> AccountState:
    """Open a new session, discarding the end/duration of the previous one.

    An open session is never overwritten; close it with :func:`end_session`
    first.
    """
    ensure_usable(state, now)
    if state.session.is_open:
        raise SessionAlreadyOpenError(state.account_id, state.session.session_started)

    session = SessionState(
        session_started=now,
        device=device or DeviceInfo(),
        location=location or Location(),
    )
    metrics = replace(state.metrics, last_activity=advance(state.metrics.last_activity, now))
    return replace(state, session=session, metrics=metrics, updated_at=now)


def end_session(state: AccountState, now: datetime, ip_address: str | None = None) -> AccountState:
    if not state.session.is_open:
        raise NoOpenSessionError(state.account_id)

    started = state.session.session_started
    duration_ms = max(0, (now - started) // _MILLISECOND)
    session = replace(state.session, session_ended=now, session_duration_ms=duration_ms)

    total = state.metrics.total_session_time_ms + duration_ms
    count = state.metrics.session_count + 1
    metrics = replace(
        state.metrics,
        total_session_time_ms=total,
        session_count=count,
        average_session_duration_ms=total / count,
        last_activity=advance(state.metrics.last_activity, now),
    )
    updated = replace(state, session=session, metrics=metrics, updated_at=now)
    return append_entry(
        updated,
        AuditAction.logout,
        now,
        details=f"session lasted {duration_ms} ms",
        ip_address=ip_address or state.session.device.ip_address,
    )


def session_duration(state: AccountState) -> int | None:
    """Derived duration of the current session, ``None`` until it has ended."""
    session = state.session
    if session.session_started is None or session.session_ended is None:
        return None
    return max(0, (session.session_ended - session.session_started) // _MILLISECOND)


def is_online(state: AccountState) -> bool:
    return state.session.is_open and state.status == AccountStatus.active
