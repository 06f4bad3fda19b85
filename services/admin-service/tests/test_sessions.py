from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from admin_service.domain.account import AccountStatus, AuditAction, DeviceInfo, DeviceType, Location
from admin_service.domain.credentials import record_failed_attempt
from admin_service.domain.errors import (
    AccountLockedError,
    NoOpenSessionError,
    SessionAlreadyOpenError,
)
from admin_service.domain.sessions import end_session, is_online, session_duration, start_session

from conftest import T0


def test_session_duration_rolls_into_totals(account):
    state = start_session(account, T0)
    state = end_session(state, T0 + timedelta(milliseconds=90000))

    assert state.session.session_duration_ms == 90000
    assert session_duration(state) == 90000
    assert state.metrics.total_session_time_ms == 90000
    assert state.metrics.session_count == 1
    assert state.metrics.average_session_duration_ms == 90000
    assert state.audit_log[-1].action == AuditAction.logout


def test_two_sessions_sum_and_average(account):
    state = start_session(account, T0)
    state = end_session(state, T0 + timedelta(seconds=90))
    second_start = T0 + timedelta(minutes=5)
    state = start_session(state, second_start)
    state = end_session(state, second_start + timedelta(seconds=30))

    assert state.metrics.total_session_time_ms == 120000
    assert state.metrics.session_count == 2
    assert state.metrics.average_session_duration_ms == 60000


def test_start_clears_previous_endpoints_and_records_device(account):
    state = end_session(start_session(account, T0), T0 + timedelta(seconds=10))
    device = DeviceInfo(user_agent="Mozilla/5.0", ip_address="192.0.2.10", device_type=DeviceType.desktop)
    location = Location(country="PT", city="Lisbon")
    restarted = start_session(state, T0 + timedelta(minutes=1), device, location)

    assert restarted.session.session_started == T0 + timedelta(minutes=1)
    assert restarted.session.session_ended is None
    assert restarted.session.session_duration_ms is None
    assert session_duration(restarted) is None
    assert restarted.session.device == device
    assert restarted.session.location.city == "Lisbon"


def test_starting_while_open_is_rejected(account):
    state = start_session(account, T0)
    with pytest.raises(SessionAlreadyOpenError):
        start_session(state, T0 + timedelta(minutes=1))


def test_ending_without_open_session_is_rejected(account):
    with pytest.raises(NoOpenSessionError):
        end_session(account, T0)

    closed = end_session(start_session(account, T0), T0 + timedelta(seconds=1))
    with pytest.raises(NoOpenSessionError):
        end_session(closed, T0 + timedelta(seconds=2))


def test_clock_skew_never_produces_negative_duration(account):
    state = end_session(start_session(account, T0), T0 - timedelta(seconds=3))
    assert state.session.session_duration_ms == 0


def test_locked_account_cannot_start_session(account):
    state = account
    for _ in range(5):
        state = record_failed_attempt(state, T0)
    with pytest.raises(AccountLockedError):
        start_session(state, T0 + timedelta(minutes=1))


def test_is_online_tracks_open_session_and_status(account):
    assert not is_online(account)

    state = start_session(account, T0)
    assert is_online(state)
    assert not is_online(replace(state, status=AccountStatus.inactive))

    state = end_session(state, T0 + timedelta(seconds=5))
    assert not is_online(state)
