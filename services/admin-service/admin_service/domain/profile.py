"""Provisioning and the profile-level transitions that sit beside the core ledgers."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from .account import (
    ACTIVITY_COUNTERS,
    PLAN_ORDER,
    AccountState,
    AccountStatus,
    ActivityKind,
    AdminRole,
    AuditAction,
    Credentials,
    Plan,
    advance,
)
from .audit import append_entry

MAX_ADMIN_NOTES_LENGTH = 5000


def new_account_state(
    *,
    account_id: str,
    email: str,
    password_hash: str,
    now: datetime,
    first_name: str = "",
    last_name: str = "",
    role: AdminRole = AdminRole.user,
    is_super_admin: bool = False,
) -> AccountState:
    """Build the initial aggregate for a freshly provisioned admin."""
    state = AccountState(
        account_id=account_id,
        email=email.strip().lower(),
        credentials=Credentials(password_hash=password_hash),
        created_at=now,
        updated_at=now,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        role=role,
        is_super_admin=is_super_admin,
    )
    return append_entry(state, AuditAction.account_created, now, details=state.email)


def change_password(
    state: AccountState, password_hash: str, now: datetime, ip_address: str | None = None
) -> AccountState:
    credentials = Credentials(password_hash=password_hash, password_changed_at=now)
    metrics = replace(
        state.metrics,
        password_changes=state.metrics.password_changes + 1,
        last_password_change=advance(state.metrics.last_password_change, now),
    )
    updated = replace(state, credentials=credentials, metrics=metrics, updated_at=now)
    return append_entry(updated, AuditAction.password_changed, now, ip_address=ip_address)


def change_status(
    state: AccountState, status: AccountStatus | str, now: datetime, reason: str | None = None
) -> AccountState:
    new_status = AccountStatus(status)
    if new_status == state.status:
        return state
    details = f"{state.status.value} -> {new_status.value}"
    if reason:
        details = f"{details}: {reason}"
    updated = replace(state, status=new_status, updated_at=now)
    return append_entry(updated, AuditAction.status_changed, now, details=details)


def change_plan(
    state: AccountState,
    plan: Plan | str,
    now: datetime,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
) -> AccountState:
    """Move the subscription to ``plan`` and record whether it went up or down a tier."""
    new_plan = Plan(plan)
    if new_plan == state.plan:
        return state
    if starts_at and ends_at and ends_at < starts_at:
        raise ValueError("subscription cannot end before it starts")
    upgraded = PLAN_ORDER.index(new_plan) > PLAN_ORDER.index(state.plan)
    updated = replace(
        state,
        plan=new_plan,
        subscription_start=starts_at or now,
        subscription_end=ends_at,
        updated_at=now,
    )
    action = AuditAction.plan_upgraded if upgraded else AuditAction.plan_downgraded
    return append_entry(updated, action, now, details=f"{state.plan.value} -> {new_plan.value}")


def add_admin_note(state: AccountState, note: str, now: datetime) -> AccountState:
    if len(note) > MAX_ADMIN_NOTES_LENGTH:
        raise ValueError(f"admin notes are limited to {MAX_ADMIN_NOTES_LENGTH} characters")
    updated = replace(state, admin_notes=note, updated_at=now)
    return append_entry(updated, AuditAction.admin_note_added, now)


def record_settings_change(
    state: AccountState, details: str, now: datetime, ip_address: str | None = None
) -> AccountState:
    metrics = replace(state.metrics, last_activity=advance(state.metrics.last_activity, now))
    updated = replace(state, metrics=metrics, updated_at=now)
    return append_entry(updated, AuditAction.settings_changed, now, details=details, ip_address=ip_address)


def record_activity(
    state: AccountState,
    kind: ActivityKind | str,
    now: datetime,
    details: str | None = None,
    ip_address: str | None = None,
) -> AccountState:
    """Increment the counter behind ``kind`` and log the matching audit action."""
    activity_kind = ActivityKind(kind)
    counter = ACTIVITY_COUNTERS[activity_kind]
    activity = replace(state.activity, **{counter: getattr(state.activity, counter) + 1})
    metrics = replace(state.metrics, last_activity=advance(state.metrics.last_activity, now))
    updated = replace(state, activity=activity, metrics=metrics, updated_at=now)
    return append_entry(
        updated, AuditAction(activity_kind.value), now, details=details, ip_address=ip_address
    )
