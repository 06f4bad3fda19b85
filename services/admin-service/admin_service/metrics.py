"""Prometheus counters for account security and activity events."""

from __future__ import annotations

from prometheus_client import Counter

LOGIN_FAILURES = Counter(
    "admin_login_failures_total",
    "Failed login attempts recorded against admin accounts.",
)
ACCOUNT_LOCKOUTS = Counter(
    "admin_account_lockouts_total",
    "Admin accounts locked after reaching the failure threshold.",
)
SESSIONS_CLOSED = Counter(
    "admin_sessions_closed_total",
    "Admin sessions closed with a recorded duration.",
)
WRITE_CONFLICTS = Counter(
    "admin_account_write_conflicts_total",
    "Optimistic account writes rejected because of a concurrent update.",
)
