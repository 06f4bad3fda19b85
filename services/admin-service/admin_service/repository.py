"""Persistence for admin account aggregates with optimistic versioning."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol, Tuple

from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import (
    AccountState,
    AccountStatus,
    ActivityCounters,
    AdminRole,
    AggregateMetrics,
    AuditAction,
    AuditEntry,
    Credentials,
    DeviceInfo,
    DeviceType,
    FeatureName,
    FeatureUsage,
    Location,
    LockState,
    Plan,
    SessionState,
    default_features,
)
from .domain.errors import ConcurrentModificationError, DuplicateAccountError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS admin_accounts (
    account_id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    version INTEGER NOT NULL,
    document JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS admin_account_idempotency (
    idempotency_key TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES admin_accounts (account_id),
    created_at TIMESTAMPTZ NOT NULL
);
"""


class AccountRepository(Protocol):
    """Read/write boundary for account aggregates.

    ``save`` is a compare-and-set on ``version``: it raises
    ``ConcurrentModificationError`` when the stored version is no longer the
    one the caller read.
    """

    def create(self, state: AccountState, idempotency_key: str | None) -> Tuple[AccountState, bool]: ...

    def get(self, account_id: str) -> AccountState | None: ...

    def get_by_email(self, email: str) -> AccountState | None: ...

    def save(self, state: AccountState, expected_version: int) -> AccountState: ...


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def state_to_document(state: AccountState) -> dict[str, Any]:
    """Flatten an aggregate into a JSON-compatible document (without its version)."""
    session = state.session
    device = session.device
    location = session.location
    metrics = state.metrics
    return {
        "account_id": state.account_id,
        "email": state.email,
        "first_name": state.first_name,
        "last_name": state.last_name,
        "role": state.role.value,
        "is_super_admin": state.is_super_admin,
        "status": state.status.value,
        "credentials": {
            "password_hash": state.credentials.password_hash,
            "password_changed_at": _dt(state.credentials.password_changed_at),
        },
        "lock": {
            "login_attempts": state.lock.login_attempts,
            "lock_until": _dt(state.lock.lock_until),
        },
        "session": {
            "session_started": _dt(session.session_started),
            "session_ended": _dt(session.session_ended),
            "session_duration_ms": session.session_duration_ms,
            "device": {
                "user_agent": device.user_agent,
                "ip_address": device.ip_address,
                "browser_name": device.browser_name,
                "browser_version": device.browser_version,
                "os_name": device.os_name,
                "os_version": device.os_version,
                "device_type": device.device_type.value,
            },
            "location": {
                "country": location.country,
                "city": location.city,
                "state": location.state,
                "timezone": location.timezone,
                "latitude": location.latitude,
                "longitude": location.longitude,
            },
        },
        "metrics": {
            "login_count": metrics.login_count,
            "last_login": _dt(metrics.last_login),
            "last_activity": _dt(metrics.last_activity),
            "average_session_duration_ms": metrics.average_session_duration_ms,
            "total_session_time_ms": metrics.total_session_time_ms,
            "session_count": metrics.session_count,
            "failed_login_attempts": metrics.failed_login_attempts,
            "password_changes": metrics.password_changes,
            "last_password_change": _dt(metrics.last_password_change),
        },
        "activity": {
            "accounts_created": state.activity.accounts_created,
            "contacts_added": state.activity.contacts_added,
            "messages_sent": state.activity.messages_sent,
            "campaigns_created": state.activity.campaigns_created,
            "templates_created": state.activity.templates_created,
        },
        "features": {
            name.value: {
                "enabled": usage.enabled,
                "used": usage.used,
                "count": usage.count,
                "last_used": _dt(usage.last_used),
                "totals": dict(usage.totals),
            }
            for name, usage in state.features.items()
        },
        "audit_log": [
            {
                "action": entry.action.value,
                "details": entry.details,
                "timestamp": _dt(entry.timestamp),
                "ip_address": entry.ip_address,
            }
            for entry in state.audit_log
        ],
        "plan": state.plan.value,
        "subscription_start": _dt(state.subscription_start),
        "subscription_end": _dt(state.subscription_end),
        "admin_notes": state.admin_notes,
        "created_at": _dt(state.created_at),
        "updated_at": _dt(state.updated_at),
    }


def state_from_document(document: dict[str, Any], version: int) -> AccountState:
    """Rebuild an aggregate from a stored document.

    Features missing from older documents come back with default ledger rows.
    """
    session_doc = document.get("session", {})
    device_doc = session_doc.get("device", {})
    location_doc = session_doc.get("location", {})
    metrics_doc = document.get("metrics", {})

    features = default_features()
    for raw_name, usage_doc in document.get("features", {}).items():
        name = FeatureName(raw_name)
        totals = dict(features[name].totals)
        totals.update(usage_doc.get("totals", {}))
        features[name] = FeatureUsage(
            enabled=usage_doc.get("enabled", False),
            used=usage_doc.get("used", False),
            count=usage_doc.get("count", 0),
            last_used=_parse_dt(usage_doc.get("last_used")),
            totals=totals,
        )

    return AccountState(
        account_id=document["account_id"],
        email=document["email"],
        first_name=document.get("first_name", ""),
        last_name=document.get("last_name", ""),
        role=AdminRole(document.get("role", AdminRole.user.value)),
        is_super_admin=document.get("is_super_admin", False),
        status=AccountStatus(document.get("status", AccountStatus.active.value)),
        credentials=Credentials(
            password_hash=document["credentials"]["password_hash"],
            password_changed_at=_parse_dt(document["credentials"].get("password_changed_at")),
        ),
        lock=LockState(
            login_attempts=document.get("lock", {}).get("login_attempts", 0),
            lock_until=_parse_dt(document.get("lock", {}).get("lock_until")),
        ),
        session=SessionState(
            session_started=_parse_dt(session_doc.get("session_started")),
            session_ended=_parse_dt(session_doc.get("session_ended")),
            session_duration_ms=session_doc.get("session_duration_ms"),
            device=DeviceInfo(
                user_agent=device_doc.get("user_agent"),
                ip_address=device_doc.get("ip_address"),
                browser_name=device_doc.get("browser_name"),
                browser_version=device_doc.get("browser_version"),
                os_name=device_doc.get("os_name"),
                os_version=device_doc.get("os_version"),
                device_type=DeviceType(device_doc.get("device_type", DeviceType.unknown.value)),
            ),
            location=Location(**location_doc),
        ),
        metrics=AggregateMetrics(
            login_count=metrics_doc.get("login_count", 0),
            last_login=_parse_dt(metrics_doc.get("last_login")),
            last_activity=_parse_dt(metrics_doc.get("last_activity")),
            average_session_duration_ms=metrics_doc.get("average_session_duration_ms", 0.0),
            total_session_time_ms=metrics_doc.get("total_session_time_ms", 0),
            session_count=metrics_doc.get("session_count", 0),
            failed_login_attempts=metrics_doc.get("failed_login_attempts", 0),
            password_changes=metrics_doc.get("password_changes", 0),
            last_password_change=_parse_dt(metrics_doc.get("last_password_change")),
        ),
        activity=ActivityCounters(**document.get("activity", {})),
        features=features,
        audit_log=tuple(
            AuditEntry(
                action=AuditAction(entry["action"]),
                timestamp=_parse_dt(entry["timestamp"]),
                details=entry.get("details"),
                ip_address=entry.get("ip_address"),
            )
            for entry in document.get("audit_log", [])
        ),
        plan=Plan(document.get("plan", Plan.free.value)),
        subscription_start=_parse_dt(document.get("subscription_start")),
        subscription_end=_parse_dt(document.get("subscription_end")),
        admin_notes=document.get("admin_notes"),
        created_at=_parse_dt(document["created_at"]),
        updated_at=_parse_dt(document["updated_at"]),
        version=version,
    )


class InMemoryAccountRepository:
    """Process-local account store with thread-safe compare-and-set writes.

    Documents are stored serialised so callers never share live objects with
    the store.
    """

    def __init__(self) -> None:
        self._documents: dict[str, tuple[int, dict[str, Any]]] = {}
        self._emails: dict[str, str] = {}
        self._idempotency: dict[str, str] = {}
        self._lock = threading.Lock()

    def create(self, state: AccountState, idempotency_key: str | None) -> Tuple[AccountState, bool]:
        with self._lock:
            if idempotency_key and idempotency_key in self._idempotency:
                version, document = self._documents[self._idempotency[idempotency_key]]
                return state_from_document(document, version), True
            if state.email in self._emails:
                raise DuplicateAccountError(state.email)
            self._documents[state.account_id] = (1, state_to_document(state))
            self._emails[state.email] = state.account_id
            if idempotency_key:
                self._idempotency[idempotency_key] = state.account_id
        return replace(state, version=1), False

    def get(self, account_id: str) -> AccountState | None:
        with self._lock:
            stored = self._documents.get(account_id)
        if stored is None:
            return None
        version, document = stored
        return state_from_document(document, version)

    def get_by_email(self, email: str) -> AccountState | None:
        with self._lock:
            account_id = self._emails.get(email.strip().lower())
        if account_id is None:
            return None
        return self.get(account_id)

    def save(self, state: AccountState, expected_version: int) -> AccountState:
        document = state_to_document(state)
        with self._lock:
            stored = self._documents.get(state.account_id)
            if stored is None or stored[0] != expected_version:
                raise ConcurrentModificationError(state.account_id, expected_version)
            new_version = expected_version + 1
            self._documents[state.account_id] = (new_version, document)
        return replace(state, version=new_version)


class PostgresAccountRepository:
    """Postgres-backed account persistence storing each aggregate as one JSONB document."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_schema(self) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
                conn.commit()

    def create(self, state: AccountState, idempotency_key: str | None) -> Tuple[AccountState, bool]:
        """Insert a new aggregate and return a tuple of (account, replay flag)."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if idempotency_key:
                    cur.execute(
                        """
                        SELECT a.version, a.document
                        FROM admin_account_idempotency i
                        JOIN admin_accounts a ON a.account_id = i.account_id
                        WHERE i.idempotency_key = %s
                        """,
                        (idempotency_key,),
                    )
                    row = cur.fetchone()
                    if row:
                        return state_from_document(row[1], row[0]), True

                cur.execute(
                    """
                    INSERT INTO admin_accounts (account_id, email, version, document, created_at, updated_at)
                    VALUES (%s, %s, 1, %s, %s, %s)
                    ON CONFLICT (email) DO NOTHING
                    RETURNING version
                    """,
                    (
                        state.account_id,
                        state.email,
                        Json(state_to_document(state)),
                        state.created_at,
                        state.updated_at,
                    ),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise DuplicateAccountError(state.email)

                if idempotency_key:
                    cur.execute(
                        """
                        INSERT INTO admin_account_idempotency (idempotency_key, account_id, created_at)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (idempotency_key) DO NOTHING
                        """,
                        (idempotency_key, state.account_id, state.created_at),
                    )
                conn.commit()
        return replace(state, version=row[0]), False

    def get(self, account_id: str) -> AccountState | None:
        """Fetch an account aggregate by identifier or return ``None``."""
        return self._fetch_one(
            "SELECT version, document FROM admin_accounts WHERE account_id = %s",
            (account_id,),
        )

    def get_by_email(self, email: str) -> AccountState | None:
        return self._fetch_one(
            "SELECT version, document FROM admin_accounts WHERE email = %s",
            (email.strip().lower(),),
        )

    def save(self, state: AccountState, expected_version: int) -> AccountState:
        """Write the aggregate only if nobody else bumped its version since it was read."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE admin_accounts
                    SET document = %s, version = version + 1, updated_at = %s
                    WHERE account_id = %s AND version = %s
                    RETURNING version
                    """,
                    (
                        Json(state_to_document(state)),
                        state.updated_at,
                        state.account_id,
                        expected_version,
                    ),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    logger.warning(
                        "optimistic write rejected for account %s at version %s",
                        state.account_id,
                        expected_version,
                    )
                    raise ConcurrentModificationError(state.account_id, expected_version)
                conn.commit()
        return replace(state, version=row[0])

    def _fetch_one(self, query: str, params: tuple) -> AccountState | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                if not row:
                    return None
        return state_from_document(row[1], row[0])
