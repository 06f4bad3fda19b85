"""Append-only audit log carried inside the account aggregate."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Iterator

from .account import AccountState, AuditAction, AuditEntry


def coerce_action(action: AuditAction | str) -> AuditAction:
    """Return ``action`` as an ``AuditAction``, rejecting names outside the closed set."""
    if isinstance(action, AuditAction):
        return action
    try:
        return AuditAction(action)
    except ValueError as exc:
        raise ValueError(f"unknown audit action {action!r}") from exc


def append_entry(
    state: AccountState,
    action: AuditAction | str,
    now: datetime,
    details: str | None = None,
    ip_address: str | None = None,
) -> AccountState:
    """Return ``state`` with one more audit entry at the end of its log.

    The entry timestamp never falls below the last recorded one, so the log
    stays ordered even if the wall clock steps back between operations.
    """
    kind = coerce_action(action)
    timestamp = now
    if state.audit_log and state.audit_log[-1].timestamp > timestamp:
        timestamp = state.audit_log[-1].timestamp
    entry = AuditEntry(action=kind, timestamp=timestamp, details=details, ip_address=ip_address)
    return replace(state, audit_log=state.audit_log + (entry,), updated_at=now)


def _as_utc(value: datetime | None) -> datetime | None:
    """Read naive bounds as UTC, the zone every entry is stamped in."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True, slots=True)
class AuditFilter:
    """Optional action and inclusive time-range constraints for audit queries."""

    actions: frozenset[AuditAction] | None = None
    since: datetime | None = None
    until: datetime | None = None

    @classmethod
    def build(
        cls,
        actions: Iterable[AuditAction | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> "AuditFilter":
        kinds = frozenset(coerce_action(a) for a in actions) if actions else None
        since, until = _as_utc(since), _as_utc(until)
        if since and until and since > until:
            raise ValueError("since must not be later than until")
        return cls(actions=kinds, since=since, until=until)

    def matches(self, entry: AuditEntry) -> bool:
        if self.actions is not None and entry.action not in self.actions:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp > self.until:
            return False
        return True


class AuditQuery:
    """Lazy view over matching audit entries in insertion order.

    Iterating twice walks the same snapshot again.
    """

    def __init__(self, entries: tuple[AuditEntry, ...], audit_filter: AuditFilter) -> None:
        self._entries = entries
        self._filter = audit_filter

    def __iter__(self) -> Iterator[AuditEntry]:
        return (entry for entry in self._entries if self._filter.matches(entry))

    def indexed(self, start: int = 0) -> Iterator[tuple[int, AuditEntry]]:
        """Yield ``(position, entry)`` pairs for matches at or after ``start``."""
        for position in range(max(start, 0), len(self._entries)):
            entry = self._entries[position]
            if self._filter.matches(entry):
                yield position, entry


def query(state: AccountState, audit_filter: AuditFilter | None = None) -> AuditQuery:
    return AuditQuery(state.audit_log, audit_filter or AuditFilter())
