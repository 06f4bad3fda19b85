"""Per-account ledger of optional feature usage."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from .account import FEATURE_TOTALS, AccountState, AuditAction, FeatureName, FeatureUsage, advance
from .audit import append_entry
from .credentials import ensure_usable
from .errors import UnknownFeatureError


def coerce_feature(feature_name: FeatureName | str) -> FeatureName:
    if isinstance(feature_name, FeatureName):
        return feature_name
    try:
        return FeatureName(feature_name)
    except ValueError as exc:
        raise UnknownFeatureError(str(feature_name)) from exc


def _with_feature(state: AccountState, name: FeatureName, usage: FeatureUsage) -> dict[FeatureName, FeatureUsage]:
    features = dict(state.features)
    features[name] = usage
    return features


def track_usage(
    state: AccountState,
    feature_name: FeatureName | str,
    now: datetime,
    amount: int = 0,
) -> AccountState:
    """Record one use of a feature, adding ``amount`` to its numeric total if it has one."""
    name = coerce_feature(feature_name)
    if amount < 0:
        raise ValueError("usage amount must not be negative")
    total_key = FEATURE_TOTALS.get(name)
    if amount and total_key is None:
        raise ValueError(f"feature {name.value} does not track a usage total")
    ensure_usable(state, now)

    current = state.features[name]
    totals = dict(current.totals)
    if total_key is not None:
        totals[total_key] = totals.get(total_key, 0) + amount
    usage = replace(
        current,
        used=True,
        count=current.count + 1,
        last_used=advance(current.last_used, now),
        totals=totals,
    )
    metrics = replace(state.metrics, last_activity=advance(state.metrics.last_activity, now))
    return replace(
        state,
        features=_with_feature(state, name, usage),
        metrics=metrics,
        updated_at=now,
    )


def set_feature_enabled(
    state: AccountState,
    feature_name: FeatureName | str,
    enabled: bool,
    now: datetime,
    ip_address: str | None = None,
) -> AccountState:
    """Toggle a feature without touching its usage history.

    Setting the flag to its current value returns ``state`` unchanged.
    """
    name = coerce_feature(feature_name)
    current = state.features[name]
    if current.enabled == enabled:
        return state
    updated = replace(
        state,
        features=_with_feature(state, name, replace(current, enabled=enabled)),
        updated_at=now,
    )
    action = AuditAction.feature_enabled if enabled else AuditAction.feature_disabled
    return append_entry(updated, action, now, details=name.value, ip_address=ip_address)
