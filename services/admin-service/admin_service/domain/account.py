"""Account aggregate holding one admin's security and activity state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping


class AccountStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"
    deleted = "deleted"


class AdminRole(str, Enum):
    user = "user"
    admin = "admin"
    moderator = "moderator"


class Plan(str, Enum):
    free = "free"
    basic = "basic"
    professional = "professional"
    enterprise = "enterprise"
    custom = "custom"


# Ascending tier order used to tell upgrades from downgrades.
PLAN_ORDER: tuple[Plan, ...] = (
    Plan.free,
    Plan.basic,
    Plan.professional,
    Plan.enterprise,
    Plan.custom,
)


class DeviceType(str, Enum):
    desktop = "desktop"
    mobile = "mobile"
    tablet = "tablet"
    unknown = "unknown"


class FeatureName(str, Enum):
    """Closed set of optional features tracked by the usage ledger."""

    bulk_messaging = "bulk_messaging"
    scheduling = "scheduling"
    templates = "templates"
    interactive_buttons = "interactive_buttons"
    media_upload = "media_upload"
    ai_chat = "ai_chat"


# Features that carry an additive numeric total next to their use count.
FEATURE_TOTALS: dict[FeatureName, str] = {
    FeatureName.media_upload: "total_size",
    FeatureName.ai_chat: "tokens_used",
}


class AuditAction(str, Enum):
    """Closed set of audit log action kinds."""

    login = "login"
    logout = "logout"
    account_created = "account_created"
    contact_added = "contact_added"
    message_sent = "message_sent"
    campaign_created = "campaign_created"
    template_created = "template_created"
    feature_enabled = "feature_enabled"
    feature_disabled = "feature_disabled"
    plan_upgraded = "plan_upgraded"
    plan_downgraded = "plan_downgraded"
    settings_changed = "settings_changed"
    password_changed = "password_changed"
    admin_note_added = "admin_note_added"
    status_changed = "status_changed"


class ActivityKind(str, Enum):
    """Business activities counted per admin; each maps to an audit action."""

    account_created = "account_created"
    contact_added = "contact_added"
    message_sent = "message_sent"
    campaign_created = "campaign_created"
    template_created = "template_created"


ACTIVITY_COUNTERS: dict[ActivityKind, str] = {
    ActivityKind.account_created: "accounts_created",
    ActivityKind.contact_added: "contacts_added",
    ActivityKind.message_sent: "messages_sent",
    ActivityKind.campaign_created: "campaigns_created",
    ActivityKind.template_created: "templates_created",
}


@dataclass(frozen=True, slots=True)
class Credentials:
    password_hash: str
    password_changed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class LockState:
    login_attempts: int = 0
    lock_until: datetime | None = None


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    """Client metadata captured when a session starts."""

    user_agent: str | None = None
    ip_address: str | None = None
    browser_name: str | None = None
    browser_version: str | None = None
    os_name: str | None = None
    os_version: str | None = None
    device_type: DeviceType = DeviceType.unknown


@dataclass(frozen=True, slots=True)
class Location:
    country: str | None = None
    city: str | None = None
    state: str | None = None
    timezone: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True, slots=True)
class SessionState:
    """The current (or most recently closed) usage session."""

    session_started: datetime | None = None
    session_ended: datetime | None = None
    session_duration_ms: int | None = None
    device: DeviceInfo = field(default_factory=DeviceInfo)
    location: Location = field(default_factory=Location)

    @property
    def is_open(self) -> bool:
        return self.session_started is not None and self.session_ended is None


@dataclass(frozen=True, slots=True)
class AggregateMetrics:
    login_count: int = 0
    last_login: datetime | None = None
    last_activity: datetime | None = None
    average_session_duration_ms: float = 0.0
    total_session_time_ms: int = 0
    session_count: int = 0
    failed_login_attempts: int = 0
    password_changes: int = 0
    last_password_change: datetime | None = None


@dataclass(frozen=True, slots=True)
class ActivityCounters:
    accounts_created: int = 0
    contacts_added: int = 0
    messages_sent: int = 0
    campaigns_created: int = 0
    templates_created: int = 0


@dataclass(frozen=True, slots=True)
class FeatureUsage:
    enabled: bool = False
    used: bool = False
    count: int = 0
    last_used: datetime | None = None
    totals: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """Immutable audit trail item."""

    action: AuditAction
    timestamp: datetime
    details: str | None = None
    ip_address: str | None = None


def default_features() -> dict[FeatureName, FeatureUsage]:
    """Return a fresh, unused ledger row for every known feature."""
    features: dict[FeatureName, FeatureUsage] = {}
    for name in FeatureName:
        totals = {FEATURE_TOTALS[name]: 0} if name in FEATURE_TOTALS else {}
        features[name] = FeatureUsage(totals=totals)
    return features


@dataclass(frozen=True, slots=True)
class AccountState:
    """Aggregate root for one admin principal.

    Every field is replaced, never mutated in place; transitions in the
    sibling modules return new instances. ``version`` is owned by the
    repository and bumped on each successful write.
    """

    account_id: str
    email: str
    credentials: Credentials
    created_at: datetime
    updated_at: datetime
    first_name: str = ""
    last_name: str = ""
    role: AdminRole = AdminRole.user
    is_super_admin: bool = False
    status: AccountStatus = AccountStatus.active
    lock: LockState = field(default_factory=LockState)
    session: SessionState = field(default_factory=SessionState)
    metrics: AggregateMetrics = field(default_factory=AggregateMetrics)
    activity: ActivityCounters = field(default_factory=ActivityCounters)
    features: Mapping[FeatureName, FeatureUsage] = field(default_factory=default_features)
    audit_log: tuple[AuditEntry, ...] = ()
    plan: Plan = Plan.free
    subscription_start: datetime | None = None
    subscription_end: datetime | None = None
    admin_notes: str | None = None
    version: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def advance(current: datetime | None, now: datetime) -> datetime:
    """Return ``now`` unless it would move ``current`` backwards."""
    if current is None or now > current:
        return now
    return current
