"""HTTP route definitions for the admin account service."""

from __future__ import annotations

import logging

from datetime import datetime
from typing import Any

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, EmailStr, Field

from messaging_schemas import Contact, Template

from ..config import get_settings
from ..domain.account import (
    AccountState,
    AccountStatus,
    ActivityKind,
    AdminRole,
    AuditAction,
    AuditEntry,
    DeviceInfo,
    DeviceType,
    Location,
    Plan,
)
from ..domain.contracts import LoginInput, ProvisionAccountInput
from ..domain.errors import (
    AccountDisabledError,
    AccountLockedError,
    AccountNotFoundError,
    ConcurrentModificationError,
    DuplicateAccountError,
    InvalidCredentialsError,
    NoOpenSessionError,
    SessionAlreadyOpenError,
    UnknownFeatureError,
)
from ..domain.service import AccountService
from ..domain.sessions import is_online
from ..retry import run_with_conflict_retry
from ..security.rate_limiter import SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class AccountResponse(BaseModel):
    """Serialised `AccountState` without credentials or lockout internals."""

    account_id: str
    email: EmailStr
    first_name: str
    last_name: str
    full_name: str
    role: AdminRole
    is_super_admin: bool
    status: AccountStatus
    is_online: bool
    plan: Plan
    subscription_start: datetime | None
    subscription_end: datetime | None
    admin_notes: str | None
    session: dict[str, Any]
    metrics: dict[str, Any]
    activity: dict[str, int]
    features: dict[str, dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, account: AccountState) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        session = account.session
        metrics = account.metrics
        return cls(
            account_id=account.account_id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            full_name=account.full_name,
            role=account.role,
            is_super_admin=account.is_super_admin,
            status=account.status,
            is_online=is_online(account),
            plan=account.plan,
            subscription_start=account.subscription_start,
            subscription_end=account.subscription_end,
            admin_notes=account.admin_notes,
            session={
                "session_started": session.session_started,
                "session_ended": session.session_ended,
                "session_duration_ms": session.session_duration_ms,
                "device_type": session.device.device_type.value,
                "ip_address": session.device.ip_address,
            },
            metrics={
                "login_count": metrics.login_count,
                "last_login": metrics.last_login,
                "last_activity": metrics.last_activity,
                "average_session_duration_ms": metrics.average_session_duration_ms,
                "total_session_time_ms": metrics.total_session_time_ms,
                "session_count": metrics.session_count,
                "failed_login_attempts": metrics.failed_login_attempts,
                "password_changes": metrics.password_changes,
                "last_password_change": metrics.last_password_change,
            },
            activity={
                "accounts_created": account.activity.accounts_created,
                "contacts_added": account.activity.contacts_added,
                "messages_sent": account.activity.messages_sent,
                "campaigns_created": account.activity.campaigns_created,
                "templates_created": account.activity.templates_created,
            },
            features={
                name.value: {
                    "enabled": usage.enabled,
                    "used": usage.used,
                    "count": usage.count,
                    "last_used": usage.last_used,
                    **usage.totals,
                }
                for name, usage in account.features.items()
            },
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class ProvisionAccountRequest(BaseModel):
    """Payload accepted when provisioning an admin account."""

    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    role: AdminRole = AdminRole.user
    is_super_admin: bool = False


class ProvisionAccountResponse(BaseModel):
    account: AccountResponse
    idempotent_replay: bool


class LoginRequest(BaseModel):
    """Credentials plus optional client details recorded on the new session."""

    email: EmailStr
    password: str
    user_agent: str | None = None
    browser_name: str | None = None
    browser_version: str | None = None
    os_name: str | None = None
    os_version: str | None = None
    device_type: DeviceType = DeviceType.unknown
    country: str | None = None
    city: str | None = None
    state: str | None = None
    timezone: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse


class FeatureUsageRequest(BaseModel):
    amount: int = Field(default=0, ge=0)


class FeatureToggleRequest(BaseModel):
    enabled: bool


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class StatusChangeRequest(BaseModel):
    status: AccountStatus
    reason: str | None = None


class PlanChangeRequest(BaseModel):
    plan: Plan
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class AdminNoteRequest(BaseModel):
    note: str = Field(..., max_length=5000)


class SettingsChangeRequest(BaseModel):
    details: str = Field(..., min_length=1)


class ActivityRequest(BaseModel):
    kind: ActivityKind
    details: str | None = None


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    action: AuditAction
    details: str | None
    timestamp: datetime
    ip_address: str | None

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditLogEntry":
        return cls(
            action=entry.action,
            details=entry.details,
            timestamp=entry.timestamp,
            ip_address=entry.ip_address,
        )


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()


def _build_rate_limiter() -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured login throttle backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("login throttle configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - defensive
            logger.warning("redis login throttle unavailable, falling back to in-memory: %s", exc)

    logger.info("login throttle using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bearer token required")
    return token


@router.post("/admins", response_model=ProvisionAccountResponse, status_code=status.HTTP_201_CREATED)
def provision_account(
    response: Response,
    payload: ProvisionAccountRequest,
    service: AccountService = Depends(get_service),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> ProvisionAccountResponse:
    """Provision an admin account with optional idempotency semantics."""
    try:
        account, replay = service.provision_account(
            ProvisionAccountInput(
                email=payload.email,
                password=payload.password,
                first_name=payload.first_name,
                last_name=payload.last_name,
                role=payload.role,
                is_super_admin=payload.is_super_admin,
            ),
            idempotency_key,
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    response.status_code = status.HTTP_200_OK if replay else status.HTTP_201_CREATED
    return ProvisionAccountResponse(
        account=AccountResponse.from_domain(account),
        idempotent_replay=replay,
    )


@router.get("/admins/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    account = service.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return AccountResponse.from_domain(account)


@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    payload: LoginRequest,
    service: AccountService = Depends(get_service),
) -> LoginResponse:
    """Authenticate an admin and open a session for the calling device."""
    rate_key = f"login:{payload.email.lower()}"
    if not rate_limiter.allow(rate_key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")
    login_input = LoginInput(
        email=payload.email,
        password=payload.password,
        device=DeviceInfo(
            user_agent=payload.user_agent or request.headers.get("User-Agent"),
            ip_address=_client_ip(request),
            browser_name=payload.browser_name,
            browser_version=payload.browser_version,
            os_name=payload.os_name,
            os_version=payload.os_version,
            device_type=payload.device_type,
        ),
        location=Location(
            country=payload.country,
            city=payload.city,
            state=payload.state,
            timezone=payload.timezone,
            latitude=payload.latitude,
            longitude=payload.longitude,
        ),
    )
    try:
        result = run_with_conflict_retry(lambda: service.authenticate(login_input))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    rate_limiter.reset(rate_key)
    return LoginResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        account=AccountResponse.from_domain(result.account),
    )


@router.post("/auth/logout", response_model=AccountResponse)
def logout(
    request: Request,
    authorization: str = Header(..., alias="Authorization"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Close the session of the admin identified by the bearer token."""
    token = _bearer_token(authorization)
    try:
        account = service.resolve_token(token)
        account = run_with_conflict_retry(
            lambda: service.end_session(account.account_id, _client_ip(request))
        )
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token") from exc
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admins/{account_id}/features/{feature_name}/usage", response_model=AccountResponse)
def track_feature_usage(
    account_id: str,
    feature_name: str,
    payload: FeatureUsageRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.track_usage(account_id, feature_name, payload.amount)
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.put("/admins/{account_id}/features/{feature_name}", response_model=AccountResponse)
def toggle_feature(
    request: Request,
    account_id: str,
    feature_name: str,
    payload: FeatureToggleRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.set_feature_enabled(
                account_id, feature_name, payload.enabled, _client_ip(request)
            )
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admins/{account_id}/password", response_model=AccountResponse)
def change_password(
    request: Request,
    account_id: str,
    payload: PasswordChangeRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.change_password(
                account_id, payload.current_password, payload.new_password, _client_ip(request)
            )
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.put("/admins/{account_id}/status", response_model=AccountResponse)
def change_status(
    account_id: str,
    payload: StatusChangeRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.change_status(account_id, payload.status, payload.reason)
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.put("/admins/{account_id}/plan", response_model=AccountResponse)
def change_plan(
    account_id: str,
    payload: PlanChangeRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.change_plan(account_id, payload.plan, payload.starts_at, payload.ends_at)
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.put("/admins/{account_id}/notes", response_model=AccountResponse)
def set_admin_note(
    account_id: str,
    payload: AdminNoteRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(lambda: service.add_admin_note(account_id, payload.note))
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admins/{account_id}/settings-changes", response_model=AccountResponse)
def record_settings_change(
    request: Request,
    account_id: str,
    payload: SettingsChangeRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.record_settings_change(account_id, payload.details, _client_ip(request))
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admins/{account_id}/contacts", response_model=AccountResponse)
def record_contact(
    request: Request,
    account_id: str,
    contact: Contact,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Count a contact created by the admin; the contact itself is stored elsewhere."""
    try:
        account = run_with_conflict_retry(
            lambda: service.record_contact_added(account_id, contact, _client_ip(request))
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admins/{account_id}/templates", response_model=AccountResponse)
def record_template(
    request: Request,
    account_id: str,
    template: Template,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.record_template_created(account_id, template, _client_ip(request))
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/admins/{account_id}/activities", response_model=AccountResponse)
def record_activity(
    request: Request,
    account_id: str,
    payload: ActivityRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = run_with_conflict_retry(
            lambda: service.record_activity(
                account_id, payload.kind, payload.details, _client_ip(request)
            )
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/admins/{account_id}/audit", response_model=AuditLogResponse)
def list_audit_log(
    account_id: str,
    action: list[AuditAction] | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return audit entries for one admin in the order they were recorded."""
    try:
        entries, next_cursor = service.list_audit_entries(
            account_id,
            actions=action,
            since=since,
            until=until,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise _http_error_from_value_error(exc) from exc

    return AuditLogResponse(
        items=[AuditLogEntry.from_domain(entry) for entry in entries],
        next_cursor=next_cursor,
    )


_ERROR_STATUS: tuple[tuple[type[ValueError], int], ...] = (
    (AccountNotFoundError, status.HTTP_404_NOT_FOUND),
    (UnknownFeatureError, status.HTTP_404_NOT_FOUND),
    (AccountLockedError, status.HTTP_423_LOCKED),
    (AccountDisabledError, status.HTTP_403_FORBIDDEN),
    (InvalidCredentialsError, status.HTTP_401_UNAUTHORIZED),
    (NoOpenSessionError, status.HTTP_409_CONFLICT),
    (SessionAlreadyOpenError, status.HTTP_409_CONFLICT),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (DuplicateAccountError, status.HTTP_409_CONFLICT),
)


def _http_error_from_value_error(exc: ValueError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
