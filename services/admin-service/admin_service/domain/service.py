"""Account service running each account operation as one optimistic transaction."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
from itertools import islice
import json
import logging
from typing import Callable, Iterable, Tuple
import uuid

from messaging_schemas import Contact, MessageType, Template

from . import audit, credentials, features, profile, sessions
from .account import (
    AccountState,
    AccountStatus,
    ActivityKind,
    AuditAction,
    AuditEntry,
    DeviceInfo,
    FeatureName,
    Location,
    Plan,
)
from .clock import Clock, SystemClock
from .contracts import LoginInput, ProvisionAccountInput
from .credentials import LockoutPolicy
from .errors import (
    AccountNotFoundError,
    ConcurrentModificationError,
    InvalidCredentialsError,
)
from ..metrics import ACCOUNT_LOCKOUTS, LOGIN_FAILURES, SESSIONS_CLOSED, WRITE_CONFLICTS
from ..repository import AccountRepository
from ..security.passwords import hash_password, verify_password
from ..security.tokens import decode_access_token, issue_access_token

logger = logging.getLogger(__name__)

Transition = Callable[[AccountState, datetime], AccountState]


@dataclass(slots=True)
class LoginResult:
    """Account state after a successful login together with its bearer token."""

    account: AccountState
    access_token: str
    expires_in: int


class AccountService:
    """Admin account workflows over a versioned account repository.

    Every mutating call reads the aggregate once, takes ``now`` once, applies
    a pure transition and writes back conditionally on the version it read.
    Lost races surface as ``ConcurrentModificationError``; retrying is left to
    the caller.
    """

    def __init__(
        self,
        repository: AccountRepository,
        clock: Clock | None = None,
        policy: LockoutPolicy | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()
        self._policy = policy or LockoutPolicy()

    def _load(self, account_id: str) -> AccountState:
        state = self._repository.get(account_id)
        if state is None:
            raise AccountNotFoundError(account_id)
        return state

    def _write(self, current: AccountState, updated: AccountState) -> AccountState:
        if updated is current:
            return current
        try:
            return self._repository.save(updated, expected_version=current.version)
        except ConcurrentModificationError:
            WRITE_CONFLICTS.inc()
            logger.info("write conflict on account %s at version %s", current.account_id, current.version)
            raise

    def _transact(self, account_id: str, transition: Transition) -> AccountState:
        current = self._load(account_id)
        return self._write(current, transition(current, self._clock.now()))

    def provision_account(
        self, payload: ProvisionAccountInput, idempotency_key: str | None = None
    ) -> Tuple[AccountState, bool]:
        """Create or replay an admin account; returns ``(account, replayed)``."""
        state = profile.new_account_state(
            account_id=str(uuid.uuid4()),
            email=payload.email,
            password_hash=hash_password(payload.password),
            now=self._clock.now(),
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=payload.role,
            is_super_admin=payload.is_super_admin,
        )
        account, replay = self._repository.create(state, idempotency_key)
        if replay:
            logger.info("replayed provisioning of account %s", account.account_id)
        else:
            logger.info("provisioned account %s", account.account_id)
        return account, replay

    def get_account(self, account_id: str) -> AccountState | None:
        return self._repository.get(account_id)

    def is_account_locked(self, account_id: str) -> bool:
        return credentials.is_account_locked(self._load(account_id), self._clock.now())

    def is_online(self, account_id: str) -> bool:
        return sessions.is_online(self._load(account_id))

    def authenticate(self, payload: LoginInput) -> LoginResult:
        """Check a login attempt and, on success, open a session in the same write.

        A locked or disabled account is rejected before the password is
        checked and without changing state. A wrong password is recorded as a
        failed attempt and then reported as ``InvalidCredentialsError``.
        A session left open by an earlier login is closed in the same write,
        so an abandoned session never blocks the next login.
        """
        current = self._repository.get_by_email(payload.email)
        if current is None:
            raise InvalidCredentialsError()
        now = self._clock.now()
        credentials.ensure_usable(current, now)

        if not verify_password(payload.password, current.credentials.password_hash):
            updated = credentials.record_failed_attempt(
                current, now, self._policy, ip_address=payload.ip_address
            )
            self._write(current, updated)
            LOGIN_FAILURES.inc()
            if updated.lock.lock_until != current.lock.lock_until and updated.lock.lock_until:
                ACCOUNT_LOCKOUTS.inc()
                logger.warning(
                    "account %s locked until %s after %s failed attempts",
                    current.account_id,
                    updated.lock.lock_until.isoformat(),
                    updated.lock.login_attempts,
                )
            raise InvalidCredentialsError()

        updated = current
        stale_session = current.session.is_open
        if stale_session:
            # Closed before the new login so its logout entry precedes it.
            updated = sessions.end_session(updated, now)
        updated = credentials.record_successful_login(updated, now, ip_address=payload.ip_address)
        updated = sessions.start_session(updated, now, payload.device, payload.location)
        account = self._write(current, updated)
        if stale_session:
            SESSIONS_CLOSED.inc()
            logger.info(
                "closed session of account %s open since %s on new login",
                account.account_id,
                current.session.session_started.isoformat(),
            )
        token, expires_in = issue_access_token(
            subject=account.account_id, role=account.role.value, email=account.email, now=now
        )
        return LoginResult(account=account, access_token=token, expires_in=expires_in)

    def resolve_token(self, token: str) -> AccountState:
        """Return the account behind a bearer token issued by :meth:`authenticate`.

        Tokens minted before the most recent password change are refused.
        """
        claims = decode_access_token(token, now=self._clock.now())
        account = self._load(claims.account_id)
        if credentials.changed_password_after(account, claims.issued_at):
            raise InvalidCredentialsError("token predates the latest password change")
        return account

    def start_session(
        self,
        account_id: str,
        device: DeviceInfo | None = None,
        location: Location | None = None,
    ) -> AccountState:
        return self._transact(
            account_id, lambda state, now: sessions.start_session(state, now, device, location)
        )

    def end_session(self, account_id: str, ip_address: str | None = None) -> AccountState:
        account = self._transact(
            account_id, lambda state, now: sessions.end_session(state, now, ip_address)
        )
        SESSIONS_CLOSED.inc()
        return account

    def track_usage(
        self, account_id: str, feature_name: FeatureName | str, amount: int = 0
    ) -> AccountState:
        return self._transact(
            account_id, lambda state, now: features.track_usage(state, feature_name, now, amount)
        )

    def set_feature_enabled(
        self,
        account_id: str,
        feature_name: FeatureName | str,
        enabled: bool,
        ip_address: str | None = None,
    ) -> AccountState:
        return self._transact(
            account_id,
            lambda state, now: features.set_feature_enabled(
                state, feature_name, enabled, now, ip_address
            ),
        )

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
    ) -> AccountState:
        current = self._load(account_id)
        if not verify_password(current_password, current.credentials.password_hash):
            raise InvalidCredentialsError()
        new_hash = hash_password(new_password)
        updated = profile.change_password(current, new_hash, self._clock.now(), ip_address)
        logger.info("password changed for account %s", account_id)
        return self._write(current, updated)

    def change_status(
        self, account_id: str, status: AccountStatus | str, reason: str | None = None
    ) -> AccountState:
        return self._transact(
            account_id, lambda state, now: profile.change_status(state, status, now, reason)
        )

    def change_plan(
        self,
        account_id: str,
        plan: Plan | str,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
    ) -> AccountState:
        return self._transact(
            account_id, lambda state, now: profile.change_plan(state, plan, now, starts_at, ends_at)
        )

    def add_admin_note(self, account_id: str, note: str) -> AccountState:
        return self._transact(account_id, lambda state, now: profile.add_admin_note(state, note, now))

    def record_settings_change(
        self, account_id: str, details: str, ip_address: str | None = None
    ) -> AccountState:
        return self._transact(
            account_id,
            lambda state, now: profile.record_settings_change(state, details, now, ip_address),
        )

    def record_activity(
        self,
        account_id: str,
        kind: ActivityKind | str,
        details: str | None = None,
        ip_address: str | None = None,
    ) -> AccountState:
        return self._transact(
            account_id,
            lambda state, now: profile.record_activity(state, kind, now, details, ip_address),
        )

    def record_contact_added(
        self, account_id: str, contact: Contact, ip_address: str | None = None
    ) -> AccountState:
        details = f"{contact.full_name} ({contact.phone_number})"
        return self.record_activity(account_id, ActivityKind.contact_added, details, ip_address)

    def record_template_created(
        self, account_id: str, template: Template, ip_address: str | None = None
    ) -> AccountState:
        """Count a new template and the template features it exercises.

        Templates that fail structural validation are rejected with ``ValueError``.
        """
        validation = template.validate_template()
        if not validation.is_valid:
            raise ValueError("; ".join(validation.errors))

        def transition(state: AccountState, now: datetime) -> AccountState:
            state = profile.record_activity(
                state, ActivityKind.template_created, now, template.name, ip_address
            )
            state = features.track_usage(state, FeatureName.templates, now)
            if template.message_type == MessageType.interactive:
                state = features.track_usage(state, FeatureName.interactive_buttons, now)
            return state

        return self._transact(account_id, transition)

    def list_audit_entries(
        self,
        account_id: str,
        *,
        actions: Iterable[AuditAction | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditEntry], str | None]:
        """Return one page of matching audit entries in insertion order plus the next cursor."""
        limit = max(1, min(limit, 100))
        start = self._decode_cursor(cursor) if cursor else 0
        entries = audit.query(self._load(account_id), audit.AuditFilter.build(actions, since, until))

        page = list(islice(entries.indexed(start), limit + 1))
        next_cursor = None
        if len(page) > limit:
            next_cursor = self._encode_cursor(page[limit][0])
            page = page[:limit]
        return [entry for _, entry in page], next_cursor

    def _encode_cursor(self, position: int) -> str:
        payload = json.dumps({"position": position})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> int:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            position = int(data["position"])
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
        if position < 0:
            raise ValueError("invalid cursor")
        return position
