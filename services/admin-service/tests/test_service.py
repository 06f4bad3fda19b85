from __future__ import annotations

import threading
from datetime import timedelta

import jwt
import pytest

from admin_service.domain.account import AuditAction, DeviceInfo, FeatureName
from admin_service.domain.contracts import LoginInput, ProvisionAccountInput
from admin_service.domain.errors import (
    AccountLockedError,
    AccountNotFoundError,
    ConcurrentModificationError,
    DuplicateAccountError,
    InvalidCredentialsError,
    NoOpenSessionError,
    SessionAlreadyOpenError,
)
from admin_service.domain.service import AccountService
from admin_service.repository import InMemoryAccountRepository
from admin_service.retry import run_with_conflict_retry
from messaging_schemas import Contact, Template

PASSWORD = "s3cret-pass"


def _provision(service: AccountService, email: str = "admin@example.com", key: str | None = None):
    account, _ = service.provision_account(
        ProvisionAccountInput(email=email, password=PASSWORD, first_name="Ana", last_name="Silva"),
        key,
    )
    return account


def _login(email: str = "admin@example.com", password: str = PASSWORD) -> LoginInput:
    return LoginInput(email=email, password=password, device=DeviceInfo(ip_address="10.0.0.2"))


class FlakyRepository(InMemoryAccountRepository):
    """Loses the first ``conflicts`` optimistic writes as if another writer got there first."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.remaining_conflicts = conflicts
        self.save_calls = 0

    def save(self, state, expected_version):
        self.save_calls += 1
        if self.remaining_conflicts:
            self.remaining_conflicts -= 1
            raise ConcurrentModificationError(state.account_id, expected_version)
        return super().save(state, expected_version)


def test_provisioning_persists_version_one(service, repository):
    account = _provision(service)
    assert account.version == 1
    assert account.credentials.password_hash != PASSWORD
    stored = repository.get(account.account_id)
    assert stored == account
    assert [e.action for e in stored.audit_log] == [AuditAction.account_created]


def test_provisioning_replays_idempotency_key_and_rejects_duplicates(service):
    first = _provision(service, key="req-1")
    replay, replayed = service.provision_account(
        ProvisionAccountInput(email="admin@example.com", password=PASSWORD), "req-1"
    )
    assert replayed is True
    assert replay.account_id == first.account_id

    with pytest.raises(DuplicateAccountError):
        _provision(service, email="ADMIN@example.com")


def test_lockout_flow_through_service(service, repository, clock):
    account = _provision(service)
    for _ in range(5):
        with pytest.raises(InvalidCredentialsError):
            service.authenticate(_login(password="wrong-password"))

    locked = repository.get(account.account_id)
    assert locked.lock.login_attempts == 5
    assert locked.lock.lock_until == clock.now() + timedelta(hours=2)
    assert service.is_account_locked(account.account_id)

    with pytest.raises(AccountLockedError):
        service.authenticate(_login())
    assert repository.get(account.account_id).version == locked.version

    clock.advance(hours=2, seconds=1)
    result = service.authenticate(_login())
    assert result.access_token
    assert result.account.lock.login_attempts == 0
    assert result.account.metrics.login_count == 1
    assert result.account.metrics.failed_login_attempts == 5
    assert service.is_online(account.account_id)


def test_unknown_email_is_reported_as_invalid_credentials(service):
    with pytest.raises(InvalidCredentialsError):
        service.authenticate(_login(email="nobody@example.com"))


def test_login_opens_session_and_logout_closes_it(service, clock):
    account = _provision(service)
    result = service.authenticate(_login())
    assert result.account.session.session_started == clock.now()
    assert result.account.session.device.ip_address == "10.0.0.2"

    clock.advance(milliseconds=90000)
    closed = service.end_session(account.account_id)
    assert closed.session.session_duration_ms == 90000
    assert closed.metrics.total_session_time_ms == 90000
    assert not service.is_online(account.account_id)

    with pytest.raises(NoOpenSessionError):
        service.end_session(account.account_id)


def test_login_closes_abandoned_session(service, clock):
    account = _provision(service)
    first = service.authenticate(_login())
    with pytest.raises(SessionAlreadyOpenError):
        service.start_session(account.account_id)

    clock.advance(days=1)
    with pytest.raises(jwt.ExpiredSignatureError):
        service.resolve_token(first.access_token)

    second = service.authenticate(_login())
    state = second.account
    assert state.session.session_started == clock.now()
    assert state.session.session_ended is None
    assert state.metrics.session_count == 1
    assert state.metrics.total_session_time_ms == 24 * 60 * 60 * 1000
    assert state.metrics.login_count == 2
    assert [e.action for e in state.audit_log[-2:]] == [AuditAction.logout, AuditAction.login]
    assert service.is_online(account.account_id)
    assert service.resolve_token(second.access_token).account_id == account.account_id


def test_each_operation_uses_one_timestamp(service, clock):
    account = _provision(service)
    service.start_session(account.account_id)
    clock.advance(seconds=42)
    closed = service.end_session(account.account_id)
    assert closed.session.session_ended == closed.audit_log[-1].timestamp == clock.now()
    assert closed.metrics.last_activity == clock.now()


def test_stale_write_is_rejected(service, repository):
    account = _provision(service)
    stale = repository.get(account.account_id)
    service.track_usage(account.account_id, FeatureName.scheduling)

    with pytest.raises(ConcurrentModificationError):
        repository.save(stale, expected_version=stale.version)


def test_conflicts_propagate_from_service_and_retry_wrapper_recovers(clock):
    repository = FlakyRepository(conflicts=0)
    service = AccountService(repository, clock=clock)
    account = _provision(service)

    repository.remaining_conflicts = 1
    with pytest.raises(ConcurrentModificationError):
        service.track_usage(account.account_id, "bulk_messaging")

    repository.remaining_conflicts = 2
    updated = run_with_conflict_retry(
        lambda: service.track_usage(account.account_id, "bulk_messaging"), attempts=3
    )
    assert updated.features[FeatureName.bulk_messaging].count == 1
    assert repository.get(account.account_id).version == 2


def test_retry_wrapper_gives_up_and_leaves_other_errors_alone(clock):
    repository = FlakyRepository(conflicts=0)
    service = AccountService(repository, clock=clock)
    account = _provision(service)

    repository.remaining_conflicts = 5
    with pytest.raises(ConcurrentModificationError):
        run_with_conflict_retry(lambda: service.track_usage(account.account_id, "scheduling"), attempts=2)

    calls_before = repository.save_calls
    with pytest.raises(NoOpenSessionError):
        run_with_conflict_retry(lambda: service.end_session(account.account_id), attempts=3)
    assert repository.save_calls == calls_before


def test_concurrent_usage_is_not_lost(service, repository):
    account = _provision(service)
    workers = 8

    def worker() -> None:
        run_with_conflict_retry(
            lambda: service.track_usage(account.account_id, FeatureName.ai_chat, amount=10),
            attempts=100,
        )

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    usage = repository.get(account.account_id).features[FeatureName.ai_chat]
    assert usage.count == workers
    assert usage.totals["tokens_used"] == workers * 10


def test_missing_account_raises_not_found(service):
    with pytest.raises(AccountNotFoundError):
        service.track_usage("missing", FeatureName.templates)
    assert service.get_account("missing") is None


def test_contact_and_template_activity(service):
    account = _provision(service)
    contact = Contact(phone_number="+351912345678", created_by=account.account_id, first_name="Rui")
    state = service.record_contact_added(account.account_id, contact, ip_address="10.0.0.3")
    assert state.activity.contacts_added == 1
    assert state.audit_log[-1].details == "Rui (+351912345678)"

    template = Template(
        name="order-update",
        created_by=account.account_id,
        message_type="interactive",
        interactive={
            "type": "button",
            "body": "Your order {{order}} shipped",
            "buttons": [{"id": "track", "display_text": "Track"}],
        },
    )
    state = service.record_template_created(account.account_id, template)
    assert state.activity.templates_created == 1
    assert state.features[FeatureName.templates].count == 1
    assert state.features[FeatureName.interactive_buttons].count == 1
    assert state.audit_log[-1].action == AuditAction.template_created


def test_invalid_template_is_rejected_without_write(service, repository):
    account = _provision(service)
    empty = Template(name="blank", created_by=account.account_id)
    with pytest.raises(ValueError, match="Content is required"):
        service.record_template_created(account.account_id, empty)
    assert repository.get(account.account_id).version == 1


def test_audit_pagination_keeps_insertion_order(service):
    account = _provision(service)
    for index in range(6):
        service.record_activity(account.account_id, "message_sent", details=str(index))

    first_page, cursor = service.list_audit_entries(account.account_id, limit=4)
    assert [e.action for e in first_page] == [AuditAction.account_created] + [AuditAction.message_sent] * 3
    assert cursor

    second_page, next_cursor = service.list_audit_entries(account.account_id, limit=4, cursor=cursor)
    assert [e.details for e in second_page] == ["3", "4", "5"]
    assert next_cursor is None

    only_sent, _ = service.list_audit_entries(account.account_id, actions=["message_sent"], limit=100)
    assert len(only_sent) == 6

    with pytest.raises(ValueError, match="invalid cursor"):
        service.list_audit_entries(account.account_id, cursor="garbage")


def test_token_issued_before_password_change_is_refused(service, clock):
    account = _provision(service)
    result = service.authenticate(_login())
    assert service.resolve_token(result.access_token).account_id == account.account_id

    clock.advance(minutes=5)
    service.change_password(account.account_id, PASSWORD, "another-pass")
    with pytest.raises(InvalidCredentialsError):
        service.resolve_token(result.access_token)

    with pytest.raises(InvalidCredentialsError):
        service.change_password(account.account_id, "wrong-password", "third-pass")
