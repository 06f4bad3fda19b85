from __future__ import annotations

from datetime import datetime, timezone

import pytest

from admin_service.domain.account import AccountState
from admin_service.domain.clock import FrozenClock
from admin_service.domain.profile import new_account_state
from admin_service.domain.service import AccountService
from admin_service.repository import InMemoryAccountRepository

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def account() -> AccountState:
    """A freshly provisioned aggregate, not yet persisted."""
    return new_account_state(
        account_id="acct-1",
        email="Ops@Example.com ",
        password_hash="$2b$10$placeholder",
        now=T0,
        first_name="Dana",
        last_name="Reyes",
    )


@pytest.fixture
def repository() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def service(repository: InMemoryAccountRepository, clock: FrozenClock) -> AccountService:
    return AccountService(repository, clock=clock)
