"""Error kinds raised by account state transitions and their persistence."""

from __future__ import annotations

from datetime import datetime


class AccountStateError(ValueError):
    """Base class for business-rule violations on an account aggregate."""


class AccountNotFoundError(AccountStateError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class DuplicateAccountError(AccountStateError):
    def __init__(self, email: str) -> None:
        super().__init__(f"an account already exists for {email}")
        self.email = email


class AccountLockedError(AccountStateError):
    def __init__(self, account_id: str, lock_until: datetime) -> None:
        super().__init__(f"account {account_id} is locked until {lock_until.isoformat()}")
        self.account_id = account_id
        self.lock_until = lock_until


class AccountDisabledError(AccountStateError):
    def __init__(self, account_id: str, status: str) -> None:
        super().__init__(f"account {account_id} is {status}")
        self.account_id = account_id
        self.status = status


class InvalidCredentialsError(AccountStateError):
    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class NoOpenSessionError(AccountStateError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id} has no open session")
        self.account_id = account_id


class SessionAlreadyOpenError(AccountStateError):
    def __init__(self, account_id: str, session_started: datetime) -> None:
        super().__init__(
            f"account {account_id} already has a session open since {session_started.isoformat()}"
        )
        self.account_id = account_id
        self.session_started = session_started


class UnknownFeatureError(AccountStateError):
    def __init__(self, feature_name: str) -> None:
        super().__init__(f"feature {feature_name} not found")
        self.feature_name = feature_name


class ConcurrentModificationError(AccountStateError):
    """Raised by a repository when an optimistic write loses a race.

    Callers must re-read the account before trying again.
    """

    def __init__(self, account_id: str, expected_version: int) -> None:
        super().__init__(
            f"account {account_id} was modified concurrently (expected version {expected_version})"
        )
        self.account_id = account_id
        self.expected_version = expected_version
