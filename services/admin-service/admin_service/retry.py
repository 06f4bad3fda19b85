"""Retry wrapper for account operations that lose an optimistic write race."""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .config import get_settings
from .domain.errors import ConcurrentModificationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_conflict_retry(operation: Callable[[], T], attempts: int | None = None) -> T:
    """Run ``operation`` again whenever it raises ``ConcurrentModificationError``.

    ``operation`` must re-read the account on every call, which every
    ``AccountService`` method does. Any other error propagates immediately,
    and the last conflict is re-raised once ``attempts`` is exhausted.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts or get_settings().conflict_retry_attempts),
        wait=wait_random_exponential(multiplier=0.01, max=0.2),
        retry=retry_if_exception_type(ConcurrentModificationError),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    return retrying(operation)
