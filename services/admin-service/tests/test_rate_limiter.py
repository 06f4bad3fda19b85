"""Tests for the login throttles, in-memory and Redis-backed."""

from __future__ import annotations

import time

import fakeredis
import pytest

from admin_service.security.rate_limiter import SlidingWindowRateLimiter
from admin_service.security.redis_rate_limiter import RedisSlidingWindowRateLimiter


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_memory_limiter_slides_window():
    clock = FakeMonotonic()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10, clock=clock)
    key = "login:admin@example.com"

    assert limiter.allow(key)
    clock.value += 4
    assert limiter.allow(key)
    assert not limiter.allow(key)

    clock.value += 6
    assert limiter.allow(key)
    assert not limiter.allow(key)
    assert limiter.allow("login:other@example.com")


def test_memory_limiter_reset_forgets_key():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=FakeMonotonic())
    assert limiter.allow("login:a")
    assert not limiter.allow("login:a")
    limiter.reset("login:a")
    assert limiter.allow("login:a")


def test_redis_rate_limiter_allows_within_threshold(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=3, window_seconds=1, key_prefix="test"
    )
    key = "login:admin@example.com"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert limiter.allow(key)


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=2, window_seconds=1, key_prefix="test"
    )
    key = "login:admin@example.com"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert not limiter.allow(key)


def test_redis_rate_limiter_expires_entries(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=1, key_prefix="test"
    )
    key = "login:admin@example.com"
    assert limiter.allow(key)
    assert not limiter.allow(key)
    time.sleep(1.1)
    assert limiter.allow(key)


def test_redis_rate_limiter_reset(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=60, key_prefix="test"
    )
    key = "login:admin@example.com"
    assert limiter.allow(key)
    assert not limiter.allow(key)
    limiter.reset(key)
    assert redis_client.exists("test:login:admin@example.com") == 0
    assert limiter.allow(key)
