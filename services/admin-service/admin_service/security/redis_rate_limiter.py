"""Redis-backed sliding window limiter for login attempts shared across workers."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError


class RedisSlidingWindowRateLimiter:
    """Distributed login throttle implemented with Redis sorted sets."""

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local seq_key = KEYS[2]
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
    if redis.call('ZCARD', key) >= max_requests then
        return 0
    end
    local seq = redis.call('INCR', seq_key)
    redis.call('ZADD', key, now_ms, now_ms .. '-' .. seq)
    redis.call('PEXPIRE', key, window_ms)
    redis.call('PEXPIRE', seq_key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "login-throttle",
    ) -> None:
        """Keep the Redis client and window settings and register the Lua script."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def _keys(self, key: str) -> tuple[str, str]:
        redis_key = f"{self._key_prefix}:{key}"
        return redis_key, f"{redis_key}:seq"

    def allow(self, key: str) -> bool:
        """Return ``True`` when the key is still within the distributed rate limit."""
        now_ms = int(time.time() * 1000)
        keys = self._keys(key)
        try:
            result = self._script(keys=list(keys), args=[self._window_ms, self._max_requests, now_ms])
            return int(result) == 1
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                return self._allow_without_lua(keys, now_ms)
            raise

    def reset(self, key: str) -> None:
        self._client.delete(*self._keys(key))

    def _allow_without_lua(self, keys: tuple[str, str], now_ms: int) -> bool:
        """Same algorithm issued as individual commands for servers without scripting."""
        redis_key, seq_key = keys
        self._client.zremrangebyscore(redis_key, "-inf", now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            return False
        seq = self._client.incr(seq_key)
        self._client.zadd(redis_key, {f"{now_ms}-{seq}": now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        self._client.pexpire(seq_key, self._window_ms)
        return True
