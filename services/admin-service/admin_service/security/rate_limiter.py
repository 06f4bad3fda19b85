"""In-memory sliding window limiter for login attempts."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, DefaultDict


class SlidingWindowRateLimiter:
    """Thread-safe sliding window limiter keyed by login identity."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` when the attempt is within the configured rate limit."""
        now = self._clock()
        with self._lock:
            queue = self._events[key]
            while queue and now - queue[0] >= self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True

    def reset(self, key: str) -> None:
        """Forget recorded attempts for ``key``, e.g. after a successful login."""
        with self._lock:
            self._events.pop(key, None)
