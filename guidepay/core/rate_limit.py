"""
Clock and fixed-window counters used for alert rate limiting.

The in-memory counter is correct for a single process. Multi-instance
deployments pass a ``RedisWindowCounter`` so every instance shares one budget.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

from redis import Redis

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class WindowCounter(Protocol):
    def incr(self, key: str, window_seconds: int) -> int:
        """Increment ``key`` in the current window and return the new count."""
        ...


class InMemoryWindowCounter:
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._counts: Dict[Tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def incr(self, key: str, window_seconds: int) -> int:
        bucket = int(self.clock.now() // window_seconds)
        with self._lock:
            # Drop buckets from earlier windows so the dict stays bounded.
            stale = [k for k in self._counts if k[1] < bucket]
            for k in stale:
                del self._counts[k]
            count = self._counts.get((key, bucket), 0) + 1
            self._counts[(key, bucket)] = count
            return count


class RedisWindowCounter:
    def __init__(
        self,
        client: Redis,
        clock: Optional[Clock] = None,
        namespace: str = "guidepay:ratelimit",
    ) -> None:
        self.client = client
        self.clock = clock or SystemClock()
        self.namespace = namespace

    def incr(self, key: str, window_seconds: int) -> int:
        bucket = int(self.clock.now() // window_seconds)
        redis_key = f"{self.namespace}:{key}:{bucket}"
        pipe = self.client.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds * 2)
        count, _ = pipe.execute()
        return int(count)


class RateLimiter:
    """Allows at most ``limit`` events per key per window."""

    def __init__(self, counter: WindowCounter, limit: int, window_seconds: int = 60) -> None:
        self.counter = counter
        self.limit = limit
        self.window_seconds = window_seconds

    def allow(self, key: str) -> bool:
        try:
            return self.counter.incr(key, self.window_seconds) <= self.limit
        except Exception as exc:
            # Counter backend down: let the event through rather than lose it.
            logger.warning("rate_limiter_counter_failed: %s", exc)
            return True
