# guidepay/services/cache_service.py
"""
Advisory cache for guidepay.

Used for fraud snapshots and reconciliation checkpoints. Nothing correctness-
critical reads from here: every failure is logged and reported as a miss.
Redis is used when configured; otherwise values live in process memory.
"""

from datetime import datetime, timedelta
from enum import Enum
import json
import logging
import threading
from typing import Any, Callable, Dict, Optional, TypeVar

from redis import Redis
from redis.exceptions import RedisError

from ..core.redis_client import get_redis_client

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Stops hammering Redis after repeated failures and retries after a cool-down."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN and self._last_failure_time:
                elapsed = (datetime.now() - self._last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
            return self._state

    def call(self, func: Callable[[], T]) -> Optional[T]:
        if self.state == CircuitState.OPEN:
            return None
        try:
            result = func()
        except RedisError:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                logger.info("Circuit breaker recovered, closing circuit")

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now()
            if self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit breaker opened after {self._failure_count} failures")


class CacheService:
    """JSON cache with Redis primary storage and an in-memory fallback."""

    DEFAULT_TTL = 300

    def __init__(self, redis_client: Optional[Redis] = None, *, use_redis: bool = True):
        self.redis: Optional[Redis] = redis_client
        if self.redis is None and use_redis:
            self.redis = get_redis_client()
        self.circuit_breaker = CircuitBreaker()
        self._memory_cache: Dict[str, Any] = {}
        self._memory_expiry: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "errors": 0}

    def get(self, key: str) -> Optional[Any]:
        redis_client = self.redis
        try:
            if redis_client is not None:
                raw = self.circuit_breaker.call(lambda: redis_client.get(key))
                value = json.loads(raw) if raw is not None else None
            else:
                value = self._memory_get(key)
        except Exception as e:
            logger.error(f"Cache get error for key {key}: {e}")
            self._stats["errors"] += 1
            return None

        self._stats["hits" if value is not None else "misses"] += 1
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ttl = ttl or self.DEFAULT_TTL
        redis_client = self.redis
        try:
            if redis_client is not None:
                serialized = json.dumps(value, default=str)
                stored = self.circuit_breaker.call(lambda: redis_client.setex(key, ttl, serialized))
                ok = bool(stored)
            else:
                with self._lock:
                    self._memory_cache[key] = value
                    self._memory_expiry[key] = datetime.now() + timedelta(seconds=ttl)
                ok = True
        except Exception as e:
            logger.error(f"Cache set error for key {key}: {e}")
            self._stats["errors"] += 1
            return False

        if ok:
            self._stats["sets"] += 1
        return ok

    def delete(self, key: str) -> bool:
        redis_client = self.redis
        try:
            if redis_client is not None:
                return bool(self.circuit_breaker.call(lambda: redis_client.delete(key)))
            with self._lock:
                self._memory_expiry.pop(key, None)
                return self._memory_cache.pop(key, None) is not None
        except Exception as e:
            logger.error(f"Cache delete error for key {key}: {e}")
            self._stats["errors"] += 1
            return False

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_rate": (self._stats["hits"] / total) if total else 0.0,
            "backend": "redis" if self.redis is not None else "memory",
        }

    def _memory_get(self, key: str) -> Optional[Any]:
        with self._lock:
            if key not in self._memory_cache:
                return None
            expires_at = self._memory_expiry.get(key)
            if expires_at is not None and datetime.now() >= expires_at:
                del self._memory_cache[key]
                del self._memory_expiry[key]
                return None
            return self._memory_cache[key]
