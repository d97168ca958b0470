"""
Idempotency markers shared by the job producer and the workers.

Three markers per job id:

- ``claim``: taken by the producer before publishing. A second enqueue with
  the same id while the claim lives is reported as deduplicated.
- ``running``: a short lease held by the worker while the job body runs, so
  a redelivered copy cannot execute concurrently.
- ``done``: written after success and kept for as long as the claim, so a
  late redelivery is acknowledged without running again.

Redis holds the markers when configured; otherwise a process-local store
is used, which is only correct for single-process deployments and tests.
"""

import logging
import threading
import time
from typing import Dict, Optional

from redis import Redis

from ..core.redis_client import get_redis_client

logger = logging.getLogger(__name__)

DEFAULT_RUN_LEASE_SECONDS = 600


class _MemoryMarkers:
    def __init__(self) -> None:
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def set_nx(self, key: str, ttl: int) -> bool:
        now = time.monotonic()
        with self._lock:
            expires = self._expiry.get(key)
            if expires is not None and expires > now:
                return False
            self._expiry[key] = now + ttl
            return True

    def set(self, key: str, ttl: int) -> None:
        with self._lock:
            self._expiry[key] = time.monotonic() + ttl

    def exists(self, key: str) -> bool:
        with self._lock:
            expires = self._expiry.get(key)
            return expires is not None and expires > time.monotonic()

    def ttl(self, key: str) -> int:
        with self._lock:
            expires = self._expiry.get(key)
            if expires is None:
                return -2
            return max(0, int(expires - time.monotonic()))

    def delete(self, key: str) -> None:
        with self._lock:
            self._expiry.pop(key, None)


class JobClaims:
    def __init__(
        self,
        client: Optional[Redis] = None,
        *,
        namespace: str = "guidepay:jobs",
        use_redis: bool = True,
    ) -> None:
        self.client = client if client is not None else (get_redis_client() if use_redis else None)
        self.namespace = namespace
        self._memory = _MemoryMarkers()

    def _key(self, kind: str, job_id: str) -> str:
        return f"{self.namespace}:{kind}:{job_id}"

    def claim(self, job_id: str, ttl_seconds: int) -> bool:
        key = self._key("claim", job_id)
        if self.client is None:
            return self._memory.set_nx(key, ttl_seconds)
        return bool(self.client.set(key, "1", nx=True, ex=ttl_seconds))

    def release(self, job_id: str) -> None:
        key = self._key("claim", job_id)
        if self.client is None:
            self._memory.delete(key)
            return
        self.client.delete(key)

    def begin(self, job_id: str, lease_seconds: int = DEFAULT_RUN_LEASE_SECONDS) -> bool:
        """
        Take the execution lease. False means the job already completed or a
        copy is running right now.
        """
        done_key = self._key("done", job_id)
        run_key = self._key("running", job_id)
        if self.client is None:
            if self._memory.exists(done_key):
                return False
            return self._memory.set_nx(run_key, lease_seconds)
        if self.client.exists(done_key):
            return False
        return bool(self.client.set(run_key, "1", nx=True, ex=lease_seconds))

    def complete(self, job_id: str, default_ttl_seconds: int) -> None:
        claim_key = self._key("claim", job_id)
        done_key = self._key("done", job_id)
        run_key = self._key("running", job_id)
        if self.client is None:
            remaining = self._memory.ttl(claim_key)
            self._memory.set(done_key, remaining if remaining > 0 else default_ttl_seconds)
            self._memory.delete(run_key)
            return
        remaining = int(self.client.ttl(claim_key))
        pipe = self.client.pipeline()
        pipe.set(done_key, "1", ex=remaining if remaining > 0 else default_ttl_seconds)
        pipe.delete(run_key)
        pipe.execute()

    def abandon(self, job_id: str) -> None:
        """Drop the execution lease after a failure so a retry can run."""
        run_key = self._key("running", job_id)
        if self.client is None:
            self._memory.delete(run_key)
            return
        self.client.delete(run_key)
