"""Shared sync Redis client."""

from functools import lru_cache
import logging
from typing import Optional

import redis
from redis import Redis

from .config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis_client() -> Optional[Redis]:
    """
    Return a pooled Redis client, or None when Redis is not configured.

    Callers treat None as "no shared state available" and degrade to their
    in-process behaviour.
    """
    if not settings.redis_url:
        return None
    return redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=5,
        socket_timeout=2,
        retry_on_timeout=True,
        health_check_interval=30,
        max_connections=50,
    )
