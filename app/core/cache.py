"""
Redis helpers: cache-aside for read-heavy payloads and a fixed-window
rate limiter for API keys. Redis outages never break a request.
"""
import json
import logging
import time
from typing import Any, Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_last_failure: Optional[float] = None


def get_redis() -> Optional[redis.Redis]:
    """
    Return a connected client, or None when caching is off or Redis is down.

    After a failed connection no new attempt is made for REDIS_RETRY_SECONDS.
    """
    global _redis_client, _last_failure
    if not settings.CACHE_ENABLED:
        return None
    if _redis_client is not None:
        return _redis_client
    if _last_failure is not None and time.monotonic() - _last_failure < settings.REDIS_RETRY_SECONDS:
        return None
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        client.ping()
    except redis.RedisError as e:
        _last_failure = time.monotonic()
        logger.warning(f"Redis unavailable, next attempt in {settings.REDIS_RETRY_SECONDS}s: {e}")
        return None
    _redis_client = client
    _last_failure = None
    return _redis_client


def cache_get(key: str) -> Optional[Any]:
    client = get_redis()
    if client is None:
        return None
    try:
        raw = client.get(key)
        return json.loads(raw) if raw else None
    except (redis.RedisError, ValueError) as e:
        logger.warning(f"Cache read failed for {key}: {e}")
        return None


def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> None:
    client = get_redis()
    if client is None:
        return
    try:
        client.setex(key, ttl or settings.CACHE_TTL_SECONDS, json.dumps(value, default=str))
    except redis.RedisError as e:
        logger.warning(f"Cache write failed for {key}: {e}")


def cache_delete(key: str) -> None:
    client = get_redis()
    if client is None:
        return
    try:
        client.delete(key)
    except redis.RedisError as e:
        logger.warning(f"Cache delete failed for {key}: {e}")


def check_rate_limit(identifier: str, limit: int, window: int) -> tuple[bool, int]:
    """
    Fixed-window counter. Returns (allowed, retry_after_seconds).

    Fails open when Redis is not available.
    """
    client = get_redis()
    if client is None:
        return True, 0
    key = f"ratelimit:{identifier}"
    try:
        current = client.incr(key)
        if current == 1:
            client.expire(key, window)
        if current > limit:
            ttl = client.ttl(key)
            return False, ttl if ttl and ttl > 0 else window
        return True, 0
    except redis.RedisError as e:
        logger.warning(f"Rate limit check skipped: {e}")
        return True, 0
