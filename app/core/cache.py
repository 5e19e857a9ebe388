"""Thin JSON cache over the shared Redis client.

The premium gate is the only reader. A Redis outage degrades to "no cache":
reads miss, writes and deletes are dropped, and the connection is retried after
a cooldown instead of on every request.
"""
import json
import logging
import time
from typing import Any

import redis

from app import metrics

logger = logging.getLogger(__name__)

_redis: redis.Redis | None = None
_unavailable_until: float = 0.0
_RECONNECT_COOLDOWN_SECONDS = 30.0


def _client() -> redis.Redis | None:
    global _redis, _unavailable_until
    if _redis is not None:
        return _redis
    if time.monotonic() < _unavailable_until:
        return None
    try:
        from app.db.redis_client import get_redis_client

        _redis = get_redis_client()
    except (redis.RedisError, RuntimeError) as exc:
        _unavailable_until = time.monotonic() + _RECONNECT_COOLDOWN_SECONDS
        logger.warning("Premium cache disabled for %.0fs: %s", _RECONNECT_COOLDOWN_SECONDS, exc)
        return None
    return _redis


def cache_get(key: str) -> Any | None:
    client = _client()
    if client is None:
        return None
    try:
        raw = client.get(key)
    except redis.RedisError:
        logger.debug("Cache read failed for %s", key)
        return None
    metrics.premium_cache_lookup(raw is not None)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding undecodable cache entry %s", key)
        return None


def cache_set(key: str, value: Any, ttl: int) -> None:
    if ttl <= 0:
        return
    client = _client()
    if client is None:
        return
    try:
        client.setex(key, ttl, json.dumps(value))
    except redis.RedisError:
        logger.debug("Cache write failed for %s", key)


def cache_delete(key: str) -> None:
    client = _client()
    if client is None:
        return
    try:
        client.delete(key)
    except redis.RedisError:
        # A stale entry lives at most until its TTL, which never passes expires_at
        logger.warning("Cache invalidation failed for %s", key)
