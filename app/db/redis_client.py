"""Process-wide Redis client for the premium-status cache.

Celery and slowapi manage their own connections; only ``app.core.cache`` goes
through here.
"""
import logging

import redis
from redis.connection import ConnectionPool

from app.core.config import settings
from app.core.redis_utils import prepare_redis_url

logger = logging.getLogger(__name__)

POOL_SIZE = 10
_pool: ConnectionPool | None = None
_client: redis.Redis | None = None


def _build_pool() -> ConnectionPool:
    redis_url = prepare_redis_url(settings.REDIS_URL)
    if not redis_url:
        raise RuntimeError("REDIS_URL is not configured")
    # Short timeouts: a slow cache must never hold up a premium check
    return ConnectionPool.from_url(
        redis_url,
        max_connections=POOL_SIZE,
        socket_timeout=0.5,
        socket_connect_timeout=1,
        retry_on_timeout=False,
        health_check_interval=30,
        decode_responses=True,
    )


def get_redis_client() -> redis.Redis:
    """Return the shared client, connecting on first use.

    Raises ``redis.RedisError`` when the server cannot be reached; the caller
    decides whether to degrade.
    """
    global _pool, _client
    if _client is not None:
        return _client
    if _pool is None:
        _pool = _build_pool()
    client = redis.Redis(connection_pool=_pool)
    client.ping()
    logger.info("Redis connected (pool of %s)", POOL_SIZE)
    _client = client
    return _client


def close_redis_pool() -> None:
    global _pool, _client
    if _client is not None:
        _client.close()
        _client = None
    if _pool is not None:
        _pool.disconnect()
        _pool = None
