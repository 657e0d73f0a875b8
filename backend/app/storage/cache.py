"""Redis connection layer backing the evaluation job queue.

Holds the process-wide connection pool and client, plus the key naming
used for the queue structures:

- {prefix}:{queue}:ready     list of ready job envelopes
- {prefix}:{queue}:delayed   sorted set of delayed envelopes, scored by due time (ms)
- {prefix}:{queue}:failed    list of envelopes that exhausted their attempts
"""

from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import get_settings

logger = logging.getLogger(__name__)

# Global connection pool
_pool: ConnectionPool | None = None
_client: redis.Redis | None = None


# =============================================================================
# Key names
# =============================================================================

KEY_SUFFIX_READY = "ready"
KEY_SUFFIX_DELAYED = "delayed"
KEY_SUFFIX_FAILED = "failed"


def queue_key(queue_name: str, suffix: str, prefix: str | None = None) -> str:
    """Build a queue key, e.g. coach:coach:evaluator:ready."""
    if prefix is None:
        prefix = get_settings().queue_prefix
    return f"{prefix}:{queue_name}:{suffix}"


# =============================================================================
# Connection management
# =============================================================================

async def init_cache() -> redis.Redis:
    """Initialize the Redis connection pool.

    Raises redis.ConnectionError if Redis is unreachable; the worker cannot
    run without its queue.
    """
    global _pool, _client

    if _client is not None:
        return _client

    settings = get_settings()
    _pool = ConnectionPool.from_url(
        settings.redis_url,
        max_connections=max(10, settings.evaluator_concurrency * 2 + 4),
        decode_responses=False,  # We handle encoding ourselves with orjson
    )
    client = redis.Redis(connection_pool=_pool)

    try:
        await client.ping()
    except redis.ConnectionError:
        await _pool.disconnect()
        _pool = None
        raise

    _client = client
    logger.info(f"Redis connected: {settings.redis_url}")
    return _client


async def close_cache() -> None:
    """Close Redis connection pool."""
    global _pool, _client

    if _client is not None:
        await _client.aclose()
        _client = None

    if _pool is not None:
        await _pool.disconnect()
        _pool = None

    logger.info("Redis connection closed")


# =============================================================================
# Health check
# =============================================================================

async def get_info() -> dict:
    """Get Redis server info.

    Returns:
        Dict with server info or a status-only dict if unavailable
    """
    if _client is None:
        return {"status": "disconnected"}

    try:
        info = await _client.info()
        return {
            "status": "connected",
            "redis_version": info.get("redis_version"),
            "connected_clients": info.get("connected_clients"),
            "used_memory_human": info.get("used_memory_human"),
        }
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
