"""
Redis Client - async singleton.

Used for the scheduler's sweep guard (SET NX EX) so that overlapping beat
ticks or several workers never run the same sweep concurrently.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from care_billing.core.config import settings
from care_billing.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Return the process-wide Redis client (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called when a task event loop is torn down."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def acquire_sweep_guard(name: str, ttl_seconds: int) -> bool:
    """Try to take the named sweep guard. False means another pass holds it."""
    client = await get_redis()
    acquired = await client.set(f"care_billing:sweep:{name}", "1", nx=True, ex=ttl_seconds)
    return bool(acquired)


async def release_sweep_guard(name: str) -> None:
    client = await get_redis()
    await client.delete(f"care_billing:sweep:{name}")
