"""
Redis connection used for worker wake-up signals.

Redis is optional. Without REDIS_URL, or when the server cannot be reached
at startup, get_redis() returns None and workers fall back to timed polling
of the database.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pantry_jobs.config import get_settings

_log = logging.getLogger(__name__)

_client: Optional[aioredis.Redis] = None

# Must stay above the longest BLPOP wait an idle worker issues
SOCKET_TIMEOUT_SECONDS = 30


async def init_redis(url: Optional[str] = None) -> Optional[aioredis.Redis]:
    global _client
    url = get_settings().redis_url if url is None else url
    if not url:
        _log.info("redis.disabled", extra={"reason": "REDIS_URL not set"})
        return None

    candidate = aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
        retry_on_timeout=True,
    )
    try:
        await candidate.ping()
    except (RedisError, OSError) as exc:
        _log.warning("redis.unavailable", extra={"error": str(exc)})
        await candidate.aclose()
        return None

    _client = candidate
    _log.info("redis.connected")
    return _client


async def close_redis() -> None:
    global _client
    client, _client = _client, None
    if client is None:
        return
    try:
        await client.aclose()
    except (RedisError, OSError) as exc:
        _log.debug("redis.close_failed", extra={"error": str(exc)})


def get_redis() -> Optional[aioredis.Redis]:
    return _client


def set_redis(client: Optional[aioredis.Redis]) -> None:
    """Install a client directly, e.g. a fake in tests."""
    global _client
    _client = client


async def is_redis_healthy() -> bool:
    if _client is None:
        return False
    try:
        return bool(await _client.ping())
    except (RedisError, OSError):
        return False
