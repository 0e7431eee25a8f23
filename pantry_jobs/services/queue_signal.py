"""
Best-effort wake-up signal between enqueue and idle workers.

The database stays the source of truth: a lost or duplicated signal only
changes how soon a worker looks again, never which job it gets.
"""

import asyncio
import logging

from redis.exceptions import RedisError

from pantry_jobs.services.redis_client import get_redis

_log = logging.getLogger(__name__)

KEY_PREFIX = "pantryjobs:wake:"
# Cap the list so a lane nobody consumes cannot grow without bound
MAX_PENDING_SIGNALS = 100


def _key(queue_name: str) -> str:
    return f"{KEY_PREFIX}{queue_name}"


async def notify(queue_name: str) -> bool:
    """Tell idle workers on a lane that a job is waiting. Returns success."""
    r = get_redis()
    if r is None:
        return False
    try:
        pipe = r.pipeline(transaction=True)
        pipe.lpush(_key(queue_name), "1")
        pipe.ltrim(_key(queue_name), 0, MAX_PENDING_SIGNALS - 1)
        await pipe.execute()
        return True
    except (RedisError, OSError) as exc:
        _log.debug(f"[queue_signal] notify {queue_name} failed: {exc}")
        return False


async def wait_for_work(queue_name: str, timeout: float) -> bool:
    """
    Block until a wake-up arrives or timeout elapses.

    Without Redis this is a plain sleep. Returns True when woken by a signal.
    """
    r = get_redis()
    if r is None:
        await asyncio.sleep(timeout)
        return False
    try:
        popped = await r.blpop([_key(queue_name)], timeout=max(1, int(timeout)))
        return popped is not None
    except (RedisError, OSError) as exc:
        _log.debug(f"[queue_signal] wait on {queue_name} failed: {exc}")
        await asyncio.sleep(timeout)
        return False
