"""
Per-lead mutual exclusion and worker heartbeats, both kept in Redis.

A lead can be driven by the call-event webhook, the WhatsApp webhook, the
sweep and the manual lead endpoints (retry, resolved). Each of them takes
``lead_lock`` before touching the lead's state so a late call-ended event
and a sweep re-dispatch never interleave. The lock TTL must outlive one
provider dispatch round trip.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

KEY_PREFIX = "leadcall"
LOCK_TTL_SECONDS = 45
LOCK_WAIT_SECONDS = 5.0
LOCK_RETRY_DELAY = 0.1

# Delete only if the stored token is still ours; an expired lock may have been re-taken.
_RELEASE_IF_OWNER = (
    "if redis.call('get', KEYS[1]) == ARGV[1] then "
    "return redis.call('del', KEYS[1]) else return 0 end"
)

_redis_client = None


class LockTimeoutError(Exception):
    """Another holder kept the lead locked for the whole wait window."""


async def get_redis():
    """Shared client, created on first use."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from leadcall.config import get_settings
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


def heartbeat_key(worker_name: str) -> str:
    return f"{KEY_PREFIX}:worker_health:{worker_name}"


async def write_heartbeat(worker_name: str, ttl: int) -> None:
    """Record that a sweep loop finished a tick. Failures are logged and ignored."""
    try:
        redis = await get_redis()
        await redis.set(heartbeat_key(worker_name), datetime.now(timezone.utc).isoformat(), ex=ttl)
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def read_heartbeat(redis, worker_name: str) -> Optional[str]:
    return await redis.get(heartbeat_key(worker_name))


async def _try_take(key: str, token: str, ttl: int, wait: float) -> bool:
    """
    Poll SET NX until it succeeds or ``wait`` runs out.

    When Redis itself is unreachable the caller proceeds unlocked: the
    in-flight check and the unique (lead, attempt_no) row still prevent a
    double dial, and a Redis outage must not stall every lead.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + wait
    try:
        redis = await get_redis()
        while True:
            if await redis.set(key, token, nx=True, ex=ttl):
                return True
            if loop.time() >= deadline:
                logger.warning("Timed out waiting for %s", key)
                return False
            await asyncio.sleep(LOCK_RETRY_DELAY)
    except Exception as e:
        logger.warning("Redis unavailable for %s, continuing unlocked: %s", key, str(e))
        return True


async def _give_back(key: str, token: str) -> None:
    try:
        redis = await get_redis()
        await redis.eval(_RELEASE_IF_OWNER, 1, key, token)
    except Exception as e:
        logger.warning("Could not release %s: %s", key, str(e))


@asynccontextmanager
async def lead_lock(lead_id: str, ttl: int = LOCK_TTL_SECONDS, wait: float = LOCK_WAIT_SECONDS):
    """
    Hold the lead for the duration of the block.

        async with lead_lock(str(lead.id)):
            ...

    Raises LockTimeoutError when the lead stays busy for ``wait`` seconds.
    """
    key = f"{KEY_PREFIX}:lock:lead:{lead_id}"
    token = uuid.uuid4().hex
    if not await _try_take(key, token, ttl, wait):
        raise LockTimeoutError(f"lead {lead_id[:8]} busy for more than {wait}s")
    try:
        yield
    finally:
        await _give_back(key, token)
