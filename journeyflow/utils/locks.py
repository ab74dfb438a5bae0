"""
Per-lead mutual exclusion for journey mutations.

Scheduled ticks, inbound user activity and manual suppression all take the same
lead lock, so writes to a journey row are serialized (last writer wins, never merged).

- lead_lock / redis_lock: Redis SET NX with TTL, safe across worker processes.
- LocalKeyedLock: in-process asyncio locks keyed by string, for single-process
  deployments (JOURNEY_BACKEND=memory) and tests.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 60
LOCK_WAIT_SECONDS = 10
LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


@asynccontextmanager
async def redis_lock(
    key: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
    redis=None,
):
    """
    Acquire a distributed lock on an arbitrary key.

    Redis errors propagate: a journey job that cannot lock is retried by the
    runner instead of running unserialized.
    """
    if redis is None:
        from journeyflow.utils.redis_client import get_redis
        redis = await get_redis()

    lock_value = uuid.uuid4().hex  # Unique value so we only release our own lock

    if not await _acquire_lock(redis, key, lock_value, ttl, wait):
        raise LockTimeoutError(f"Could not acquire lock {key} within {wait}s")
    try:
        yield
    finally:
        await _release_lock(redis, key, lock_value)


@asynccontextmanager
async def lead_lock(
    lead_id: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
    redis=None,
):
    """
    Acquire a distributed lock for a lead.

    Usage:
        async with lead_lock(lead_id):
            # evaluate / mutate the journey safely
    """
    from journeyflow.utils.redis_client import KEY_PREFIX
    async with redis_lock(f"{KEY_PREFIX}:lock:lead:{lead_id}", ttl=ttl, wait=wait, redis=redis):
        yield


async def _acquire_lock(redis, key: str, value: str, ttl: int, wait: float) -> bool:
    """Try to acquire a Redis lock with polling."""
    if await redis.set(key, value, nx=True, ex=ttl):
        return True

    elapsed = 0.0
    while elapsed < wait:
        await asyncio.sleep(LOCK_POLL_INTERVAL)
        elapsed += LOCK_POLL_INTERVAL
        if await redis.set(key, value, nx=True, ex=ttl):
            return True

    logger.warning("Lock acquisition timed out for %s", key)
    return False


async def _release_lock(redis, key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        # The TTL frees the key eventually
        logger.warning("Redis lock release error for %s: %s", key, str(e))


class LocalKeyedLock:
    """asyncio.Lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self, wait: Optional[float] = LOCK_WAIT_SECONDS):
        self.wait = wait
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                if self.wait is None:
                    await lock.acquire()
                else:
                    await asyncio.wait_for(lock.acquire(), timeout=self.wait)
            except asyncio.TimeoutError:
                raise LockTimeoutError(f"Could not acquire lock {key} within {self.wait}s")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
