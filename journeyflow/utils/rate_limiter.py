"""
Proactive outreach rate limiter - sliding window over successful-send timestamps.

Caps (defaults): 1 proactive message per rolling 24h and 3 per rolling 10 days, per key.
Key is the contact ("contact:<id>"), falling back to the lead ("lead:<id>").

check() is linearizable per key: the read-prune-count-record sequence runs under a
per-key lock, so two concurrent checks never both take the last slot. Unrelated keys
never wait on each other.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from journeyflow.utils.locks import LocalKeyedLock, redis_lock

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 1
DEFAULT_ROLLING_LIMIT = 3
DEFAULT_ROLLING_WINDOW = timedelta(days=10)
DAY = timedelta(days=1)

DAILY_LIMIT_REASON = "Daily proactive limit reached"
ROLLING_LIMIT_REASON = "10-day proactive limit reached"


def rate_limit_key(contact_id: Optional[str], lead_id: Optional[str]) -> str:
    if contact_id:
        return f"contact:{contact_id}"
    return f"lead:{lead_id}"


class RateLimitResult:
    """Result of a rate limit check."""

    def __init__(
        self,
        allowed: bool,
        remaining_daily: int,
        remaining_rolling: int,
        reason: Optional[str] = None,
    ):
        self.allowed = allowed
        self.reason = reason
        self.remaining_daily = remaining_daily
        self.remaining_rolling = remaining_rolling

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        status = "ALLOWED" if self.allowed else f"BLOCKED: {self.reason}"
        return (
            f"<RateLimitResult {status} daily={self.remaining_daily} "
            f"rolling={self.remaining_rolling}>"
        )


class RateLimitStore(ABC):
    """Storage for per-key send timestamps (epoch seconds)."""

    @abstractmethod
    def locked(self, key: str):
        """Async context manager giving exclusive access to one key."""
        ...

    @abstractmethod
    async def load(self, key: str, since: float) -> list[float]:
        """Drop timestamps <= since and return the rest in ascending order."""
        ...

    @abstractmethod
    async def append(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._windows: dict[str, list[float]] = {}
        self._locks = LocalKeyedLock(wait=None)

    def locked(self, key: str):
        return self._locks.hold(key)

    async def load(self, key: str, since: float) -> list[float]:
        kept = [ts for ts in self._windows.get(key, []) if ts > since]
        if kept:
            self._windows[key] = kept
        else:
            self._windows.pop(key, None)
        return list(kept)

    async def append(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        self._windows.setdefault(key, []).append(timestamp)

    def clear(self) -> None:
        self._windows.clear()


class RedisRateLimitStore(RateLimitStore):
    """Sorted set per key (score = send timestamp), guarded by a Redis lock."""

    def __init__(self, redis=None, prefix: str = "journeyflow:proactive"):
        self._redis = redis
        self.prefix = prefix

    async def _client(self):
        if self._redis is None:
            from journeyflow.utils.redis_client import get_redis
            self._redis = await get_redis()
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def locked(self, key: str):
        return redis_lock(f"{self.prefix}:lock:{key}", ttl=10, wait=5, redis=self._redis)

    async def load(self, key: str, since: float) -> list[float]:
        redis = await self._client()
        pipe = redis.pipeline()
        pipe.zremrangebyscore(self._key(key), "-inf", since)
        pipe.zrange(self._key(key), 0, -1, withscores=True)
        results = await pipe.execute()
        return sorted(float(score) for _, score in results[1])

    async def append(self, key: str, timestamp: float, ttl_seconds: int) -> None:
        redis = await self._client()
        pipe = redis.pipeline()
        pipe.zadd(self._key(key), {f"{timestamp}:{uuid.uuid4().hex[:8]}": timestamp})
        pipe.expire(self._key(key), ttl_seconds)
        await pipe.execute()


class ProactiveRateLimiter:
    """
    Injectable limiter instance. Each check that passes consumes one slot
    (the caller is about to send).
    """

    def __init__(
        self,
        store: RateLimitStore,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        rolling_limit: int = DEFAULT_ROLLING_LIMIT,
        rolling_window: timedelta = DEFAULT_ROLLING_WINDOW,
    ):
        self.store = store
        self.daily_limit = daily_limit
        self.rolling_limit = rolling_limit
        self.rolling_window = rolling_window

    async def check(self, key: str, now: Optional[datetime] = None) -> RateLimitResult:
        now = now or datetime.now(timezone.utc)
        now_ts = now.timestamp()
        window_seconds = self.rolling_window.total_seconds()

        async with self.store.locked(key):
            history = await self.store.load(key, now_ts - window_seconds)
            daily_count = sum(1 for ts in history if now_ts - ts < DAY.total_seconds())

            if daily_count >= self.daily_limit:
                logger.info("Proactive send blocked for %s: daily cap", key)
                return RateLimitResult(
                    False,
                    remaining_daily=0,
                    remaining_rolling=max(0, self.rolling_limit - len(history)),
                    reason=DAILY_LIMIT_REASON,
                )
            if len(history) >= self.rolling_limit:
                logger.info("Proactive send blocked for %s: rolling cap", key)
                return RateLimitResult(
                    False,
                    remaining_daily=max(0, self.daily_limit - daily_count),
                    remaining_rolling=0,
                    reason=ROLLING_LIMIT_REASON,
                )

            await self.store.append(key, now_ts, int(window_seconds) + 60)

        return RateLimitResult(
            True,
            remaining_daily=max(0, self.daily_limit - (daily_count + 1)),
            remaining_rolling=max(0, self.rolling_limit - (len(history) + 1)),
        )
