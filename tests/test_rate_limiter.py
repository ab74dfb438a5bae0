"""
Tests for journeyflow/utils/rate_limiter.py - proactive sliding-window caps.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from journeyflow.utils.rate_limiter import (
    DAILY_LIMIT_REASON,
    ROLLING_LIMIT_REASON,
    InMemoryRateLimitStore,
    ProactiveRateLimiter,
    RedisRateLimitStore,
    rate_limit_key,
)

NOW = datetime(2026, 10, 16, 6, 30, tzinfo=timezone.utc)


def _limiter(**kwargs) -> ProactiveRateLimiter:
    return ProactiveRateLimiter(InMemoryRateLimitStore(), **kwargs)


class TestRateLimitKey:
    def test_contact_preferred(self):
        assert rate_limit_key("c1", "l1") == "contact:c1"

    def test_falls_back_to_lead(self):
        assert rate_limit_key(None, "l1") == "lead:l1"
        assert rate_limit_key("", "l1") == "lead:l1"


class TestProactiveRateLimiter:
    @pytest.mark.asyncio
    async def test_first_send_allowed(self):
        limiter = _limiter()
        result = await limiter.check("contact:a", NOW)
        assert result.allowed is True
        assert result.remaining_daily == 0
        assert result.remaining_rolling == 2

    @pytest.mark.asyncio
    async def test_second_send_same_day_blocked(self):
        limiter = _limiter()
        await limiter.check("contact:a", NOW)
        result = await limiter.check("contact:a", NOW + timedelta(hours=5))
        assert result.allowed is False
        assert result.reason == DAILY_LIMIT_REASON
        assert result.remaining_daily == 0

    @pytest.mark.asyncio
    async def test_daily_window_is_strict(self):
        """A send exactly 24h ago no longer counts toward the daily cap."""
        limiter = _limiter()
        await limiter.check("contact:a", NOW)
        result = await limiter.check("contact:a", NOW + timedelta(hours=24))
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_just_under_24h_still_blocked(self):
        limiter = _limiter()
        await limiter.check("contact:a", NOW)
        result = await limiter.check("contact:a", NOW + timedelta(hours=23, minutes=59))
        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_rolling_cap_blocks_fourth_send(self):
        limiter = _limiter()
        for day in range(3):
            assert (await limiter.check("contact:a", NOW + timedelta(days=day))).allowed
        result = await limiter.check("contact:a", NOW + timedelta(days=3))
        assert result.allowed is False
        assert result.reason == ROLLING_LIMIT_REASON
        assert result.remaining_rolling == 0

    @pytest.mark.asyncio
    async def test_rolling_window_expires(self):
        limiter = _limiter()
        for day in range(3):
            await limiter.check("contact:a", NOW + timedelta(days=day))
        # First send drops out of the 10-day window exactly at day 10
        result = await limiter.check("contact:a", NOW + timedelta(days=10))
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_denied_check_does_not_consume(self):
        limiter = _limiter()
        await limiter.check("contact:a", NOW)
        for _ in range(5):
            await limiter.check("contact:a", NOW + timedelta(hours=1))
        history = await limiter.store.load("contact:a", 0)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = _limiter()
        assert (await limiter.check("contact:a", NOW)).allowed
        assert (await limiter.check("contact:b", NOW)).allowed
        assert (await limiter.check("lead:x", NOW)).allowed

    @pytest.mark.asyncio
    async def test_custom_limits(self):
        limiter = _limiter(daily_limit=2, rolling_limit=2, rolling_window=timedelta(days=3))
        assert (await limiter.check("k", NOW)).allowed
        assert (await limiter.check("k", NOW + timedelta(minutes=1))).allowed
        result = await limiter.check("k", NOW + timedelta(minutes=2))
        assert result.allowed is False
        assert result.reason == DAILY_LIMIT_REASON

    @pytest.mark.asyncio
    async def test_concurrent_checks_take_one_slot(self):
        """Two checks racing for the last slot: exactly one wins."""
        limiter = _limiter()
        results = await asyncio.gather(*(limiter.check("contact:a", NOW) for _ in range(10)))
        assert sum(1 for r in results if r.allowed) == 1

    @pytest.mark.asyncio
    async def test_defaults_to_current_time(self):
        limiter = _limiter()
        assert (await limiter.check("contact:a")).allowed
        assert not (await limiter.check("contact:a")).allowed


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_load_prunes_old_entries(self):
        store = InMemoryRateLimitStore()
        await store.append("k", 100.0, 60)
        await store.append("k", 200.0, 60)
        assert await store.load("k", 100.0) == [200.0]
        assert await store.load("k", 0) == [200.0]

    @pytest.mark.asyncio
    async def test_clear(self):
        store = InMemoryRateLimitStore()
        await store.append("k", 100.0, 60)
        store.clear()
        assert await store.load("k", 0) == []


class TestRedisStore:
    def _redis(self, rows=None):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, rows or []])
        redis = MagicMock()
        redis.pipeline = MagicMock(return_value=pipe)
        return redis, pipe

    @pytest.mark.asyncio
    async def test_load_prunes_and_sorts(self):
        redis, pipe = self._redis(rows=[("b", 300.0), ("a", 100.0)])
        store = RedisRateLimitStore(redis=redis)
        history = await store.load("contact:a", 50.0)
        assert history == [100.0, 300.0]
        pipe.zremrangebyscore.assert_called_once_with("journeyflow:proactive:contact:a", "-inf", 50.0)

    @pytest.mark.asyncio
    async def test_append_sets_expiry(self):
        redis, pipe = self._redis()
        store = RedisRateLimitStore(redis=redis)
        await store.append("contact:a", 1000.0, 864060)
        pipe.zadd.assert_called_once()
        pipe.expire.assert_called_once_with("journeyflow:proactive:contact:a", 864060)

    @pytest.mark.asyncio
    async def test_locked_uses_redis_lock(self):
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=True)
        redis.eval = AsyncMock(return_value=1)
        store = RedisRateLimitStore(redis=redis)
        async with store.locked("contact:a"):
            pass
        key = redis.set.call_args[0][0]
        assert key == "journeyflow:proactive:lock:contact:a"
        redis.eval.assert_called_once()

    @pytest.mark.asyncio
    async def test_lazy_client(self, mock_redis):
        store = RedisRateLimitStore()
        assert await store._client() is mock_redis
