"""
Journey scheduler - delayed queue holding at most one pending tick per lead.

The job key is the lead id. schedule() replaces any pending job for the lead in a
single atomic step, so overlapping calls for the same lead never leave two live jobs.

Backends:
- RedisJourneyQueue: sorted set of due times + hash of payloads. Replace runs in one
  MULTI transaction; claim_due pops due jobs atomically with a Lua script, so two
  runner processes never claim the same job.
- InMemoryJourneyQueue: dict guarded by an asyncio.Lock (single process, tests).

On startup bootstrap_pending_journeys() rebuilds the queue from every persisted
next_action_at, so a restart never loses pending automation.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select

from journeyflow.models.journey import LeadJourney

logger = logging.getLogger(__name__)

DUE_KEY = "journeyflow:journey:due"
PAYLOAD_KEY = "journeyflow:journey:payload"

_ADD_IF_ABSENT_SCRIPT = """
if redis.call('ZSCORE', KEYS[1], ARGV[1]) then
    return 0
end
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
redis.call('HSET', KEYS[2], ARGV[1], ARGV[3])
return 1
"""

_CLAIM_DUE_SCRIPT = """
local keys = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
local claimed = {}
for _, key in ipairs(keys) do
    local payload = redis.call('HGET', KEYS[2], key)
    redis.call('ZREM', KEYS[1], key)
    redis.call('HDEL', KEYS[2], key)
    if payload then
        table.insert(claimed, payload)
    end
end
return claimed
"""


class JourneyJob(BaseModel):
    lead_id: str
    force: bool = False
    attempt: int = 0
    # When the tick was requested; user activity at or after it voids force
    enqueued_at: Optional[datetime] = None


class JourneyQueue(ABC):
    """Delayed job queue keyed by lead id."""

    @abstractmethod
    async def add(self, key: str, payload: dict, due_at: datetime, replace: bool = True) -> bool:
        """Enqueue under key. replace=False leaves an existing job untouched. Returns True if written."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> bool:
        ...

    @abstractmethod
    async def pending(self) -> list[tuple[str, datetime]]:
        """(key, due_at) for every pending job, earliest first."""
        ...

    @abstractmethod
    async def claim_due(self, now: datetime, limit: int) -> list[dict]:
        """Remove and return payloads of up to `limit` jobs due at or before now."""
        ...


class InMemoryJourneyQueue(JourneyQueue):
    def __init__(self):
        self._jobs: dict[str, tuple[float, dict]] = {}
        self._lock = asyncio.Lock()

    async def add(self, key: str, payload: dict, due_at: datetime, replace: bool = True) -> bool:
        async with self._lock:
            if not replace and key in self._jobs:
                return False
            self._jobs[key] = (due_at.timestamp(), dict(payload))
            return True

    async def remove(self, key: str) -> bool:
        async with self._lock:
            return self._jobs.pop(key, None) is not None

    async def pending(self) -> list[tuple[str, datetime]]:
        async with self._lock:
            items = sorted(self._jobs.items(), key=lambda item: item[1][0])
        return [(key, datetime.fromtimestamp(due, tz=timezone.utc)) for key, (due, _) in items]

    async def claim_due(self, now: datetime, limit: int) -> list[dict]:
        cutoff = now.timestamp()
        async with self._lock:
            due = sorted(
                (item for item in self._jobs.items() if item[1][0] <= cutoff),
                key=lambda item: item[1][0],
            )[:limit]
            for key, _ in due:
                del self._jobs[key]
        return [payload for _, (_, payload) in due]

    def get(self, key: str) -> Optional[tuple[datetime, dict]]:
        job = self._jobs.get(key)
        if job is None:
            return None
        return datetime.fromtimestamp(job[0], tz=timezone.utc), job[1]


class RedisJourneyQueue(JourneyQueue):
    def __init__(self, redis=None, due_key: str = DUE_KEY, payload_key: str = PAYLOAD_KEY):
        self._redis = redis
        self.due_key = due_key
        self.payload_key = payload_key

    async def _client(self):
        if self._redis is None:
            from journeyflow.utils.redis_client import get_redis
            self._redis = await get_redis()
        return self._redis

    async def add(self, key: str, payload: dict, due_at: datetime, replace: bool = True) -> bool:
        redis = await self._client()
        body = json.dumps(payload)
        if not replace:
            written = await redis.eval(
                _ADD_IF_ABSENT_SCRIPT, 2, self.due_key, self.payload_key,
                key, due_at.timestamp(), body,
            )
            return bool(written)

        pipe = redis.pipeline(transaction=True)
        pipe.zadd(self.due_key, {key: due_at.timestamp()})
        pipe.hset(self.payload_key, key, body)
        await pipe.execute()
        return True

    async def remove(self, key: str) -> bool:
        redis = await self._client()
        pipe = redis.pipeline(transaction=True)
        pipe.zrem(self.due_key, key)
        pipe.hdel(self.payload_key, key)
        results = await pipe.execute()
        return bool(results[0])

    async def pending(self) -> list[tuple[str, datetime]]:
        redis = await self._client()
        rows = await redis.zrange(self.due_key, 0, -1, withscores=True)
        return [(key, datetime.fromtimestamp(float(score), tz=timezone.utc)) for key, score in rows]

    async def claim_due(self, now: datetime, limit: int) -> list[dict]:
        redis = await self._client()
        raw = await redis.eval(
            _CLAIM_DUE_SCRIPT, 2, self.due_key, self.payload_key,
            now.timestamp(), limit,
        )
        return [json.loads(item) for item in raw or []]


class JourneyScheduler:
    """One pending tick per lead; every reschedule replaces the previous one."""

    def __init__(self, queue: JourneyQueue):
        self.queue = queue

    async def schedule(
        self,
        lead_id: str,
        delay_seconds: float = 0,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> datetime:
        now = now or datetime.now(timezone.utc)
        delay = max(0.0, float(delay_seconds))
        due_at = datetime.fromtimestamp(now.timestamp() + delay, tz=timezone.utc)
        job = JourneyJob(lead_id=str(lead_id), force=force, enqueued_at=now)
        await self.queue.add(job.lead_id, job.model_dump(mode="json"), due_at, replace=True)
        logger.debug(
            "Journey tick scheduled in %.0fs (force=%s)", delay, force,
            extra={"lead_id": job.lead_id},
        )
        return due_at

    async def schedule_at(
        self,
        lead_id: str,
        when: datetime,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> datetime:
        now = now or datetime.now(timezone.utc)
        return await self.schedule(lead_id, (when - now).total_seconds(), force=force, now=now)

    async def cancel(self, lead_id: str) -> bool:
        return await self.queue.remove(str(lead_id))

    async def retry(self, job: JourneyJob, delay_seconds: float, now: Optional[datetime] = None) -> bool:
        """Re-enqueue a failed job unless something newer was scheduled meanwhile."""
        now = now or datetime.now(timezone.utc)
        due_at = datetime.fromtimestamp(now.timestamp() + max(0.0, delay_seconds), tz=timezone.utc)
        retry_job = job.model_copy(update={"attempt": job.attempt + 1})
        return await self.queue.add(retry_job.lead_id, retry_job.model_dump(mode="json"), due_at, replace=False)


async def bootstrap_pending_journeys(
    scheduler: JourneyScheduler,
    session_factory,
    now: Optional[datetime] = None,
) -> int:
    """Schedule a tick for every journey with a persisted next_action_at."""
    from journeyflow.utils.alerting import send_alert, AlertType
    from journeyflow.utils.timeutils import as_utc

    now = now or datetime.now(timezone.utc)
    try:
        async with session_factory() as db:
            result = await db.execute(
                select(LeadJourney.lead_id, LeadJourney.next_action_at)
                .where(LeadJourney.next_action_at.is_not(None))
            )
            rows = result.all()

        for lead_id, next_action_at in rows:
            await scheduler.schedule_at(str(lead_id), as_utc(next_action_at), now=now)
    except Exception as e:
        logger.error("Failed to bootstrap journey queue: %s", str(e))
        await send_alert(
            AlertType.JOURNEY_BOOTSTRAP_FAILED,
            f"Journey queue bootstrap failed: {str(e)[:200]}",
        )
        return 0

    logger.info("Journey queue bootstrapped with %d pending journeys", len(rows))
    return len(rows)
