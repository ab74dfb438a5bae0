"""
Journey runner worker - claims due journey ticks and runs them.
Polls the journey queue every JOURNEY_POLL_INTERVAL_SECONDS.

Leads run in parallel (bounded by JOURNEY_WORKER_CONCURRENCY); the per-lead lock
inside JourneyService.run_tick keeps evaluations of the same lead serialized.

A failed tick (database, queue or lock error) is retried with exponential backoff
(30s, 120s, 480s) unless a newer tick was scheduled meanwhile. After the final
attempt it is logged and alerted; the persisted next_action_at lets the startup
bootstrap pick it up again.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from journeyflow.services.journey import JourneyService, LeadNotFoundError
from journeyflow.utils.alerting import send_alert, AlertType
from journeyflow.utils.logging import generate_correlation_id, set_correlation_id
from journeyflow.workers.journey_scheduler import JourneyJob

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5
MAX_JOBS_PER_CYCLE = 50
MAX_RETRIES = 3
HEARTBEAT_KEY = "journeyflow:worker_health:journey_runner"


def retry_backoff_seconds(retry_count: int) -> int:
    """Exponential backoff: 30s, 120s, 480s."""
    return 30 * (4 ** (retry_count - 1))


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from journeyflow.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=120)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


class JourneyRunner:
    def __init__(
        self,
        service: JourneyService,
        concurrency: int = 10,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_retries: int = MAX_RETRIES,
        batch_size: int = MAX_JOBS_PER_CYCLE,
    ):
        self.service = service
        self.scheduler = service.scheduler
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run(self) -> None:
        """Main loop - claim due ticks, process them, heartbeat, sleep."""
        logger.info("Journey runner started (poll every %ss)", self.poll_interval)

        while True:
            try:
                await self.process_cycle()
            except Exception as e:
                logger.error("Journey runner cycle error: %s", str(e))

            await _heartbeat()
            await asyncio.sleep(self.poll_interval)

    async def process_cycle(self, now: Optional[datetime] = None) -> int:
        """Claim and process every due tick. Returns the number of jobs processed."""
        now = now or datetime.now(timezone.utc)
        payloads = await self.scheduler.queue.claim_due(now, self.batch_size)
        if not payloads:
            return 0

        logger.info("Processing %d due journey ticks", len(payloads))
        await asyncio.gather(*(self._process_payload(payload) for payload in payloads))
        return len(payloads)

    async def _process_payload(self, payload: dict) -> None:
        try:
            job = JourneyJob.model_validate(payload)
        except ValidationError as e:
            logger.error("Dropping malformed journey job %s: %s", payload, str(e))
            return

        async with self._semaphore:
            await self.execute_job(job)

    async def execute_job(self, job: JourneyJob) -> None:
        """Run one tick in its own correlation context; never raises."""
        set_correlation_id(generate_correlation_id())
        log_extra = {"lead_id": job.lead_id, "job_id": f"{job.lead_id}:{job.attempt}"}

        try:
            result = await self.service.run_tick(job)
        except LeadNotFoundError:
            logger.warning("Journey tick for unknown lead dropped", extra=log_extra)
            return
        except Exception as e:
            await self._handle_failure(job, e, log_extra)
            return

        logger.info(
            "Journey tick completed: state=%s next=%s",
            result.state.value,
            result.next_action_at.isoformat() if result.next_action_at else None,
            extra={**log_extra, "state": result.state.value},
        )

    async def _handle_failure(self, job: JourneyJob, error: Exception, log_extra: dict) -> None:
        retry_count = job.attempt + 1
        error_msg = str(error) or error.__class__.__name__

        if retry_count > self.max_retries:
            logger.error(
                "Journey tick failed (max retries): %s", error_msg, extra=log_extra,
            )
            await send_alert(
                AlertType.JOURNEY_JOB_FAILED,
                f"Journey tick for lead {job.lead_id[:8]} failed after {self.max_retries} retries: {error_msg[:200]}",
                extra={"lead_id": job.lead_id},
            )
            return

        backoff = retry_backoff_seconds(retry_count)
        try:
            requeued = await self.scheduler.retry(job, backoff)
        except Exception as e:
            logger.error(
                "Journey tick retry could not be enqueued: %s (original error: %s)",
                str(e), error_msg, extra=log_extra,
            )
            return

        logger.warning(
            "Journey tick retry %d/%d in %ds%s: %s",
            retry_count, self.max_retries, backoff,
            "" if requeued else " (superseded by newer tick)",
            error_msg, extra=log_extra,
        )
