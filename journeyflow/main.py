"""
journeyflow - proactive WhatsApp lead journey orchestrator.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from journeyflow.config import get_settings
from journeyflow.api.router import api_router
from journeyflow.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("journeyflow")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("journeyflow starting up (env=%s, backend=%s)", settings.app_env, settings.journey_backend)

    if not settings.api_key:
        logger.warning("API_KEY not set - operator endpoints are unauthenticated.")
    if not (settings.wa_template_intro and settings.wa_template_nudge1 and settings.wa_template_nudge2):
        logger.warning(
            "WA_TEMPLATE_INTRO/NUDGE1/NUDGE2 not all set - journeys will pause at the missing step."
        )

    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    from journeyflow.services.journey import create_journey_service
    from journeyflow.workers.journey_runner import JourneyRunner
    from journeyflow.workers.journey_scheduler import bootstrap_pending_journeys

    service = create_journey_service(settings)
    app.state.journey_service = service

    # Rebuild the tick queue from persisted next_action_at before consuming it
    await bootstrap_pending_journeys(service.scheduler, service.session_factory)

    runner = JourneyRunner(
        service,
        concurrency=settings.journey_worker_concurrency,
        poll_interval=settings.journey_poll_interval_seconds,
        max_retries=settings.journey_job_max_retries,
    )
    worker_tasks: list[asyncio.Task] = [asyncio.create_task(runner.run())]
    logger.info("Journey runner started")

    yield

    # Graceful shutdown - give the runner time to finish current ticks
    logger.info("journeyflow shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    from journeyflow.database import dispose_engine
    from journeyflow.utils.redis_client import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("journeyflow shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="journeyflow",
        description="Proactive WhatsApp lead journey orchestrator",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
