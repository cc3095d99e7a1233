"""
ghl-ingest - GoHighLevel webhook ingestion and install orchestration.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from ghl_ingest.config import get_settings
from ghl_ingest.database import dispose_engine
from ghl_ingest.api.router import api_router
from ghl_ingest.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("ghl_ingest")


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
    logger.info("ghl-ingest starting up (env=%s)", settings.app_env)

    if not settings.cron_secret:
        logger.warning(
            "CRON_SECRET not set - cron endpoints only accept the platform scheduler header."
        )
    if settings.verify_webhook_signatures and not settings.ghl_public_key:
        logger.warning(
            "GHL_PUBLIC_KEY not set - every signed webhook will be rejected. "
            "Set the key or VERIFY_WEBHOOK_SIGNATURES=false for local testing."
        )

    # Initialize Sentry if configured
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

    worker_tasks: list[asyncio.Task] = []
    if settings.run_embedded_scheduler:
        from ghl_ingest.workers.scheduler import start_scheduler
        worker_tasks = start_scheduler(settings)
        logger.info("Embedded scheduler started (%d drivers)", len(worker_tasks))
    else:
        logger.info("Embedded scheduler disabled - relying on external cron")

    yield

    # Graceful shutdown - give drivers time to finish the current batch
    logger.info("ghl-ingest shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    await dispose_engine()
    logger.info("ghl-ingest shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="ghl-ingest",
        description="GoHighLevel webhook ingestion and install orchestration",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
