"""
Embedded scheduler - runs the cron drivers in-process on a fixed interval.
For deployments without an external scheduler hitting /api/cron/*.
Enabled with RUN_EMBEDDED_SCHEDULER=true.
"""
import asyncio
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

HEARTBEAT_TTL_SECONDS = 600


async def _heartbeat(name: str):
    """Store heartbeat timestamp in Redis."""
    try:
        from ghl_ingest.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            f"ghl_ingest:worker_health:{name}",
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_driver_loop(driver, interval_seconds: int):
    """Run one driver forever. Errors are logged; the loop keeps going."""
    logger.info("%s loop started (every %ds)", driver.name, interval_seconds)

    while True:
        try:
            summary = await driver.run()
            if summary.processed:
                logger.info("%s processed %d items", driver.name, summary.processed)
        except Exception as e:
            logger.error("%s loop error: %s", driver.name, str(e), exc_info=True)

        await _heartbeat(driver.name)
        await asyncio.sleep(interval_seconds)


def start_scheduler(settings) -> list[asyncio.Task]:
    """Create one task per driver. Caller cancels them on shutdown."""
    from ghl_ingest.workers.webhook_queue import WebhookQueueDriver
    from ghl_ingest.workers.install_queue import InstallQueueDriver
    from ghl_ingest.workers.token_refresh import TokenRefreshDriver

    interval = settings.scheduler_interval_seconds
    drivers = [
        WebhookQueueDriver(settings=settings),
        InstallQueueDriver(settings=settings),
        TokenRefreshDriver(settings=settings),
    ]
    return [asyncio.create_task(run_driver_loop(d, interval)) for d in drivers]
