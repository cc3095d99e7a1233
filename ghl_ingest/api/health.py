"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + queue depth)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.database import get_db
from ghl_ingest.services.queue_store import webhook_queue, install_retry_queue, sync_queue

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check - database, Redis, and pending/processing queue depth."""
    checks = {"database": False, "redis": False}
    queues: dict[str, dict[str, int]] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
        for store in (webhook_queue, install_retry_queue, sync_queue):
            queues[store.name] = await store.count_by_status(db)
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from ghl_ingest.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "queues": queues,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
