"""
Append-only audit writes (webhook_metrics, app_events) and their retention purge.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.audit import WebhookMetric, AppEvent
from ghl_ingest.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


def record_metric(
    db: AsyncSession,
    *,
    queue: str,
    event_type: str,
    outcome: str,
    success: bool,
    webhook_id: Optional[str] = None,
    attempts: int = 0,
    duration_ms: Optional[int] = None,
    error_message: Optional[str] = None,
) -> WebhookMetric:
    metric = WebhookMetric(
        webhook_id=webhook_id,
        queue=queue,
        event_type=event_type,
        outcome=outcome,
        success=success,
        attempts=attempts,
        duration_ms=duration_ms,
        error_message=error_message[:1000] if error_message else None,
    )
    db.add(metric)
    return metric


def record_app_event(
    db: AsyncSession,
    event_type: str,
    *,
    location_id: Optional[str] = None,
    company_id: Optional[str] = None,
    webhook_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    data: Optional[dict] = None,
) -> AppEvent:
    event = AppEvent(
        type=event_type,
        location_id=location_id,
        company_id=company_id,
        webhook_id=webhook_id,
        occurred_at=occurred_at or utcnow(),
        data=data,
    )
    db.add(event)
    return event


async def purge_audit_rows(
    db: AsyncSession,
    older_than: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """Delete metrics and app events past retention. Returns rows removed."""
    cutoff = (now or utcnow()) - older_than
    metrics = await db.execute(delete(WebhookMetric).where(WebhookMetric.created_at < cutoff))
    events = await db.execute(delete(AppEvent).where(AppEvent.created_at < cutoff))
    return (metrics.rowcount or 0) + (events.rowcount or 0)
