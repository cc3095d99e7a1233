"""
Event types we receive but deliberately don't mirror. Logged and acknowledged.
"""
import logging

from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus

logger = logging.getLogger(__name__)


async def acknowledge(ctx: HandlerContext, payload: dict) -> HandlerResult:
    event_type = payload.get("type") if isinstance(payload, dict) else None
    logger.info(
        "Acknowledged %s webhook (not mirrored)", event_type,
        extra={"event_type": event_type, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(HandlerStatus.ACKNOWLEDGED)
