"""
Sync-queue job handlers. Errors propagate so the driver reschedules the job.
"""
import logging

from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus

logger = logging.getLogger(__name__)


async def handle_agency_sync(ctx: HandlerContext, payload: dict) -> HandlerResult:
    company_id = payload.get("companyId")
    if not company_id:
        return HandlerResult(HandlerStatus.SKIPPED, "missing companyId")
    if ctx.downstream is None:
        raise RuntimeError("agency_sync requires a downstream client")

    result = await ctx.downstream.sync_agency(company_id)
    logger.info(
        "Agency sync completed for company %s", company_id,
        extra={"company_id": company_id, "webhook_id": ctx.webhook_id},
    )
    locations = result.get("locations") if isinstance(result, dict) else None
    return HandlerResult(data={
        "company_id": company_id,
        "locations_synced": len(locations) if isinstance(locations, list) else None,
    })
