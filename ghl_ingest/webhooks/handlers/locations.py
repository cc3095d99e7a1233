"""
Location profile webhooks - LocationCreate, LocationUpdate, PLAN_CHANGE.
These never touch install state; INSTALL/UNINSTALL own that.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.location import Location
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus
from ghl_ingest.webhooks.handlers.common import apply_fields

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {
    "companyId": "company_id",
    "name": "name",
    "email": "email",
    "stripeProductId": "stripe_product_id",
}


async def get_location(db: AsyncSession, location_id: str) -> Optional[Location]:
    result = await db.execute(select(Location).where(Location.location_id == location_id))
    return result.scalar_one_or_none()


async def get_or_create_location(ctx: HandlerContext, location_id: str) -> tuple[Location, bool]:
    location = await get_location(ctx.session, location_id)
    if location is not None:
        return location, False
    now = utcnow()
    location = Location(
        location_id=location_id,
        is_company_level=False,
        app_installed=False,
        created_by_webhook=ctx.webhook_id,
        created_at=now,
        updated_at=now,
    )
    ctx.session.add(location)
    return location, True


async def handle_location_upsert(ctx: HandlerContext, payload: dict) -> HandlerResult:
    """LocationCreate / LocationUpdate - keyed by payload id."""
    location_id = payload.get("id") or payload.get("locationId")
    if not location_id:
        return HandlerResult(HandlerStatus.SKIPPED, "missing location id")

    location, created = await get_or_create_location(ctx, location_id)
    apply_fields(location, payload, PROFILE_FIELDS)
    now = utcnow()
    location.last_webhook_update = now
    location.updated_at = now
    await ctx.session.flush()

    logger.info(
        "Location %s %s", location_id, "created" if created else "updated",
        extra={"location_id": location_id, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(data={"location_id": location_id, "created": created})


async def handle_plan_change(ctx: HandlerContext, payload: dict) -> HandlerResult:
    location_id = payload.get("locationId")
    if not location_id:
        return HandlerResult(HandlerStatus.SKIPPED, "missing locationId")

    location = await get_location(ctx.session, location_id)
    if location is None:
        logger.info("PLAN_CHANGE for unknown location %s", location_id)
        return HandlerResult(HandlerStatus.SKIPPED, "location not found")

    location.plan_id = payload.get("newPlanId") or payload.get("planId")
    now = utcnow()
    location.last_webhook_update = now
    location.updated_at = now
    await ctx.session.flush()
    return HandlerResult(data={"location_id": location_id, "plan_id": location.plan_id})
