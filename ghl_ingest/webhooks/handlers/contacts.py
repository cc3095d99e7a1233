"""
Contact webhooks - ContactCreate, ContactUpdate, ContactDelete, ContactDndUpdate, ContactTagUpdate.
All are upserts keyed by (id, locationId). Delete is soft.
"""
import logging
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.contact import Contact
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus
from ghl_ingest.webhooks.handlers.common import apply_fields, full_name, missing

logger = logging.getLogger(__name__)

CONTACT_FIELDS = {
    "email": "email",
    "firstName": "first_name",
    "lastName": "last_name",
    "phone": "phone",
    "tags": "tags",
    "source": "source",
    "dateOfBirth": "date_of_birth",
    "address1": "address1",
    "city": "city",
    "state": "state",
    "country": "country",
    "postalCode": "postal_code",
    "companyName": "company_name",
    "website": "website",
    "dnd": "dnd",
    "dndSettings": "dnd_settings",
    "customFields": "custom_fields",
}


async def get_contact(db: AsyncSession, ghl_contact_id: str, location_id: str) -> Optional[Contact]:
    result = await db.execute(
        select(Contact).where(
            and_(Contact.ghl_contact_id == ghl_contact_id, Contact.location_id == location_id)
        )
    )
    return result.scalar_one_or_none()


async def _upsert_contact(ctx: HandlerContext, payload: dict, fields: dict, partial: bool) -> HandlerResult:
    ghl_id = payload.get("id")
    location_id = payload.get("locationId")
    if missing(ghl_id, location_id):
        logger.warning("Contact webhook missing id/locationId", extra={"webhook_id": ctx.webhook_id})
        return HandlerResult(HandlerStatus.SKIPPED, "missing id or locationId")

    now = utcnow()
    contact = await get_contact(ctx.session, ghl_id, location_id)
    created = contact is None
    if created:
        contact = Contact(
            ghl_contact_id=ghl_id,
            location_id=location_id,
            created_by_webhook=ctx.webhook_id,
            created_at=now,
        )
        ctx.session.add(contact)

    apply_fields(contact, payload, fields, partial=partial)
    if not partial:
        contact.tags = contact.tags or []
        contact.custom_fields = contact.custom_fields or []
        contact.dnd = bool(contact.dnd)
        contact.source = contact.source or "webhook"
        # A create for a soft-deleted contact brings it back
        contact.deleted = False
        contact.deleted_at = None
        contact.deleted_by_webhook = None
    if "firstName" in payload or "lastName" in payload or created:
        contact.full_name = payload.get("name") or full_name(contact.first_name, contact.last_name)

    contact.last_webhook_update = now
    contact.updated_at = now
    await ctx.session.flush()

    logger.info(
        "Contact %s %s", ghl_id, "created" if created else "updated",
        extra={"location_id": location_id, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(data={"contact_id": ghl_id, "created": created})


async def handle_contact_create(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _upsert_contact(ctx, payload, CONTACT_FIELDS, partial=False)


async def handle_contact_update(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _upsert_contact(ctx, payload, CONTACT_FIELDS, partial=True)


async def handle_contact_dnd_update(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _upsert_contact(
        ctx, payload, {"dnd": "dnd", "dndSettings": "dnd_settings"}, partial=True
    )


async def handle_contact_tag_update(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _upsert_contact(ctx, payload, {"tags": "tags"}, partial=True)


async def handle_contact_delete(ctx: HandlerContext, payload: dict) -> HandlerResult:
    ghl_id = payload.get("id")
    location_id = payload.get("locationId")
    if missing(ghl_id, location_id):
        return HandlerResult(HandlerStatus.SKIPPED, "missing id or locationId")

    contact = await get_contact(ctx.session, ghl_id, location_id)
    if contact is None:
        logger.info("ContactDelete for unknown contact %s", ghl_id)
        return HandlerResult(HandlerStatus.SKIPPED, "contact not found")

    now = utcnow()
    contact.deleted = True
    contact.deleted_at = now
    contact.deleted_by_webhook = ctx.webhook_id
    contact.last_webhook_update = now
    contact.updated_at = now
    await ctx.session.flush()
    return HandlerResult(data={"contact_id": ghl_id, "deleted": True})
