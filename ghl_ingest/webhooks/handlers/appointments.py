"""
Appointment webhooks - AppointmentCreate, AppointmentUpdate, AppointmentDelete.
GHL nests the record under "appointment"; locationId sits at the top level.
"""
import logging
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.appointment import Appointment
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus
from ghl_ingest.webhooks.handlers.common import apply_fields, apply_timestamps, missing

logger = logging.getLogger(__name__)

APPOINTMENT_FIELDS = {
    "contactId": "contact_id",
    "calendarId": "calendar_id",
    "groupId": "group_id",
    "title": "title",
    "appointmentStatus": "appointment_status",
    "assignedUserId": "assigned_user_id",
    "users": "users",
    "notes": "notes",
    "source": "source",
    "address": "address",
}
APPOINTMENT_TIMES = {"startTime": "start_time", "endTime": "end_time"}


def _unpack(payload: dict) -> tuple[dict, Optional[str], Optional[str]]:
    appointment = payload.get("appointment")
    if not isinstance(appointment, dict):
        appointment = payload
    location_id = payload.get("locationId") or appointment.get("locationId")
    return appointment, appointment.get("id"), location_id


async def get_appointment(db: AsyncSession, ghl_id: str, location_id: str) -> Optional[Appointment]:
    result = await db.execute(
        select(Appointment).where(
            and_(Appointment.ghl_appointment_id == ghl_id, Appointment.location_id == location_id)
        )
    )
    return result.scalar_one_or_none()


async def _upsert_appointment(ctx: HandlerContext, payload: dict, partial: bool) -> HandlerResult:
    data, ghl_id, location_id = _unpack(payload)
    if missing(ghl_id, location_id):
        logger.warning("Appointment webhook missing id/locationId", extra={"webhook_id": ctx.webhook_id})
        return HandlerResult(HandlerStatus.SKIPPED, "missing appointment id or locationId")

    now = utcnow()
    appointment = await get_appointment(ctx.session, ghl_id, location_id)
    created = appointment is None
    if created:
        appointment = Appointment(
            ghl_appointment_id=ghl_id,
            location_id=location_id,
            created_by_webhook=ctx.webhook_id,
            created_at=now,
        )
        ctx.session.add(appointment)

    apply_fields(appointment, data, APPOINTMENT_FIELDS, partial=partial)
    apply_timestamps(appointment, data, APPOINTMENT_TIMES)
    if not partial:
        appointment.deleted = False
        appointment.deleted_at = None
        appointment.deleted_by_webhook = None

    appointment.last_webhook_update = now
    appointment.updated_at = now
    await ctx.session.flush()
    return HandlerResult(data={"appointment_id": ghl_id, "created": created})


async def handle_appointment_create(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _upsert_appointment(ctx, payload, partial=False)


async def handle_appointment_update(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _upsert_appointment(ctx, payload, partial=True)


async def handle_appointment_delete(ctx: HandlerContext, payload: dict) -> HandlerResult:
    _, ghl_id, location_id = _unpack(payload)
    if missing(ghl_id, location_id):
        return HandlerResult(HandlerStatus.SKIPPED, "missing appointment id or locationId")

    appointment = await get_appointment(ctx.session, ghl_id, location_id)
    if appointment is None:
        return HandlerResult(HandlerStatus.SKIPPED, "appointment not found")

    now = utcnow()
    appointment.deleted = True
    appointment.deleted_at = now
    appointment.deleted_by_webhook = ctx.webhook_id
    appointment.last_webhook_update = now
    appointment.updated_at = now
    await ctx.session.flush()
    return HandlerResult(data={"appointment_id": ghl_id, "deleted": True})
