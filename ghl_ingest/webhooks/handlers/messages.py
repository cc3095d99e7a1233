"""
Conversation webhooks - InboundMessage, OutboundMessage, ConversationUnreadUpdate.

A message is stored once per (message id, locationId). The conversation is
upserted on every delivery, but unread_count only moves when an inbound
message row is actually created, so redeliveries never double count.
"""
import logging
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.contact import Contact
from ghl_ingest.models.conversation import Conversation, Message
from ghl_ingest.utils.timestamps import utcnow, parse_timestamp
from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus
from ghl_ingest.webhooks.handlers.common import missing, full_name
from ghl_ingest.webhooks.handlers.contacts import get_contact

logger = logging.getLogger(__name__)

MESSAGE_TYPE_NAMES = {
    1: "TYPE_SMS",
    3: "TYPE_EMAIL",
    4: "TYPE_WHATSAPP",
    5: "TYPE_GMB",
    6: "TYPE_FB",
    7: "TYPE_IG",
    24: "TYPE_ACTIVITY_APPOINTMENT",
    25: "TYPE_ACTIVITY_CONTACT",
    26: "TYPE_ACTIVITY_INVOICE",
    27: "TYPE_ACTIVITY_OPPORTUNITY",
    28: "TYPE_ACTIVITY_PAYMENT",
}

TYPE_SMS = 1
TYPE_EMAIL = 3
TYPE_WHATSAPP = 4

# Flat payloads carry a messageType name instead of the numeric type
MESSAGE_TYPE_CODES = {
    "SMS": TYPE_SMS,
    "EMAIL": TYPE_EMAIL,
    "WHATSAPP": TYPE_WHATSAPP,
    "GMB": 5,
    "FB": 6,
    "IG": 7,
}

PREVIEW_LENGTH = 200


def message_type_name(message_type) -> str:
    try:
        return MESSAGE_TYPE_NAMES.get(int(message_type), f"TYPE_UNKNOWN_{message_type}")
    except (TypeError, ValueError):
        return f"TYPE_UNKNOWN_{message_type}"


def conversation_type(message_type) -> str:
    if message_type == TYPE_SMS:
        return "TYPE_PHONE"
    if message_type == TYPE_EMAIL:
        return "TYPE_EMAIL"
    return "TYPE_OTHER"


def _unpack(payload: dict) -> tuple[dict, Optional[str], Optional[str]]:
    """GHL sends the message nested under "message" or flat with messageId."""
    message = payload.get("message")
    if isinstance(message, dict):
        message_id = message.get("id")
    else:
        message = dict(payload)
        message["type"] = MESSAGE_TYPE_CODES.get(str(payload.get("messageType") or "").upper())
        message_id = payload.get("messageId")
    conversation_id = payload.get("conversationId") or message.get("conversationId")
    return message, message_id, conversation_id


async def get_conversation(db: AsyncSession, ghl_conversation_id: str, location_id: str) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation).where(
            and_(
                Conversation.ghl_conversation_id == ghl_conversation_id,
                Conversation.location_id == location_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def _get_message(db: AsyncSession, ghl_message_id: str, location_id: str) -> Optional[Message]:
    result = await db.execute(
        select(Message).where(
            and_(Message.ghl_message_id == ghl_message_id, Message.location_id == location_id)
        )
    )
    return result.scalar_one_or_none()


async def _upsert_conversation(
    ctx: HandlerContext,
    contact: Contact,
    ghl_conversation_id: str,
    location_id: str,
    message: dict,
    direction: str,
) -> Conversation:
    now = utcnow()
    conversation = await get_conversation(ctx.session, ghl_conversation_id, location_id)
    if conversation is None:
        conversation = Conversation(
            ghl_conversation_id=ghl_conversation_id,
            location_id=location_id,
            unread_count=0,
            created_by_webhook=ctx.webhook_id,
            created_at=now,
        )
        ctx.session.add(conversation)

    message_type = message.get("type")
    conversation.contact_id = contact.id
    conversation.type = conversation_type(message_type)
    conversation.last_message_date = parse_timestamp(message.get("dateAdded")) or now
    conversation.last_message_body = (message.get("body") or "")[:PREVIEW_LENGTH]
    conversation.last_message_type = message_type_name(message_type)
    conversation.last_message_direction = direction
    if direction == "outbound":
        conversation.last_outbound_message_action = message.get("source") or "manual"
    conversation.contact_name = contact.full_name or full_name(contact.first_name, contact.last_name)
    conversation.contact_email = contact.email
    conversation.contact_phone = contact.phone
    conversation.last_webhook_update = now
    conversation.updated_at = now
    await ctx.session.flush()
    return conversation


def _build_message(
    ctx: HandlerContext,
    message: dict,
    ghl_message_id: str,
    conversation: Conversation,
    contact: Contact,
    location_id: str,
    direction: str,
    user_id: Optional[str],
) -> Message:
    message_type = message.get("type")
    row = Message(
        ghl_message_id=ghl_message_id,
        location_id=location_id,
        conversation_id=conversation.id,
        ghl_conversation_id=conversation.ghl_conversation_id,
        contact_id=contact.id,
        type=message_type,
        message_type=message.get("messageType") or message_type_name(message_type),
        direction=direction,
        content_type=message.get("contentType"),
        source=message.get("source") or ("webhook" if direction == "inbound" else "manual"),
        user_id=user_id,
        read=direction == "outbound",
        date_added=parse_timestamp(message.get("dateAdded")) or utcnow(),
        created_by_webhook=ctx.webhook_id,
    )

    if message_type == TYPE_SMS:
        row.body = message.get("body") or ""
        row.status = message.get("status") or ("received" if direction == "inbound" else "sent")
    elif message_type == TYPE_EMAIL:
        # Store the reference only; the HTML body is fetched on demand
        message_ids = ((message.get("meta") or {}).get("email") or {}).get("messageIds") or []
        if message_ids:
            row.email_message_id = message_ids[0]
            row.needs_content_fetch = True
    elif message_type == TYPE_WHATSAPP:
        row.body = message.get("body") or ""
        row.media_url = message.get("mediaUrl")
        row.media_type = message.get("mediaType")
    else:
        row.body = message.get("body") or ""
        row.meta = message.get("meta") or {}
    return row


async def _handle_message(ctx: HandlerContext, payload: dict, direction: str) -> HandlerResult:
    location_id = payload.get("locationId")
    contact_id = payload.get("contactId")
    message, ghl_message_id, ghl_conversation_id = _unpack(payload)
    if missing(location_id, contact_id, ghl_message_id, ghl_conversation_id):
        logger.warning(
            "%s message webhook missing ids", direction,
            extra={"webhook_id": ctx.webhook_id, "location_id": location_id},
        )
        return HandlerResult(HandlerStatus.SKIPPED, "missing message, conversation or contact id")

    contact = await get_contact(ctx.session, contact_id, location_id)
    if contact is None:
        logger.warning(
            "Contact not found for %s message: %s", direction, contact_id,
            extra={"webhook_id": ctx.webhook_id, "location_id": location_id},
        )
        return HandlerResult(HandlerStatus.SKIPPED, "contact not found")

    conversation = await _upsert_conversation(
        ctx, contact, ghl_conversation_id, location_id, message, direction
    )

    existing = await _get_message(ctx.session, ghl_message_id, location_id)
    if existing is not None:
        logger.info("Message %s already stored", ghl_message_id)
        return HandlerResult(data={"message_id": ghl_message_id, "created": False})

    ctx.session.add(_build_message(
        ctx, message, ghl_message_id, conversation, contact, location_id, direction,
        payload.get("userId"),
    ))
    await ctx.session.flush()

    if direction == "inbound":
        await ctx.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(unread_count=Conversation.unread_count + 1)
            .execution_options(synchronize_session=False)
        )

    logger.info(
        "%s message stored: %s", direction.capitalize(), message_type_name(message.get("type")),
        extra={"webhook_id": ctx.webhook_id, "location_id": location_id},
    )
    return HandlerResult(data={"message_id": ghl_message_id, "created": True})


async def handle_inbound_message(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _handle_message(ctx, payload, "inbound")


async def handle_outbound_message(ctx: HandlerContext, payload: dict) -> HandlerResult:
    return await _handle_message(ctx, payload, "outbound")


async def handle_conversation_unread_update(ctx: HandlerContext, payload: dict) -> HandlerResult:
    location_id = payload.get("locationId")
    conversation_id = payload.get("conversationId") or payload.get("id")
    if missing(location_id, conversation_id):
        return HandlerResult(HandlerStatus.SKIPPED, "missing conversationId or locationId")

    result = await ctx.session.execute(
        update(Conversation)
        .where(
            and_(
                Conversation.ghl_conversation_id == conversation_id,
                Conversation.location_id == location_id,
            )
        )
        .values(unread_count=int(payload.get("unreadCount") or 0), last_webhook_update=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        return HandlerResult(HandlerStatus.SKIPPED, "conversation not found")
    return HandlerResult(data={"conversation_id": conversation_id})
