"""
Tests for ghl_ingest/webhooks/handlers/messages.py - conversations and messages.
"""
import pytest

from sqlalchemy import select, func

from ghl_ingest.models.contact import Contact
from ghl_ingest.models.conversation import Conversation, Message
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.webhooks.context import HandlerStatus
from ghl_ingest.webhooks.handlers.messages import (
    handle_inbound_message,
    handle_outbound_message,
    handle_conversation_unread_update,
    message_type_name,
    conversation_type,
)


@pytest.fixture
async def contact(db):
    now = utcnow()
    row = Contact(
        ghl_contact_id="c_1",
        location_id="loc_abc",
        first_name="Jane",
        last_name="Doe",
        full_name="Jane Doe",
        email="jane@example.com",
        phone="+15125550100",
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    await db.commit()
    return row


def _sms(message_id="m_1", body="Is Tuesday ok?", direction="inbound"):
    return {
        "type": "InboundMessage" if direction == "inbound" else "OutboundMessage",
        "locationId": "loc_abc",
        "contactId": "c_1",
        "conversationId": "conv_1",
        "messageId": message_id,
        "messageType": "SMS",
        "body": body,
        "direction": direction,
        "dateAdded": "2026-03-01T15:00:00Z",
    }


async def _unread(db) -> int:
    return (await db.execute(
        select(Conversation.unread_count).where(Conversation.ghl_conversation_id == "conv_1")
    )).scalar_one()


async def _message_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(Message))).scalar_one()


class TestTypeNames:
    def test_known_and_unknown(self):
        assert message_type_name(1) == "TYPE_SMS"
        assert message_type_name("3") == "TYPE_EMAIL"
        assert message_type_name(99) == "TYPE_UNKNOWN_99"
        assert message_type_name(None) == "TYPE_UNKNOWN_None"

    def test_conversation_type(self):
        assert conversation_type(1) == "TYPE_PHONE"
        assert conversation_type(3) == "TYPE_EMAIL"
        assert conversation_type(4) == "TYPE_OTHER"


# ---------------------------------------------------------------------------
# Inbound / outbound
# ---------------------------------------------------------------------------


class TestInboundMessage:
    async def test_creates_conversation_and_message(self, ctx, db, contact):
        result = await handle_inbound_message(ctx, _sms())
        assert result.data == {"message_id": "m_1", "created": True}
        await db.commit()

        conversation = (await db.execute(select(Conversation))).scalar_one()
        assert conversation.contact_id == contact.id
        assert conversation.contact_name == "Jane Doe"
        assert conversation.last_message_direction == "inbound"
        assert await _unread(db) == 1

        message = (await db.execute(select(Message))).scalar_one()
        assert message.body == "Is Tuesday ok?"
        assert message.read is False

    async def test_redelivery_does_not_double_count(self, ctx, db, contact):
        await handle_inbound_message(ctx, _sms())
        result = await handle_inbound_message(ctx, _sms())
        assert result.data["created"] is False
        assert await _message_count(db) == 1
        assert await _unread(db) == 1

    async def test_distinct_messages_accumulate(self, ctx, db, contact):
        await handle_inbound_message(ctx, _sms("m_1"))
        await handle_inbound_message(ctx, _sms("m_2", body="Or Wednesday?"))
        assert await _message_count(db) == 2
        assert await _unread(db) == 2
        conversation = (await db.execute(select(Conversation))).scalar_one()
        assert conversation.last_message_body == "Or Wednesday?"

    async def test_nested_message_shape(self, ctx, db, contact):
        payload = {
            "locationId": "loc_abc",
            "contactId": "c_1",
            "conversationId": "conv_1",
            "message": {"id": "m_7", "type": 1, "body": "nested"},
        }
        result = await handle_inbound_message(ctx, payload)
        assert result.data == {"message_id": "m_7", "created": True}

    async def test_email_stores_reference_only(self, ctx, db, contact):
        payload = {
            "locationId": "loc_abc",
            "contactId": "c_1",
            "conversationId": "conv_1",
            "message": {
                "id": "m_e",
                "type": 3,
                "body": "<p>long html</p>",
                "meta": {"email": {"messageIds": ["email_123"]}},
            },
        }
        await handle_inbound_message(ctx, payload)
        message = (await db.execute(select(Message))).scalar_one()
        assert message.email_message_id == "email_123"
        assert message.needs_content_fetch is True
        assert message.body is None

    async def test_unknown_contact_skipped(self, ctx, db):
        result = await handle_inbound_message(ctx, _sms())
        assert result.status == HandlerStatus.SKIPPED
        assert result.detail == "contact not found"
        assert await _message_count(db) == 0

    async def test_missing_ids_skipped(self, ctx, contact):
        payload = _sms()
        del payload["conversationId"]
        result = await handle_inbound_message(ctx, payload)
        assert result.status == HandlerStatus.SKIPPED


class TestOutboundMessage:
    async def test_outbound_is_read_and_not_unread(self, ctx, db, contact):
        await handle_outbound_message(ctx, _sms("m_out", direction="outbound"))
        message = (await db.execute(select(Message))).scalar_one()
        assert message.read is True
        assert message.direction == "outbound"
        assert await _unread(db) == 0


class TestUnreadUpdate:
    async def test_sets_count(self, ctx, db, contact):
        await handle_inbound_message(ctx, _sms())
        result = await handle_conversation_unread_update(
            ctx, {"locationId": "loc_abc", "conversationId": "conv_1", "unreadCount": 0}
        )
        assert result.status == HandlerStatus.PROCESSED
        assert await _unread(db) == 0

    async def test_unknown_conversation_skipped(self, ctx):
        result = await handle_conversation_unread_update(
            ctx, {"locationId": "loc_abc", "conversationId": "conv_x", "unreadCount": 3}
        )
        assert result.status == HandlerStatus.SKIPPED
