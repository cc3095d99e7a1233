"""
Conversation and message mirrors.
Messages are unique per (ghl_message_id, location_id); the conversation's unread_count
is incremented once per newly stored inbound message, never per delivery.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, Integer, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from ghl_ingest.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    ghl_conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id")
    )

    type: Mapped[Optional[str]] = mapped_column(String(20))  # TYPE_PHONE, TYPE_EMAIL, TYPE_OTHER
    unread_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_message_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_message_body: Mapped[Optional[str]] = mapped_column(String(200))
    last_message_type: Mapped[Optional[str]] = mapped_column(String(30))
    last_message_direction: Mapped[Optional[str]] = mapped_column(String(10))
    last_outbound_message_action: Mapped[Optional[str]] = mapped_column(String(30))
    contact_name: Mapped[Optional[str]] = mapped_column(String(200))
    contact_email: Mapped[Optional[str]] = mapped_column(String(255))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(30))

    last_webhook_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by_webhook: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("ghl_conversation_id", "location_id", name="uq_conversations_ghl_id_location"),
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    ghl_message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True
    )
    ghl_conversation_id: Mapped[Optional[str]] = mapped_column(String(64))
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    type: Mapped[Optional[int]] = mapped_column(Integer)  # GHL numeric message type
    message_type: Mapped[Optional[str]] = mapped_column(String(30))
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound, outbound
    content_type: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(30))
    body: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(String(20))
    email_message_id: Mapped[Optional[str]] = mapped_column(String(100))
    needs_content_fetch: Mapped[bool] = mapped_column(Boolean, default=False)
    media_url: Mapped[Optional[str]] = mapped_column(Text)
    media_type: Mapped[Optional[str]] = mapped_column(String(50))
    meta: Mapped[Optional[dict]] = mapped_column(JSONB)
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    date_added: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_by_webhook: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("ghl_message_id", "location_id", name="uq_messages_ghl_id_location"),
    )
