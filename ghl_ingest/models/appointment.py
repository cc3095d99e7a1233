"""
Appointment mirror - upserted from GHL calendar webhooks, keyed by (ghl_appointment_id, location_id).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, Text, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from ghl_ingest.database import Base


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    ghl_appointment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    contact_id: Mapped[Optional[str]] = mapped_column(String(64))  # GHL contact id
    calendar_id: Mapped[Optional[str]] = mapped_column(String(64))
    group_id: Mapped[Optional[str]] = mapped_column(String(64))
    title: Mapped[Optional[str]] = mapped_column(String(255))
    appointment_status: Mapped[Optional[str]] = mapped_column(String(30))
    assigned_user_id: Mapped[Optional[str]] = mapped_column(String(64))
    users: Mapped[Optional[list]] = mapped_column(JSONB)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[Optional[str]] = mapped_column(String(100))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_by_webhook: Mapped[Optional[str]] = mapped_column(String(100))

    last_webhook_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by_webhook: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("ghl_appointment_id", "location_id", name="uq_appointments_ghl_id_location"),
    )
