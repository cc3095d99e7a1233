"""
Contact mirror - upserted from GHL contact webhooks, keyed by (ghl_contact_id, location_id).
Deletes are soft: GHL is the system of record and may resurrect a contact.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from ghl_ingest.database import Base


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    ghl_contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    email: Mapped[Optional[str]] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    full_name: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[Optional[str]] = mapped_column(String(30))
    tags: Mapped[Optional[list]] = mapped_column(JSONB)
    source: Mapped[Optional[str]] = mapped_column(String(100))
    date_of_birth: Mapped[Optional[str]] = mapped_column(String(30))
    address1: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    company_name: Mapped[Optional[str]] = mapped_column(String(255))
    website: Mapped[Optional[str]] = mapped_column(String(255))
    dnd: Mapped[bool] = mapped_column(Boolean, default=False)
    dnd_settings: Mapped[Optional[dict]] = mapped_column(JSONB)
    custom_fields: Mapped[Optional[list]] = mapped_column(JSONB)

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
        UniqueConstraint("ghl_contact_id", "location_id", name="uq_contacts_ghl_id_location"),
    )

    def __repr__(self) -> str:
        return f"<Contact {self.ghl_contact_id} @ {self.location_id}>"
