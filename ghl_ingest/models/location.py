"""
Location (tenant) record - a GHL sub-account, or a company-level row when location_id is NULL.
Install-related fields are written only by the INSTALL / UNINSTALL handlers.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from ghl_ingest.database import Base


class InstallState:
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SETUP_FAILED = "setup_failed"


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    location_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    is_company_level: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Profile
    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_product_id: Mapped[Optional[str]] = mapped_column(String(100))

    # Install lifecycle
    app_installed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    install_state: Mapped[Optional[str]] = mapped_column(String(20))  # in_progress, complete, setup_failed
    install_type: Mapped[Optional[str]] = mapped_column(String(20))  # Location, Company
    installed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    installed_by: Mapped[Optional[str]] = mapped_column(String(64))
    install_started: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    install_started_by: Mapped[Optional[str]] = mapped_column(String(100))
    install_completed: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    plan_id: Mapped[Optional[str]] = mapped_column(String(100))
    is_whitelabel_company: Mapped[Optional[bool]] = mapped_column(Boolean)
    whitelabel_details: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Setup side effect outcome
    setup_triggered_by: Mapped[Optional[str]] = mapped_column(String(100))
    setup_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    initial_setup_complete: Mapped[Optional[bool]] = mapped_column(Boolean)
    setup_failed: Mapped[Optional[bool]] = mapped_column(Boolean)
    setup_error: Mapped[Optional[str]] = mapped_column(Text)
    needs_manual_setup: Mapped[Optional[bool]] = mapped_column(Boolean)

    # OAuth - accessToken, refreshToken, expiresAt, needsReauth, lastRefreshError
    oauth: Mapped[Optional[dict]] = mapped_column(JSONB)
    has_company_oauth: Mapped[Optional[bool]] = mapped_column(Boolean)
    needs_reauth: Mapped[Optional[bool]] = mapped_column(Boolean)
    reauth_reason: Mapped[Optional[str]] = mapped_column(String(255))

    # Uninstall audit
    uninstalled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    uninstalled_by: Mapped[Optional[str]] = mapped_column(String(64))
    uninstall_reason: Mapped[Optional[str]] = mapped_column(String(255))

    last_webhook_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by_webhook: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_locations_company_level", "company_id", "is_company_level"),
    )

    def __repr__(self) -> str:
        return f"<Location {self.location_id or 'company:' + str(self.company_id)} installed={self.app_installed}>"
