"""
Recent webhook fingerprints - bounded history used by the dedup gate.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from ghl_ingest.database import Base


class WebhookFingerprint(Base):
    __tablename__ = "webhook_fingerprints"

    fingerprint: Mapped[str] = mapped_column(String(140), primary_key=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64))  # queue item id that accepted it
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
