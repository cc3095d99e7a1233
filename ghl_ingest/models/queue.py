"""
Durable queue tables - webhook_queue, install_retry_queue, sync_queue.
All three share one row shape; only the table (and the store's backoff unit) differs.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, declared_attr
from ghl_ingest.database import Base


class QueueStatus:
    """Queue item status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    TERMINAL = (COMPLETED, FAILED, SKIPPED)


DEFAULT_MAX_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueItemMixin:
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # External idempotency key (GHL webhookId) - may be absent
    webhook_id: Mapped[Optional[str]] = mapped_column(String(100), index=True)

    type: Mapped[str] = mapped_column(String(60), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.PENDING, nullable=False
    )  # pending, processing, completed, failed, skipped

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_MAX_ATTEMPTS, nullable=False
    )

    source: Mapped[Optional[str]] = mapped_column(String(30))  # native, install_retry, install_webhook
    location_id: Mapped[Optional[str]] = mapped_column(String(64))
    company_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    # Earliest time the item may be dequeued
    process_after: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    last_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    skip_reason: Mapped[Optional[str]] = mapped_column(String(200))
    result: Mapped[Optional[dict]] = mapped_column(JSONB)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            Index(f"ix_{cls.__tablename__}_eligible", "status", "process_after", "created_at"),
            Index(f"ix_{cls.__tablename__}_completed_at", "status", "completed_at"),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.type} ({self.status}, {self.attempts}/{self.max_attempts})>"


class WebhookQueueItem(QueueItemMixin, Base):
    __tablename__ = "webhook_queue"


class InstallRetryItem(QueueItemMixin, Base):
    __tablename__ = "install_retry_queue"


class SyncJob(QueueItemMixin, Base):
    __tablename__ = "sync_queue"
