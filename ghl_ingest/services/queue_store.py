"""
Durable queue store - one implementation over the three queue tables.

State machine:
    pending -> processing -> completed | skipped | failed | pending (retry)
    processing -> pending | failed          (stale reclaim)

The claim (mark_processing) is a conditional UPDATE, so two workers racing on
the same row resolve in the database: exactly one sees CLAIMED.
Retry backoff is linear: process_after = now + attempts * backoff_unit.
"""
import enum
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Type, Union

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.queue import (
    QueueStatus,
    DEFAULT_MAX_ATTEMPTS,
    WebhookQueueItem,
    InstallRetryItem,
    SyncJob,
)
from ghl_ingest.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

ItemId = Union[uuid.UUID, str]


class ClaimResult(str, enum.Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


def _as_uuid(item_id: ItemId) -> uuid.UUID:
    return item_id if isinstance(item_id, uuid.UUID) else uuid.UUID(str(item_id))


class QueueStore:
    """Queue operations for one table. Callers own the session and commit."""

    def __init__(self, model: Type, backoff_unit: timedelta, name: Optional[str] = None):
        self.model = model
        self.backoff_unit = backoff_unit
        self.name = name or model.__tablename__

    def __repr__(self) -> str:
        return f"<QueueStore {self.name}>"

    async def enqueue(
        self,
        db: AsyncSession,
        type: str,
        payload: Optional[dict],
        *,
        webhook_id: Optional[str] = None,
        source: Optional[str] = None,
        process_after: Optional[datetime] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        location_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ):
        now = utcnow()
        item = self.model(
            id=uuid.uuid4(),
            webhook_id=webhook_id,
            type=type,
            payload=payload,
            status=QueueStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            source=source,
            location_id=location_id,
            company_id=company_id,
            created_at=now,
            process_after=process_after or now,
        )
        db.add(item)
        await db.flush()
        logger.info(
            "Enqueued %s on %s (webhook=%s)", type, self.name, webhook_id,
            extra={"queue": self.name, "event_type": type, "webhook_id": webhook_id},
        )
        return item

    async def get(self, db: AsyncSession, item_id: ItemId):
        return await db.get(self.model, _as_uuid(item_id), populate_existing=True)

    async def dequeue_batch(
        self,
        db: AsyncSession,
        limit: int,
        now: Optional[datetime] = None,
    ) -> list:
        """Eligible items, oldest first. Does not change their status."""
        now = now or utcnow()
        model = self.model
        result = await db.execute(
            select(model)
            .where(
                and_(
                    model.status == QueueStatus.PENDING,
                    model.process_after <= now,
                    model.attempts < model.max_attempts,
                )
            )
            .order_by(model.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_processing(
        self,
        db: AsyncSession,
        item_id: ItemId,
        now: Optional[datetime] = None,
    ) -> ClaimResult:
        """Atomic compare-and-set pending -> processing."""
        now = now or utcnow()
        model = self.model
        result = await db.execute(
            update(model)
            .where(
                and_(
                    model.id == _as_uuid(item_id),
                    model.status == QueueStatus.PENDING,
                    model.attempts < model.max_attempts,
                )
            )
            .values(
                status=QueueStatus.PROCESSING,
                attempts=model.attempts + 1,
                last_attempt=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return ClaimResult.CLAIMED
        return ClaimResult.ALREADY_CLAIMED

    async def _transition(
        self,
        db: AsyncSession,
        item_id: ItemId,
        from_statuses: Iterable[str],
        **values: Any,
    ) -> bool:
        model = self.model
        result = await db.execute(
            update(model)
            .where(
                and_(
                    model.id == _as_uuid(item_id),
                    model.status.in_(tuple(from_statuses)),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_completed(
        self,
        db: AsyncSession,
        item_id: ItemId,
        result: Optional[dict] = None,
    ) -> bool:
        return await self._transition(
            db, item_id, (QueueStatus.PROCESSING,),
            status=QueueStatus.COMPLETED,
            completed_at=utcnow(),
            result=result,
        )

    async def mark_failed(self, db: AsyncSession, item_id: ItemId, error: str) -> bool:
        return await self._transition(
            db, item_id, (QueueStatus.PENDING, QueueStatus.PROCESSING),
            status=QueueStatus.FAILED,
            completed_at=utcnow(),
            last_error=str(error)[:2000],
        )

    async def mark_skipped(self, db: AsyncSession, item_id: ItemId, reason: str) -> bool:
        return await self._transition(
            db, item_id, (QueueStatus.PENDING, QueueStatus.PROCESSING),
            status=QueueStatus.SKIPPED,
            completed_at=utcnow(),
            skip_reason=str(reason)[:200],
        )

    def next_attempt_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        """Linear backoff: attempt N waits N units."""
        now = now or utcnow()
        return now + self.backoff_unit * max(attempts, 1)

    async def reschedule_with_backoff(
        self,
        db: AsyncSession,
        item_id: ItemId,
        error: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Put a failed attempt back on the queue, or fail it for good once the
        attempt budget is spent. Returns the resulting status (None if the row
        was not in processing).
        """
        now = now or utcnow()
        item = await self.get(db, item_id)
        if item is None or item.status != QueueStatus.PROCESSING:
            return None

        error = str(error)[:2000]
        if item.attempts >= item.max_attempts:
            changed = await self._transition(
                db, item_id, (QueueStatus.PROCESSING,),
                status=QueueStatus.FAILED,
                completed_at=now,
                last_error=error,
            )
            if changed:
                logger.error(
                    "%s item %s failed permanently after %d attempts: %s",
                    self.name, str(item.id)[:8], item.attempts, error[:100],
                    extra={"queue": self.name, "item_id": str(item.id)},
                )
            return QueueStatus.FAILED if changed else None

        process_after = self.next_attempt_at(item.attempts, now)
        changed = await self._transition(
            db, item_id, (QueueStatus.PROCESSING,),
            status=QueueStatus.PENDING,
            process_after=process_after,
            last_error=error,
        )
        if changed:
            logger.info(
                "%s item %s retry %d/%d scheduled for %s",
                self.name, str(item.id)[:8], item.attempts, item.max_attempts,
                process_after.isoformat(),
            )
        return QueueStatus.PENDING if changed else None

    async def defer(
        self,
        db: AsyncSession,
        item_id: ItemId,
        delay: timedelta,
        reason: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Return a claimed item to pending after `delay` without charging the attempt.
        Used for lock contention, which is not the item's fault.
        """
        now = now or utcnow()
        item = await self.get(db, item_id)
        if item is None or item.status != QueueStatus.PROCESSING:
            return False
        return await self._transition(
            db, item_id, (QueueStatus.PROCESSING,),
            status=QueueStatus.PENDING,
            attempts=max(item.attempts - 1, 0),
            process_after=now + delay,
            last_error=str(reason)[:2000],
        )

    async def reclaim_stale(
        self,
        db: AsyncSession,
        timeout: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        """Recover rows left in processing by a crashed worker."""
        now = now or utcnow()
        cutoff = now - timeout
        model = self.model
        stale = and_(model.status == QueueStatus.PROCESSING, model.last_attempt < cutoff)

        exhausted = await db.execute(
            update(model)
            .where(and_(stale, model.attempts >= model.max_attempts))
            .values(
                status=QueueStatus.FAILED,
                completed_at=now,
                last_error="processing timed out",
            )
            .execution_options(synchronize_session=False)
        )
        requeued = await db.execute(
            update(model)
            .where(stale)
            .values(
                status=QueueStatus.PENDING,
                process_after=now,
                last_error="processing timed out",
            )
            .execution_options(synchronize_session=False)
        )
        total = (exhausted.rowcount or 0) + (requeued.rowcount or 0)
        if total:
            logger.warning(
                "Reclaimed %d stale %s items (%d failed, %d requeued)",
                total, self.name, exhausted.rowcount or 0, requeued.rowcount or 0,
            )
        return total

    async def purge_aged(
        self,
        db: AsyncSession,
        statuses: Iterable[str],
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        model = self.model
        result = await db.execute(
            delete(model).where(
                and_(
                    model.status.in_(tuple(statuses)),
                    model.completed_at < now - older_than,
                )
            )
        )
        return result.rowcount or 0

    async def count_by_status(self, db: AsyncSession) -> dict[str, int]:
        model = self.model
        result = await db.execute(
            select(model.status, func.count()).group_by(model.status)
        )
        return {status: count for status, count in result.all()}


# Backoff units
WEBHOOK_BACKOFF = timedelta(seconds=60)
INSTALL_RETRY_BACKOFF = timedelta(seconds=60)
SYNC_BACKOFF = timedelta(seconds=300)

webhook_queue = QueueStore(WebhookQueueItem, WEBHOOK_BACKOFF, "webhook_queue")
install_retry_queue = QueueStore(InstallRetryItem, INSTALL_RETRY_BACKOFF, "install_retry_queue")
sync_queue = QueueStore(SyncJob, SYNC_BACKOFF, "sync_queue")


def build_queues(settings) -> tuple[QueueStore, QueueStore, QueueStore]:
    """Queue stores with backoff units taken from settings."""
    return (
        QueueStore(WebhookQueueItem, timedelta(seconds=settings.webhook_backoff_seconds), "webhook_queue"),
        QueueStore(InstallRetryItem, timedelta(seconds=settings.webhook_backoff_seconds), "install_retry_queue"),
        QueueStore(SyncJob, timedelta(seconds=settings.sync_backoff_seconds), "sync_queue"),
    )
