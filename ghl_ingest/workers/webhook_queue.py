"""
Webhook queue driver - drains webhook_queue on each cron tick.

    cleanup (locks, fingerprints, stale processing) -> batch of 50 -> purge aged rows

INSTALL/UNINSTALL items that hit a busy install lock are handed to
install_retry_queue and the webhook item completes as deferred.
"""
import logging
import time
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.queue import QueueStatus
from ghl_ingest.schemas.api_responses import CronSummary
from ghl_ingest.services.audit import purge_audit_rows
from ghl_ingest.services.queue_store import QueueStore
from ghl_ingest.utils.locks import LockContentionError
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.workers.base import QueueDriver, Outcome

logger = logging.getLogger(__name__)


class WebhookQueueDriver(QueueDriver):
    name = "process_webhooks"

    async def run(self) -> CronSummary:
        started = time.monotonic()
        summary = self._new_summary()

        summary.cleaned_locks = await self.lock_manager.cleanup_expired()
        reclaimed, purged_fingerprints = await self._reclaim_and_purge_fingerprints(
            (self.webhook_queue,)
        )
        summary.reclaimed = reclaimed

        await self._drain(
            self.webhook_queue, self.settings.webhook_batch_size, summary, use_gate=True
        )

        async with self.session_factory() as db:
            purged_items = await self.webhook_queue.purge_aged(
                db,
                (QueueStatus.COMPLETED, QueueStatus.SKIPPED),
                timedelta(hours=self.settings.completed_retention_hours),
            )
            purged_audit = await purge_audit_rows(
                db, timedelta(days=self.settings.audit_retention_days)
            )
            await db.commit()
        summary.cleaned = purged_items + purged_audit + purged_fingerprints

        self._finish(summary, started)
        logger.info(
            "Webhook queue run: processed=%d success=%d failed=%d skipped=%d deferred=%d (%dms)",
            summary.processed, summary.success, summary.failed, summary.skipped,
            summary.deferred, summary.processing_time_ms,
        )
        return summary

    async def _on_lock_contention(
        self,
        db: AsyncSession,
        store: QueueStore,
        item_id: uuid.UUID,
        event_type: str,
        payload: dict,
        webhook_id: Optional[str],
        location_id: Optional[str],
        company_id: Optional[str],
        error: LockContentionError,
    ) -> str:
        retry = await self.install_retry_queue.enqueue(
            db,
            event_type,
            payload,
            webhook_id=webhook_id,
            source="install_retry",
            process_after=utcnow() + self.install_retry_queue.backoff_unit,
            max_attempts=self.settings.max_attempts,
            location_id=location_id or payload.get("locationId"),
            company_id=company_id or payload.get("companyId"),
        )
        await store.mark_completed(db, item_id, {
            "status": Outcome.DEFERRED,
            "detail": "install lock busy",
            "install_retry_id": str(retry.id),
        })
        logger.info(
            "Webhook %s moved to install retry queue: %s", str(item_id)[:8], error,
            extra={"webhook_id": webhook_id, "queue": store.name},
        )
        return Outcome.DEFERRED
