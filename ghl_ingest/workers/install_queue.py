"""
Install queue driver - install retries (10 per tick) then sync jobs (5 per tick).

Install retries already passed the dedup gate as webhooks, so they go straight
to the router. A retry that hits the lock again is deferred without spending
an attempt; anything else backs off linearly (attempts * 60s).
"""
import logging
import time
from datetime import timedelta

from ghl_ingest.models.queue import QueueStatus
from ghl_ingest.schemas.api_responses import CronSummary
from ghl_ingest.workers.base import QueueDriver

logger = logging.getLogger(__name__)


class InstallQueueDriver(QueueDriver):
    name = "process_install_queue"

    async def run(self) -> CronSummary:
        started = time.monotonic()
        summary = self._new_summary()

        summary.cleaned_locks = await self.lock_manager.cleanup_expired()
        reclaimed, purged_fingerprints = await self._reclaim_and_purge_fingerprints(
            (self.install_retry_queue, self.sync_queue)
        )
        summary.reclaimed = reclaimed

        await self._drain(
            self.install_retry_queue, self.settings.install_batch_size, summary, use_gate=False
        )
        summary.sync_jobs = await self._drain(
            self.sync_queue, self.settings.sync_batch_size, summary, use_gate=False
        )

        retention = timedelta(hours=self.settings.completed_retention_hours)
        async with self.session_factory() as db:
            purged = 0
            for store in (self.install_retry_queue, self.sync_queue):
                purged += await store.purge_aged(
                    db, (QueueStatus.COMPLETED, QueueStatus.SKIPPED), retention
                )
            await db.commit()
        summary.cleaned = purged + purged_fingerprints

        self._finish(summary, started)
        logger.info(
            "Install queue run: processed=%d success=%d failed=%d deferred=%d sync_jobs=%d (%dms)",
            summary.processed, summary.success, summary.failed, summary.deferred,
            summary.sync_jobs, summary.processing_time_ms,
        )
        return summary
