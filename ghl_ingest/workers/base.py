"""
Shared cron driver machinery - claim, route, classify, transition.

Every item gets its own session. The claim is committed on its own so other
drivers see it immediately; handler writes and the final status transition
commit together. One item's failure never touches another's.
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ghl_ingest.config import Settings, get_settings
from ghl_ingest.models.queue import QueueStatus
from ghl_ingest.schemas.api_responses import CronSummary
from ghl_ingest.services.audit import record_metric
from ghl_ingest.services.queue_store import QueueStore, ClaimResult, build_queues
from ghl_ingest.utils.alerting import send_alert, AlertType
from ghl_ingest.utils.dedup import should_process, purge_expired
from ghl_ingest.utils.locks import InstallLockManager, LockContentionError
from ghl_ingest.utils.logging import set_correlation_id
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.webhooks.context import HandlerContext
from ghl_ingest.webhooks.router import route

logger = logging.getLogger(__name__)


class Outcome:
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RETRY = "retry"
    FAILED = "failed"
    NOT_CLAIMED = "not_claimed"


class QueueDriver(ABC):
    """Base for cron drivers. Subclasses implement run()."""

    name = "driver"

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        lock_manager: Optional[InstallLockManager] = None,
        downstream=None,
        queues: Optional[tuple[QueueStore, QueueStore, QueueStore]] = None,
    ):
        if session_factory is None:
            from ghl_ingest.database import get_session_factory
            session_factory = get_session_factory()
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.webhook_queue, self.install_retry_queue, self.sync_queue = queues or build_queues(self.settings)
        self.lock_manager = lock_manager or InstallLockManager(
            session_factory, self.settings.install_lock_ttl_seconds
        )
        if downstream is None:
            from ghl_ingest.integrations.downstream import build_downstream_client
            downstream = build_downstream_client()
        self.downstream = downstream

    @abstractmethod
    async def run(self) -> CronSummary:
        ...

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _reclaim_and_purge_fingerprints(self, stores: tuple[QueueStore, ...]) -> tuple[int, int]:
        timeout = timedelta(seconds=self.settings.processing_timeout_seconds)
        async with self.session_factory() as db:
            reclaimed = 0
            for store in stores:
                reclaimed += await store.reclaim_stale(db, timeout)
            purged = await purge_expired(db)
            await db.commit()
        return reclaimed, purged

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def _drain(
        self,
        store: QueueStore,
        limit: int,
        summary: CronSummary,
        use_gate: bool,
    ) -> int:
        """Process one eligible batch from `store`. Returns items attempted."""
        async with self.session_factory() as db:
            items = await store.dequeue_batch(db, limit)
            item_ids = [item.id for item in items]

        if not item_ids:
            return 0

        semaphore = asyncio.Semaphore(max(self.settings.cron_concurrency, 1))

        async def _bounded(item_id: uuid.UUID) -> str:
            async with semaphore:
                return await self._process_item(store, item_id, use_gate)

        outcomes = await asyncio.gather(
            *(_bounded(item_id) for item_id in item_ids), return_exceptions=True
        )

        attempted = 0
        for item_id, outcome in zip(item_ids, outcomes):
            if isinstance(outcome, BaseException):
                # Transition itself failed; stale reclaim will pick the row up
                logger.error(
                    "%s item %s could not be transitioned: %s", store.name, str(item_id)[:8], outcome,
                    exc_info=outcome,
                )
                summary.failed += 1
                attempted += 1
                continue
            if outcome == Outcome.NOT_CLAIMED:
                continue
            attempted += 1
            if outcome == Outcome.COMPLETED:
                summary.success += 1
            elif outcome == Outcome.SKIPPED:
                summary.skipped += 1
            elif outcome == Outcome.DEFERRED:
                summary.deferred += 1
            else:
                summary.failed += 1

        summary.processed += attempted
        return attempted

    def _context(self, db: AsyncSession, webhook_id: Optional[str]) -> HandlerContext:
        return HandlerContext(
            session=db,
            settings=self.settings,
            webhook_id=webhook_id,
            lock_manager=self.lock_manager,
            downstream=self.downstream,
            sync_queue=self.sync_queue,
        )

    async def _process_item(self, store: QueueStore, item_id: uuid.UUID, use_gate: bool) -> str:
        async with self.session_factory() as db:
            claim = await store.mark_processing(db, item_id)
            await db.commit()
            if claim is not ClaimResult.CLAIMED:
                logger.debug("%s item %s already claimed", store.name, str(item_id)[:8])
                return Outcome.NOT_CLAIMED

            item = await store.get(db, item_id)
            # Plain values survive a rollback; ORM attributes don't
            event_type = item.type
            payload = item.payload or {}
            webhook_id = item.webhook_id
            attempts = item.attempts
            location_id = item.location_id
            company_id = item.company_id

            set_correlation_id(webhook_id or str(item_id))
            log_extra = {"queue": store.name, "item_id": str(item_id), "event_type": event_type}
            started = time.monotonic()

            def _elapsed_ms() -> int:
                return int((time.monotonic() - started) * 1000)

            try:
                if use_gate:
                    if not await should_process(
                        db, payload, claimant=str(item_id),
                        window_seconds=self.settings.dedup_window_seconds,
                    ):
                        await store.mark_skipped(db, item_id, "duplicate, test or invalid payload")
                        record_metric(
                            db, queue=store.name, event_type=event_type, outcome=Outcome.SKIPPED,
                            success=True, webhook_id=webhook_id, attempts=attempts,
                            duration_ms=_elapsed_ms(),
                        )
                        await db.commit()
                        return Outcome.SKIPPED
                    await db.commit()

                result = await asyncio.wait_for(
                    route(event_type, payload, self._context(db, webhook_id)),
                    timeout=self.settings.handler_timeout_seconds,
                )
                await store.mark_completed(db, item_id, result.as_dict())
                record_metric(
                    db, queue=store.name, event_type=event_type, outcome=Outcome.COMPLETED,
                    success=True, webhook_id=webhook_id, attempts=attempts,
                    duration_ms=_elapsed_ms(),
                )
                await db.commit()
                logger.info(
                    "%s item %s completed (%s)", store.name, str(item_id)[:8], result.status,
                    extra=log_extra,
                )
                return Outcome.COMPLETED

            except LockContentionError as e:
                await db.rollback()
                outcome = await self._on_lock_contention(
                    db, store, item_id, event_type, payload, webhook_id, location_id, company_id, e
                )
                record_metric(
                    db, queue=store.name, event_type=event_type, outcome=outcome,
                    success=False, webhook_id=webhook_id, attempts=attempts,
                    duration_ms=_elapsed_ms(), error_message=str(e),
                )
                await db.commit()
                return outcome

            except Exception as e:
                error_text = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                logger.error(
                    "%s item %s failed on attempt %d: %s", store.name, str(item_id)[:8], attempts, error_text,
                    exc_info=True, extra=log_extra,
                )
                await db.rollback()
                status = await store.reschedule_with_backoff(db, item_id, error_text)
                outcome = Outcome.FAILED if status == QueueStatus.FAILED else Outcome.RETRY
                record_metric(
                    db, queue=store.name, event_type=event_type, outcome=outcome,
                    success=False, webhook_id=webhook_id, attempts=attempts,
                    duration_ms=_elapsed_ms(), error_message=error_text,
                )
                await db.commit()
                if outcome == Outcome.FAILED:
                    await send_alert(
                        AlertType.WEBHOOK_DEAD_LETTER,
                        f"{store.name} item {item_id} ({event_type}) failed after {attempts} attempts: {error_text[:200]}",
                        correlation_id=webhook_id,
                        extra={"queue": store.name, "item_id": str(item_id), "event_type": event_type},
                    )
                return outcome

            finally:
                set_correlation_id(None)

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
        """Default: put the item back without charging the attempt."""
        await store.defer(db, item_id, store.backoff_unit, str(error))
        logger.info("%s item %s deferred: %s", store.name, str(item_id)[:8], error)
        return Outcome.DEFERRED

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_summary(self) -> CronSummary:
        return CronSummary(timestamp=utcnow())

    @staticmethod
    def _finish(summary: CronSummary, started: float) -> CronSummary:
        summary.processing_time_ms = int((time.monotonic() - started) * 1000)
        summary.timestamp = utcnow()
        return summary
