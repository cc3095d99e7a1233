"""
Tests for ghl_ingest/services/queue_store.py - durable queue state machine.
"""
import asyncio
import pytest
from datetime import timedelta

from ghl_ingest.models.queue import QueueStatus, WebhookQueueItem
from ghl_ingest.services.queue_store import QueueStore, ClaimResult
from ghl_ingest.utils.timestamps import utcnow, as_utc


@pytest.fixture
def store():
    return QueueStore(WebhookQueueItem, timedelta(seconds=60), "webhook_queue")


async def _enqueue(db, store, **kwargs):
    item = await store.enqueue(db, kwargs.pop("type", "ContactCreate"), kwargs.pop("payload", {"id": "c1"}), **kwargs)
    await db.commit()
    return item


# ---------------------------------------------------------------------------
# enqueue / dequeue_batch
# ---------------------------------------------------------------------------


class TestEnqueue:
    async def test_new_item_is_pending(self, db, store):
        item = await _enqueue(db, store, webhook_id="wh_1", source="native")
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.PENDING
        assert fresh.attempts == 0
        assert fresh.max_attempts == 3
        assert fresh.webhook_id == "wh_1"
        assert fresh.source == "native"

    async def test_custom_max_attempts(self, db, store):
        item = await _enqueue(db, store, max_attempts=5)
        assert (await store.get(db, item.id)).max_attempts == 5


class TestDequeueBatch:
    async def test_returns_eligible_oldest_first(self, db, store):
        first = await _enqueue(db, store, payload={"id": "1"})
        second = await _enqueue(db, store, payload={"id": "2"})
        items = await store.dequeue_batch(db, 10)
        assert [i.id for i in items] == [first.id, second.id]

    async def test_respects_limit(self, db, store):
        for n in range(5):
            await _enqueue(db, store, payload={"id": str(n)})
        assert len(await store.dequeue_batch(db, 3)) == 3

    async def test_excludes_future_process_after(self, db, store):
        await _enqueue(db, store, process_after=utcnow() + timedelta(minutes=5))
        assert await store.dequeue_batch(db, 10) == []

    async def test_excludes_non_pending_and_exhausted(self, db, store):
        claimed = await _enqueue(db, store)
        exhausted = await _enqueue(db, store)
        await store.mark_processing(db, claimed.id)
        exhausted.attempts = 3
        await db.commit()
        assert await store.dequeue_batch(db, 10) == []

    async def test_does_not_change_status(self, db, store):
        item = await _enqueue(db, store)
        await store.dequeue_batch(db, 10)
        assert (await store.get(db, item.id)).status == QueueStatus.PENDING


# ---------------------------------------------------------------------------
# mark_processing - the claim
# ---------------------------------------------------------------------------


class TestMarkProcessing:
    async def test_claim_increments_attempts(self, db, store):
        item = await _enqueue(db, store)
        assert await store.mark_processing(db, item.id) is ClaimResult.CLAIMED
        await db.commit()
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.PROCESSING
        assert fresh.attempts == 1
        assert fresh.last_attempt is not None

    async def test_second_claim_loses(self, db, store):
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id)
        assert await store.mark_processing(db, item.id) is ClaimResult.ALREADY_CLAIMED

    async def test_claim_accepts_string_id(self, db, store):
        item = await _enqueue(db, store)
        assert await store.mark_processing(db, str(item.id)) is ClaimResult.CLAIMED

    async def test_concurrent_claims_exactly_one_wins(self, session_factory, store):
        async with session_factory() as db:
            item = await _enqueue(db, store)

        async def _claim():
            async with session_factory() as session:
                result = await store.mark_processing(session, item.id)
                await session.commit()
                return result

        results = await asyncio.gather(*(_claim() for _ in range(4)))
        assert results.count(ClaimResult.CLAIMED) == 1
        assert results.count(ClaimResult.ALREADY_CLAIMED) == 3


# ---------------------------------------------------------------------------
# Terminal transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    async def test_completed_stores_result(self, db, store):
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id)
        assert await store.mark_completed(db, item.id, {"status": "processed"})
        await db.commit()
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.COMPLETED
        assert fresh.result == {"status": "processed"}
        assert fresh.completed_at is not None

    async def test_completed_requires_processing(self, db, store):
        item = await _enqueue(db, store)
        assert not await store.mark_completed(db, item.id, {})
        assert (await store.get(db, item.id)).status == QueueStatus.PENDING

    async def test_skipped_records_reason(self, db, store):
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id)
        assert await store.mark_skipped(db, item.id, "duplicate")
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.SKIPPED
        assert fresh.skip_reason == "duplicate"

    async def test_failed_from_pending(self, db, store):
        item = await _enqueue(db, store)
        assert await store.mark_failed(db, item.id, "bad payload")
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.FAILED
        assert fresh.last_error == "bad payload"

    async def test_terminal_rows_are_not_reopened(self, db, store):
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id)
        await store.mark_completed(db, item.id, {})
        assert not await store.mark_skipped(db, item.id, "late")
        assert not await store.mark_failed(db, item.id, "late")
        assert (await store.get(db, item.id)).status == QueueStatus.COMPLETED


# ---------------------------------------------------------------------------
# Backoff, defer, stale reclaim
# ---------------------------------------------------------------------------


class TestRescheduleWithBackoff:
    async def test_linear_backoff(self, db, store):
        now = utcnow()
        item = await _enqueue(db, store)

        await store.mark_processing(db, item.id)
        assert await store.reschedule_with_backoff(db, item.id, "boom", now=now) == QueueStatus.PENDING
        fresh = await store.get(db, item.id)
        assert as_utc(fresh.process_after) == now + timedelta(seconds=60)
        assert fresh.last_error == "boom"

        fresh.process_after = now
        await db.commit()
        await store.mark_processing(db, item.id)
        await store.reschedule_with_backoff(db, item.id, "boom", now=now)
        fresh = await store.get(db, item.id)
        assert fresh.attempts == 2
        assert as_utc(fresh.process_after) == now + timedelta(seconds=120)

    async def test_fails_when_attempts_exhausted(self, db, store):
        item = await _enqueue(db, store, max_attempts=1)
        await store.mark_processing(db, item.id)
        assert await store.reschedule_with_backoff(db, item.id, "boom") == QueueStatus.FAILED
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.FAILED
        assert fresh.attempts == 1
        assert fresh.completed_at is not None

    async def test_ignores_rows_not_processing(self, db, store):
        item = await _enqueue(db, store)
        assert await store.reschedule_with_backoff(db, item.id, "boom") is None

    def test_next_attempt_at_uses_at_least_one_unit(self, store):
        now = utcnow()
        assert store.next_attempt_at(0, now) == now + timedelta(seconds=60)
        assert store.next_attempt_at(3, now) == now + timedelta(seconds=180)


class TestDefer:
    async def test_gives_the_attempt_back(self, db, store):
        now = utcnow()
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id)
        assert await store.defer(db, item.id, timedelta(seconds=30), "lock busy", now=now)
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.PENDING
        assert fresh.attempts == 0
        assert as_utc(fresh.process_after) == now + timedelta(seconds=30)


class TestReclaimStale:
    async def test_requeues_abandoned_processing_rows(self, db, store):
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id, now=utcnow() - timedelta(minutes=10))
        await db.commit()

        assert await store.reclaim_stale(db, timedelta(minutes=5)) == 1
        fresh = await store.get(db, item.id)
        assert fresh.status == QueueStatus.PENDING
        assert fresh.last_error == "processing timed out"

    async def test_fails_abandoned_rows_out_of_attempts(self, db, store):
        item = await _enqueue(db, store, max_attempts=1)
        await store.mark_processing(db, item.id, now=utcnow() - timedelta(minutes=10))
        await db.commit()

        assert await store.reclaim_stale(db, timedelta(minutes=5)) == 1
        assert (await store.get(db, item.id)).status == QueueStatus.FAILED

    async def test_leaves_recent_claims_alone(self, db, store):
        item = await _enqueue(db, store)
        await store.mark_processing(db, item.id)
        await db.commit()
        assert await store.reclaim_stale(db, timedelta(minutes=5)) == 0
        assert (await store.get(db, item.id)).status == QueueStatus.PROCESSING


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


class TestPurgeAndCounts:
    async def test_purges_only_old_terminal_rows(self, db, store):
        old = await _enqueue(db, store)
        recent = await _enqueue(db, store)
        pending = await _enqueue(db, store)
        for item in (old, recent):
            await store.mark_processing(db, item.id)
            await store.mark_completed(db, item.id, {})
        await db.commit()
        (await store.get(db, old.id)).completed_at = utcnow() - timedelta(hours=48)
        await db.commit()

        removed = await store.purge_aged(db, (QueueStatus.COMPLETED,), timedelta(hours=24))
        await db.commit()
        assert removed == 1
        assert await store.get(db, old.id) is None
        assert await store.get(db, recent.id) is not None
        assert await store.get(db, pending.id) is not None

    async def test_count_by_status(self, db, store):
        a = await _enqueue(db, store)
        await _enqueue(db, store)
        await store.mark_processing(db, a.id)
        await db.commit()
        assert await store.count_by_status(db) == {
            QueueStatus.PENDING: 1,
            QueueStatus.PROCESSING: 1,
        }
