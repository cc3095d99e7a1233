"""
Token refresh driver - refreshes location OAuth tokens that expire within the buffer.
A failed refresh is recorded on the location (oauth.lastRefreshError) and never stops the batch.
"""
import asyncio
import logging
import time
import uuid
from itertools import islice

from sqlalchemy import select, and_, or_

from ghl_ingest.models.location import Location
from ghl_ingest.schemas.api_responses import CronSummary
from ghl_ingest.services.oauth_tokens import (
    token_needs_refresh,
    apply_token_response,
    record_refresh_failure,
)
from ghl_ingest.utils.alerting import send_alert, AlertType
from ghl_ingest.workers.base import QueueDriver

logger = logging.getLogger(__name__)


class TokenRefreshDriver(QueueDriver):
    name = "refresh_tokens"

    async def run(self) -> CronSummary:
        started = time.monotonic()
        summary = self._new_summary()
        summary.refreshed = 0

        async with self.session_factory() as db:
            due = await self._due_location_ids(db)

        semaphore = asyncio.Semaphore(max(self.settings.cron_concurrency, 1))

        async def _bounded(location_pk: uuid.UUID) -> bool:
            async with semaphore:
                return await self._refresh_one(location_pk)

        outcomes = await asyncio.gather(*(_bounded(pk) for pk in due), return_exceptions=True)
        for outcome in outcomes:
            summary.processed += 1
            if outcome is True:
                summary.success += 1
                summary.refreshed += 1
            else:
                if isinstance(outcome, BaseException):
                    logger.error("Token refresh bookkeeping failed: %s", outcome, exc_info=outcome)
                summary.failed += 1

        self._finish(summary, started)
        logger.info(
            "Token refresh run: due=%d refreshed=%d failed=%d (%dms)",
            len(due), summary.refreshed, summary.failed, summary.processing_time_ms,
        )
        return summary

    async def _due_location_ids(self, db) -> list[uuid.UUID]:
        """
        Candidates are narrowed in SQL; expiry lives inside the oauth JSON, so
        the buffer check runs here on (id, oauth) pairs only.
        """
        result = await db.execute(
            select(Location.id, Location.oauth)
            .where(
                and_(
                    Location.app_installed.is_(True),
                    Location.location_id.isnot(None),
                    Location.oauth.isnot(None),
                    or_(Location.needs_reauth.is_(None), Location.needs_reauth.is_(False)),
                )
            )
            .order_by(Location.updated_at)
        )
        due = (
            location_pk for location_pk, oauth in result
            if token_needs_refresh(oauth, self.settings.token_refresh_buffer_hours)
        )
        return list(islice(due, self.settings.token_refresh_batch_size))

    async def _refresh_one(self, location_pk: uuid.UUID) -> bool:
        async with self.session_factory() as db:
            location = await db.get(Location, location_pk)
            if location is None or not token_needs_refresh(
                location.oauth, self.settings.token_refresh_buffer_hours
            ):
                return True
            try:
                data = await asyncio.wait_for(
                    self.downstream.refresh_location_token(location),
                    timeout=self.settings.handler_timeout_seconds,
                )
            except Exception as e:
                logger.warning(
                    "Token refresh failed for location %s: %s", location.location_id, str(e),
                    extra={"location_id": location.location_id},
                )
                record_refresh_failure(location, e)
                await db.commit()
                await send_alert(
                    AlertType.TOKEN_REFRESH_FAILED,
                    f"Token refresh failed for location {location.location_id}: {str(e)[:200]}",
                    severity="warning",
                    extra={"location_id": location.location_id},
                )
                return False

            apply_token_response(location, data)
            await db.commit()
            logger.info("Refreshed tokens for location %s", location.location_id)
            return True
