"""
App lifecycle webhooks - INSTALL and UNINSTALL.

Both run under the install lock for (companyId, locationId). If the lock is
busy, LockContentionError propagates and the cron driver decides where the
item goes next; nothing here queues retries itself.

Location install:
    check state -> upsert as in_progress (committed) -> refresh tokens if due
    -> setup_location -> complete | setup_failed
Setup failures are recorded on the location and never fail the webhook. A
retry of the webhook that left the row in_progress resumes the install.

Company install:
    upsert the company-level row as complete -> enqueue agency_sync (+5s)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy import select, update, and_

from ghl_ingest.integrations.downstream import DownstreamError
from ghl_ingest.models.location import Location, InstallState
from ghl_ingest.services.audit import record_app_event
from ghl_ingest.services.oauth_tokens import (
    token_needs_refresh,
    apply_token_response,
    record_refresh_failure,
)
from ghl_ingest.utils.alerting import send_alert, AlertType
from ghl_ingest.utils.timestamps import utcnow, as_utc, parse_timestamp
from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus
from ghl_ingest.webhooks.handlers.locations import get_location, get_or_create_location

logger = logging.getLogger(__name__)

AGENCY_SYNC = "agency_sync"


class InstallCheck(NamedTuple):
    is_installing: bool
    is_complete: bool


def check_install_state(
    location: Optional[Location],
    stale_after: timedelta,
    now: Optional[datetime] = None,
    webhook_id: Optional[str] = None,
) -> InstallCheck:
    """
    An in_progress install older than stale_after is treated as abandoned,
    so a crashed install can be retried. An in_progress install started by
    webhook_id itself is a retry of that same webhook, not a concurrent install.
    """
    if location is None:
        return InstallCheck(False, False)
    now = now or utcnow()
    started = as_utc(location.install_started)
    installing = (
        location.install_state == InstallState.IN_PROGRESS
        and started is not None
        and now - started < stale_after
        and not (webhook_id and location.install_started_by == webhook_id)
    )
    complete = bool(location.app_installed) and location.install_state == InstallState.COMPLETE
    return InstallCheck(installing, complete)


@asynccontextmanager
async def _locked(ctx: HandlerContext, company_id: Optional[str], location_id: Optional[str]):
    """
    Hold the install lock and commit our writes before it is released,
    so the next holder always sees them.
    """
    async with ctx.lock_manager.hold(company_id, location_id, ctx.webhook_id or "anonymous"):
        try:
            yield
            await ctx.session.commit()
        except BaseException:
            await ctx.session.rollback()
            raise


# ---------------------------------------------------------------------------
# INSTALL
# ---------------------------------------------------------------------------

async def handle_install(ctx: HandlerContext, payload: dict) -> HandlerResult:
    install_type = payload.get("installType")
    company_id = payload.get("companyId")
    location_id = payload.get("locationId")

    if install_type == "Location" and location_id:
        async with _locked(ctx, company_id, location_id):
            return await _install_location(ctx, payload, location_id, company_id)
    if install_type == "Company" and company_id:
        async with _locked(ctx, company_id, None):
            return await _install_company(ctx, payload, company_id)

    logger.warning(
        "INSTALL with unsupported shape: type=%s company=%s location=%s",
        install_type, company_id, location_id,
        extra={"webhook_id": ctx.webhook_id},
    )
    return HandlerResult(HandlerStatus.SKIPPED, "unsupported install payload")


async def _install_location(
    ctx: HandlerContext,
    payload: dict,
    location_id: str,
    company_id: Optional[str],
) -> HandlerResult:
    settings = ctx.settings
    now = utcnow()

    location, _ = await get_or_create_location(ctx, location_id)
    state = check_install_state(
        location, timedelta(seconds=settings.install_stale_after_seconds), now,
        webhook_id=ctx.webhook_id,
    )
    if state.is_installing:
        logger.info("Location %s install already in progress", location_id)
        return HandlerResult(HandlerStatus.SKIPPED, "install in progress")
    if state.is_complete:
        logger.info("Location %s already installed", location_id)
        return HandlerResult(HandlerStatus.SKIPPED, "already installed")

    resuming = (
        location.install_state == InstallState.IN_PROGRESS
        and location.install_started_by is not None
        and location.install_started_by == ctx.webhook_id
    )
    if resuming:
        logger.info("Location %s resuming install for %s", location_id, ctx.webhook_id)

    location.company_id = company_id
    location.name = payload.get("companyName") or location.name or f"Location {location_id}"
    location.app_installed = True
    location.installed_at = parse_timestamp(payload.get("timestamp")) or now
    location.installed_by = payload.get("userId")
    location.install_type = "Location"
    location.is_whitelabel_company = bool(payload.get("isWhitelabelCompany"))
    location.whitelabel_details = payload.get("whitelabelDetails")
    location.plan_id = payload.get("planId")
    location.install_state = InstallState.IN_PROGRESS
    location.install_started = now
    location.install_started_by = ctx.webhook_id
    location.setup_failed = None
    location.setup_error = None
    location.needs_manual_setup = None
    location.uninstalled_at = None
    location.uninstalled_by = None
    location.uninstall_reason = None
    location.last_webhook_update = now
    location.updated_at = now

    if not resuming:
        record_app_event(
            ctx.session, "install",
            location_id=location_id,
            company_id=company_id,
            webhook_id=ctx.webhook_id,
            occurred_at=location.installed_at,
            data={"installType": "Location", "planId": payload.get("planId"), "userId": payload.get("userId")},
        )
    # in_progress is visible before the slow setup call
    await ctx.session.commit()

    await _refresh_tokens_if_due(ctx, location)
    outcome = await _run_setup(ctx, location)
    await ctx.session.flush()

    logger.info(
        "Location %s install processed: %s", location_id, outcome,
        extra={"location_id": location_id, "company_id": company_id, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(data={"location_id": location_id, "install_state": outcome})


async def _refresh_tokens_if_due(ctx: HandlerContext, location: Location) -> None:
    if ctx.downstream is None:
        return
    if not token_needs_refresh(location.oauth, ctx.settings.token_refresh_buffer_hours):
        return
    try:
        data = await asyncio.wait_for(
            ctx.downstream.refresh_location_token(location),
            timeout=ctx.settings.downstream_timeout_seconds,
        )
        apply_token_response(location, data)
    except Exception as e:
        logger.warning("Token refresh during install failed for %s: %s", location.location_id, str(e))
        record_refresh_failure(location, e)


async def _run_setup(ctx: HandlerContext, location: Location) -> str:
    """Trigger location setup and record the outcome on the row. Never raises for setup errors."""
    now = utcnow()
    location.setup_triggered_by = ctx.webhook_id
    location.setup_triggered_at = now

    if ctx.downstream is None:
        location.install_state = InstallState.SETUP_FAILED
        location.setup_error = "No downstream client configured"
        location.needs_manual_setup = True
        return location.install_state

    try:
        await asyncio.wait_for(
            ctx.downstream.setup_location(location.location_id, full_sync=True),
            timeout=ctx.settings.downstream_timeout_seconds,
        )
    except DownstreamError as e:
        logger.error("Location setup failed for %s: %s", location.location_id, str(e))
        location.install_state = InstallState.SETUP_FAILED
        location.setup_failed = True
        location.setup_error = e.body[:2000] if e.body else str(e)
    except Exception as e:
        # Transport errors and timeouts
        logger.error("Failed to trigger location setup for %s: %s", location.location_id, repr(e))
        location.install_state = InstallState.SETUP_FAILED
        location.setup_error = str(e) or type(e).__name__
        location.needs_manual_setup = True
    else:
        location.install_state = InstallState.COMPLETE
        location.initial_setup_complete = True
        location.install_completed = utcnow()
        return location.install_state

    await send_alert(
        AlertType.INSTALL_SETUP_FAILED,
        f"Setup failed for location {location.location_id}: {location.setup_error}",
        severity="warning",
        extra={"location_id": location.location_id},
    )
    return location.install_state


async def _get_company_row(ctx: HandlerContext, company_id: str) -> Optional[Location]:
    result = await ctx.session.execute(
        select(Location).where(
            and_(
                Location.company_id == company_id,
                Location.location_id.is_(None),
                Location.is_company_level.is_(True),
            )
        )
    )
    return result.scalar_one_or_none()


async def _install_company(ctx: HandlerContext, payload: dict, company_id: str) -> HandlerResult:
    now = utcnow()
    company = await _get_company_row(ctx, company_id)
    if company is not None and company.app_installed:
        logger.info("Company %s already installed", company_id)
        return HandlerResult(HandlerStatus.SKIPPED, "already installed")

    if company is None:
        company = Location(
            location_id=None,
            company_id=company_id,
            is_company_level=True,
            created_by_webhook=ctx.webhook_id,
            created_at=now,
        )
        ctx.session.add(company)

    company.name = payload.get("companyName") or company.name or "Company-Level Install"
    company.app_installed = True
    company.installed_at = parse_timestamp(payload.get("timestamp")) or now
    company.installed_by = payload.get("userId")
    company.install_type = "Company"
    company.plan_id = payload.get("planId")
    company.install_state = InstallState.COMPLETE
    company.install_completed = now
    company.uninstalled_at = None
    company.last_webhook_update = now
    company.updated_at = now

    record_app_event(
        ctx.session, "install",
        company_id=company_id,
        webhook_id=ctx.webhook_id,
        occurred_at=company.installed_at,
        data={"installType": "Company", "planId": payload.get("planId")},
    )

    job = await ctx.sync_queue.enqueue(
        ctx.session,
        AGENCY_SYNC,
        {"companyId": company_id},
        webhook_id=ctx.webhook_id,
        source="install_webhook",
        process_after=now + timedelta(seconds=ctx.settings.agency_sync_delay_seconds),
        company_id=company_id,
    )
    logger.info(
        "Company %s install processed, agency sync queued", company_id,
        extra={"company_id": company_id, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(data={"company_id": company_id, "sync_job_id": str(job.id)})


# ---------------------------------------------------------------------------
# UNINSTALL
# ---------------------------------------------------------------------------

async def handle_uninstall(ctx: HandlerContext, payload: dict) -> HandlerResult:
    company_id = payload.get("companyId")
    location_id = payload.get("locationId")

    if location_id:
        async with _locked(ctx, company_id, location_id):
            return await _uninstall_location(ctx, payload, location_id, company_id)
    if company_id:
        async with _locked(ctx, company_id, None):
            return await _uninstall_company(ctx, payload, company_id)
    return HandlerResult(HandlerStatus.SKIPPED, "missing companyId and locationId")


async def _uninstall_location(
    ctx: HandlerContext,
    payload: dict,
    location_id: str,
    company_id: Optional[str],
) -> HandlerResult:
    location = await get_location(ctx.session, location_id)
    if location is None:
        logger.info("UNINSTALL for unknown location %s", location_id)
        return HandlerResult(HandlerStatus.SKIPPED, "location not found")

    now = utcnow()
    occurred_at = parse_timestamp(payload.get("timestamp")) or now

    location.app_installed = False
    location.uninstalled_at = occurred_at
    location.uninstalled_by = payload.get("userId") or "unknown"
    location.uninstall_reason = payload.get("reason") or "User uninstalled"

    # Force a fresh OAuth on reinstall
    location.oauth = None
    location.has_company_oauth = None
    location.installed_at = None
    location.installed_by = None
    location.install_type = None
    location.install_state = None
    location.install_started = None
    location.install_started_by = None
    location.install_completed = None
    location.is_whitelabel_company = None
    location.whitelabel_details = None
    location.plan_id = None
    location.setup_triggered_at = None
    location.setup_triggered_by = None
    location.initial_setup_complete = None
    location.setup_failed = None
    location.setup_error = None
    location.needs_manual_setup = None
    location.needs_reauth = None
    location.reauth_reason = None
    location.last_webhook_update = now
    location.updated_at = now

    record_app_event(
        ctx.session, "uninstall",
        location_id=location_id,
        company_id=company_id,
        webhook_id=ctx.webhook_id,
        occurred_at=occurred_at,
        data={"userId": payload.get("userId"), "reason": payload.get("reason"), "planId": payload.get("planId")},
    )
    await ctx.session.flush()

    logger.info(
        "Location %s uninstalled", location_id,
        extra={"location_id": location_id, "company_id": company_id, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(data={"location_id": location_id, "uninstalled": True})


async def _uninstall_company(ctx: HandlerContext, payload: dict, company_id: str) -> HandlerResult:
    now = utcnow()
    occurred_at = parse_timestamp(payload.get("timestamp")) or now

    company = await _get_company_row(ctx, company_id)
    if company is not None:
        company.app_installed = False
        company.uninstalled_at = occurred_at
        company.oauth = None
        company.installed_at = None
        company.install_type = None
        company.install_state = None
        company.plan_id = None
        company.last_webhook_update = now
        company.updated_at = now

    children = await ctx.session.execute(
        update(Location)
        .where(and_(Location.company_id == company_id, Location.location_id.isnot(None)))
        .values(
            has_company_oauth=False,
            needs_reauth=True,
            reauth_reason="Company app was uninstalled",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    record_app_event(
        ctx.session, "uninstall",
        company_id=company_id,
        webhook_id=ctx.webhook_id,
        occurred_at=occurred_at,
        data={"userId": payload.get("userId"), "reason": payload.get("reason")},
    )
    await ctx.session.flush()

    logger.info(
        "Company %s uninstalled, %d locations flagged for reauth", company_id, children.rowcount or 0,
        extra={"company_id": company_id, "webhook_id": ctx.webhook_id},
    )
    return HandlerResult(data={
        "company_id": company_id,
        "uninstalled": company is not None,
        "locations_flagged": children.rowcount or 0,
    })
