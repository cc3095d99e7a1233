"""
Webhook deduplication - fingerprint table with a 1-hour window.
Drops GHL redeliveries, test pings, and payloads for tenants we don't know.

Also owns the shared Redis client used for alert cooldowns and heartbeats.
"""
import hashlib
import json
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.models.fingerprint import WebhookFingerprint
from ghl_ingest.models.location import Location
from ghl_ingest.utils.timestamps import utcnow, as_utc

logger = logging.getLogger(__name__)

# Dedup window in seconds (1 hour)
DEDUP_WINDOW_SECONDS = 3600

# Payload keys that make up a content fingerprint when GHL sends no webhookId
_FINGERPRINT_KEYS = (
    "type",
    "id",
    "locationId",
    "companyId",
    "contactId",
    "conversationId",
    "messageId",
    "appointmentId",
    "opportunityId",
    "invoiceId",
    "orderId",
    "status",
    "dateAdded",
    "dateUpdated",
    "timestamp",
)
_NESTED_ID_KEYS = ("contact", "appointment", "message", "opportunity", "invoice", "order", "location")

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from ghl_ingest.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def is_test_payload(payload: Mapping) -> bool:
    return bool(payload.get("test") or payload.get("is_test") or payload.get("isTest"))


def make_fingerprint(payload: Mapping) -> str:
    """
    webhookId when GHL provides one, else a SHA-256 over the identifying fields.
    Equal inputs always give equal fingerprints.
    """
    webhook_id = payload.get("webhookId")
    if webhook_id:
        return f"wh:{webhook_id}"

    components: dict[str, Any] = {}
    for key in _FINGERPRINT_KEYS:
        if payload.get(key) is not None:
            components[key] = payload[key]
    for key in _NESTED_ID_KEYS:
        nested = payload.get(key)
        if isinstance(nested, Mapping):
            components[f"{key}.id"] = nested.get("id")
            if key == "message" and nested.get("body"):
                components["message.body"] = hashlib.sha256(
                    str(nested["body"]).encode()
                ).hexdigest()
            if "status" in nested:
                components[f"{key}.status"] = nested.get("status")

    raw = json.dumps(components, sort_keys=True, default=str)
    return "fp:" + hashlib.sha256(raw.encode()).hexdigest()


async def _tenant_known(db: AsyncSession, location_id: str) -> bool:
    result = await db.execute(
        select(Location.id).where(Location.location_id == location_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def should_process(
    db: AsyncSession,
    payload: Any,
    claimant: Optional[str] = None,
    window_seconds: int = DEDUP_WINDOW_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    """
    Decide whether a payload should be handled.

    Returns False for invalid/test payloads, workflow payloads for an unknown
    location, and fingerprints seen within the window. Accepting records the
    fingerprint; `claimant` (the queue item id) may re-pass its own fingerprint
    on retry.

    Call this before any other writes in `db`: a losing insert rolls the
    session back.
    """
    if not isinstance(payload, Mapping) or not payload:
        logger.info("Dedup gate rejected invalid payload")
        return False
    if is_test_payload(payload):
        logger.info("Dedup gate skipped test payload")
        return False

    location = payload.get("location")
    if isinstance(location, Mapping) and location.get("id"):
        if not await _tenant_known(db, str(location["id"])):
            logger.info("Dedup gate skipped payload for unknown location %s", location["id"])
            return False

    now = now or utcnow()
    fingerprint = make_fingerprint(payload)
    claimant = str(claimant) if claimant is not None else None

    existing = await db.get(WebhookFingerprint, fingerprint, populate_existing=True)
    if existing is not None:
        if as_utc(existing.expires_at) > now:
            if claimant is not None and existing.claimed_by == claimant:
                return True
            logger.info("Duplicate webhook detected: %s", fingerprint[:24])
            return False
        await db.execute(
            delete(WebhookFingerprint).where(
                and_(
                    WebhookFingerprint.fingerprint == fingerprint,
                    WebhookFingerprint.expires_at <= now,
                )
            )
        )
        db.expunge(existing)

    db.add(WebhookFingerprint(
        fingerprint=fingerprint,
        claimed_by=claimant,
        created_at=now,
        expires_at=now + timedelta(seconds=window_seconds),
    ))
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent accept of the same fingerprint won the insert
        await db.rollback()
        logger.info("Duplicate webhook detected (race): %s", fingerprint[:24])
        return False
    return True


async def purge_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Drop fingerprints past their window. Returns count removed."""
    now = now or utcnow()
    result = await db.execute(
        delete(WebhookFingerprint).where(WebhookFingerprint.expires_at <= now)
    )
    return result.rowcount or 0
