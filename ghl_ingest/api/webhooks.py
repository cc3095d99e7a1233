"""
GHL native webhook ingress.

Security layers (in order):
1. RSA signature (x-wh-signature) over the raw body
2. Replay window on the payload timestamp
3. Enqueue - nothing is processed inline

GHL retries anything that isn't a 2xx, so past the signature check every
outcome (stale, malformed, internal error) is answered with 200.
"""
import json
import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.config import get_settings
from ghl_ingest.database import get_db
from ghl_ingest.schemas.webhook_payloads import NativeWebhookEnvelope, WebhookAck
from ghl_ingest.services.queue_store import webhook_queue
from ghl_ingest.utils.timestamps import utcnow, parse_timestamp
from ghl_ingest.utils.webhook_signatures import (
    SIGNATURE_HEADER,
    validate_ghl_signature,
    compute_payload_hash,
)
from ghl_ingest.webhooks.router import infer_event_type

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks/ghl", tags=["webhooks"])


def _ack(ack: WebhookAck) -> JSONResponse:
    return JSONResponse(status_code=200, content=ack.body())


def _validate_signature(request: Request, body: bytes) -> None:
    """Raise 401 when the signature is missing, or invalid while verification is on."""
    settings = get_settings()
    signature = request.headers.get(SIGNATURE_HEADER)
    client_ip = request.client.host if request.client else "unknown"

    if not signature:
        logger.warning("GHL webhook without signature from %s", client_ip)
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    if settings.verify_webhook_signatures and not validate_ghl_signature(
        settings.ghl_public_key, signature, body
    ):
        logger.warning(
            "Invalid GHL webhook signature: ip=%s body_sha256=%s",
            client_ip, compute_payload_hash(body)[:16],
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/native")
async def ghl_native_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    _validate_signature(request, body)
    settings = get_settings()

    try:
        data = json.loads(body)
        envelope = NativeWebhookEnvelope.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning("Unparseable GHL webhook body: %s", str(e)[:200])
        return _ack(WebhookAck(success=False, error="Invalid payload"))

    sent_at = parse_timestamp(envelope.timestamp)
    if sent_at is not None and abs(utcnow() - sent_at) > timedelta(seconds=settings.webhook_max_age_seconds):
        logger.warning(
            "Rejected stale GHL webhook %s (sent %s)", envelope.webhookId, sent_at.isoformat(),
            extra={"webhook_id": envelope.webhookId, "event_type": envelope.type},
        )
        return _ack(WebhookAck(success=False, webhookId=envelope.webhookId, type=envelope.type, error="Webhook too old"))

    webhook_id = envelope.webhookId or str(uuid.uuid4())
    event_type = envelope.type or infer_event_type(data) or "unknown"

    try:
        await webhook_queue.enqueue(
            db,
            event_type,
            data,
            webhook_id=webhook_id,
            source="native",
            max_attempts=settings.max_attempts,
            location_id=envelope.locationId,
            company_id=envelope.companyId,
        )
        await db.commit()
    except Exception as e:
        logger.error(
            "Failed to enqueue GHL webhook %s: %s", webhook_id, str(e), exc_info=True,
            extra={"webhook_id": webhook_id, "event_type": event_type},
        )
        await db.rollback()
        return _ack(WebhookAck(success=False, webhookId=webhook_id, type=event_type, error="Internal error"))

    return _ack(WebhookAck(success=True, webhookId=webhook_id, type=event_type, queued=True))
