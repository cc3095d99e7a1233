"""
Tests for ghl_ingest/api/webhooks.py - native webhook ingress, plus signature helpers.
"""
import base64
import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import select

from ghl_ingest.database import get_db
from ghl_ingest.main import app
from ghl_ingest.models.queue import WebhookQueueItem, QueueStatus
from ghl_ingest.services.queue_store import webhook_queue
from ghl_ingest.utils.timestamps import utcnow
from ghl_ingest.utils.webhook_signatures import validate_ghl_signature, compute_payload_hash

URL = "/api/webhooks/ghl/native"


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def public_pem(private_key) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def _sign(private_key, body: bytes) -> str:
    return base64.b64encode(private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())).decode()


@pytest.fixture
def signing_settings(settings, public_pem):
    settings.verify_webhook_signatures = True
    settings.ghl_public_key = public_pem
    with patch("ghl_ingest.api.webhooks.get_settings", return_value=settings):
        yield settings


@pytest.fixture
async def client(session_factory):
    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_test_db
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def _body(**overrides) -> bytes:
    payload = {
        "type": "ContactCreate",
        "webhookId": "wh_123",
        "locationId": "loc_abc",
        "id": "c_1",
        "firstName": "Jane",
        "timestamp": utcnow().isoformat(),
    }
    payload.update(overrides)
    return json.dumps(payload).encode()


async def _queued(session_factory) -> list[WebhookQueueItem]:
    async with session_factory() as db:
        return list((await db.execute(select(WebhookQueueItem))).scalars().all())


# ---------------------------------------------------------------------------
# Signature helpers
# ---------------------------------------------------------------------------


class TestValidateSignature:
    def test_valid(self, private_key, public_pem):
        body = b'{"type":"INSTALL"}'
        assert validate_ghl_signature(public_pem, _sign(private_key, body), body)

    def test_tampered_body(self, private_key, public_pem):
        signature = _sign(private_key, b'{"type":"INSTALL"}')
        assert not validate_ghl_signature(public_pem, signature, b'{"type":"UNINSTALL"}')

    def test_escaped_newlines_in_pem(self, private_key, public_pem):
        body = b"{}"
        assert validate_ghl_signature(public_pem.replace("\n", "\\n"), _sign(private_key, body), body)

    def test_garbage_signature(self, public_pem):
        assert not validate_ghl_signature(public_pem, "not base64!!", b"{}")

    def test_missing_key_or_signature(self, private_key):
        assert not validate_ghl_signature("", "abc", b"{}")
        assert not validate_ghl_signature("pem", None, b"{}")

    def test_payload_hash(self):
        assert compute_payload_hash(b"abc") == compute_payload_hash(b"abc")
        assert len(compute_payload_hash(b"abc")) == 64


# ---------------------------------------------------------------------------
# POST /api/webhooks/ghl/native
# ---------------------------------------------------------------------------


class TestNativeWebhook:
    async def test_signed_webhook_is_queued(self, client, session_factory, private_key, signing_settings):
        body = _body()
        response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})

        assert response.status_code == 200
        assert response.json() == {"success": True, "webhookId": "wh_123", "type": "ContactCreate", "queued": True}

        items = await _queued(session_factory)
        assert len(items) == 1
        assert items[0].status == QueueStatus.PENDING
        assert items[0].source == "native"
        assert items[0].location_id == "loc_abc"
        assert items[0].payload["firstName"] == "Jane"

    async def test_missing_signature_rejected(self, client, session_factory, signing_settings):
        response = await client.post(URL, content=_body())
        assert response.status_code == 401
        assert await _queued(session_factory) == []

    async def test_invalid_signature_rejected(self, client, session_factory, private_key, signing_settings):
        signature = _sign(private_key, _body(firstName="Original"))
        response = await client.post(URL, content=_body(firstName="Tampered"), headers={"x-wh-signature": signature})
        assert response.status_code == 401
        assert await _queued(session_factory) == []

    async def test_verification_off_still_requires_header(self, client, session_factory, settings):
        with patch("ghl_ingest.api.webhooks.get_settings", return_value=settings):
            assert (await client.post(URL, content=_body())).status_code == 401
            response = await client.post(URL, content=_body(), headers={"x-wh-signature": "anything"})
        assert response.status_code == 200
        assert len(await _queued(session_factory)) == 1

    async def test_stale_webhook_acknowledged_not_queued(self, client, session_factory, private_key, signing_settings):
        body = _body(timestamp=(utcnow() - timedelta(minutes=10)).isoformat())
        response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "Webhook too old"
        assert await _queued(session_factory) == []

    async def test_future_timestamp_rejected(self, client, session_factory, private_key, signing_settings):
        body = _body(timestamp=(utcnow() + timedelta(minutes=10)).isoformat())
        response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})
        assert response.json()["error"] == "Webhook too old"

    async def test_invalid_json_acknowledged(self, client, private_key, signing_settings):
        body = b"{not json"
        response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})
        assert response.status_code == 200
        assert response.json() == {"success": False, "queued": False, "error": "Invalid payload"}

    async def test_missing_webhook_id_is_generated(self, client, session_factory, private_key, signing_settings):
        payload = json.loads(_body())
        del payload["webhookId"]
        body = json.dumps(payload).encode()
        response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})
        webhook_id = response.json()["webhookId"]
        assert webhook_id
        assert (await _queued(session_factory))[0].webhook_id == webhook_id

    async def test_missing_type_is_inferred(self, client, session_factory, private_key, signing_settings):
        payload = json.loads(_body())
        del payload["type"]
        payload["installType"] = "Location"
        body = json.dumps(payload).encode()
        response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})
        assert response.json()["type"] == "INSTALL"

    async def test_enqueue_error_acknowledged(self, client, session_factory, private_key, signing_settings):
        body = _body()
        with patch(
            "ghl_ingest.api.webhooks.webhook_queue.enqueue",
            new_callable=AsyncMock,
            side_effect=RuntimeError("db down"),
        ):
            response = await client.post(URL, content=body, headers={"x-wh-signature": _sign(private_key, body)})
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "Internal error"

    async def test_response_carries_correlation_id(self, client, private_key, signing_settings):
        body = _body()
        response = await client.post(
            URL, content=body,
            headers={"x-wh-signature": _sign(private_key, body), "X-Correlation-ID": "corr-1"},
        )
        assert response.headers["X-Correlation-ID"] == "corr-1"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_readiness_reports_queue_depth(self, client, session_factory):
        async with session_factory() as db:
            await webhook_queue.enqueue(db, "ContactCreate", {"id": "c"})
            await db.commit()

        response = await client.get("/health/ready")
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"] == {"database": True, "redis": True}
        assert data["queues"]["webhook_queue"] == {"pending": 1}
