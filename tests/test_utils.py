"""
Tests for utility modules: timestamps, structured logging, database sessions, alerting.
"""
import json
import logging
import sys
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from ghl_ingest import database
from ghl_ingest.utils import alerting
from ghl_ingest.utils.alerting import send_alert, AlertType
from ghl_ingest.utils.logging import (
    StructuredJsonFormatter,
    configure_structured_logging,
    set_correlation_id,
    generate_correlation_id,
)
from ghl_ingest.utils.timestamps import as_utc, parse_timestamp


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


class TestParseTimestamp:
    def test_iso_with_z(self):
        assert parse_timestamp("2026-03-01T15:00:00Z") == datetime(2026, 3, 1, 15, tzinfo=timezone.utc)

    def test_iso_with_offset(self):
        assert parse_timestamp("2026-03-01T10:00:00-05:00") == datetime(2026, 3, 1, 15, tzinfo=timezone.utc)

    def test_epoch_millis_and_seconds(self):
        expected = datetime(2026, 3, 1, 15, tzinfo=timezone.utc)
        seconds = int(expected.timestamp())
        assert parse_timestamp(seconds * 1000) == expected
        assert parse_timestamp(seconds) == expected
        assert parse_timestamp(str(seconds * 1000)) == expected

    @pytest.mark.parametrize("value", [None, "", "yesterday", [], {}])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None

    def test_as_utc_naive(self):
        naive = datetime(2026, 3, 1, 15)
        assert as_utc(naive).tzinfo == timezone.utc
        assert as_utc(None) is None


# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------


class TestStructuredJsonFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("ghl_ingest.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_line_with_correlation_id(self):
        set_correlation_id("corr-42")
        try:
            line = StructuredJsonFormatter().format(self._record(queue="webhook_queue", webhook_id="wh_1"))
        finally:
            set_correlation_id(None)
        entry = json.loads(line)
        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "corr-42"
        assert entry["queue"] == "webhook_queue"
        assert entry["webhook_id"] == "wh_1"
        assert entry["logger"] == "ghl_ingest.test"

    def test_unset_extras_omitted(self):
        entry = json.loads(StructuredJsonFormatter().format(self._record()))
        assert "location_id" not in entry

    def test_exception_included(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = logging.LogRecord(
                "ghl_ingest.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: bad payload" in entry["exception"]

    def test_generated_ids_are_unique(self):
        assert generate_correlation_id() != generate_correlation_id()
        assert len(generate_correlation_id()) == 32


class TestConfigureLogging:
    def test_replaces_root_handlers_and_quiets_engine_logs(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_structured_logging("debug")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredJsonFormatter)
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class TestDatabase:
    async def test_dispose_engine_resets_factory(self, settings):
        settings.database_url = "sqlite+aiosqlite://"
        with patch("ghl_ingest.config.get_settings", return_value=settings), \
                patch("ghl_ingest.database.create_async_engine") as create:
            create.return_value.dispose = AsyncMock()
            first = database.get_session_factory()
            assert database.get_session_factory() is first
            await database.dispose_engine()
            create.return_value.dispose.assert_awaited_once()
            assert database.get_session_factory() is not first
            await database.dispose_engine()
        assert create.call_args.kwargs["pool_pre_ping"] is True


# ---------------------------------------------------------------------------
# Alerting
# ---------------------------------------------------------------------------


class TestSendAlert:
    async def test_cooldown_suppresses_repeat(self, mock_redis):
        mock_redis.set = AsyncMock(side_effect=[True, None])
        with patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock) as webhook:
            await send_alert(AlertType.CRON_FATAL, "first")
            await send_alert(AlertType.CRON_FATAL, "second")
        assert webhook.await_count == 1
        key = mock_redis.set.await_args_list[0].args[0]
        assert key == "ghl_ingest:alert_cooldown:cron_fatal"

    async def test_cooldown_override(self, mock_redis):
        with patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock):
            await send_alert(AlertType.TOKEN_REFRESH_FAILED, "x")
        assert mock_redis.set.await_args.kwargs["ex"] == 3600

    async def test_in_memory_fallback_when_redis_down(self, mock_redis):
        mock_redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        alerting._local_cooldowns.clear()
        with patch.object(alerting, "_send_webhook_alert", new_callable=AsyncMock) as webhook:
            await send_alert(AlertType.WEBHOOK_DEAD_LETTER, "first")
            await send_alert(AlertType.WEBHOOK_DEAD_LETTER, "second")
        alerting._local_cooldowns.clear()
        assert webhook.await_count == 1

    async def test_posts_to_webhook_url(self, settings):
        settings.alert_webhook_url = "https://discord.example.com/hook"
        client = MagicMock()
        client.post = AsyncMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        with patch("ghl_ingest.config.get_settings", return_value=settings), \
                patch("httpx.AsyncClient", return_value=client):
            await alerting._send_webhook_alert(
                AlertType.WEBHOOK_DEAD_LETTER, "item failed", "error", "wh_1", {"queue": "webhook_queue"}
            )
        url = client.post.await_args.args[0]
        content = client.post.await_args.kwargs["json"]["content"]
        assert url == "https://discord.example.com/hook"
        assert "webhook_dead_letter" in content
        assert "correlation_id: wh_1" in content
        assert "queue: webhook_queue" in content

    async def test_no_url_no_post(self, settings):
        with patch("ghl_ingest.config.get_settings", return_value=settings), \
                patch("httpx.AsyncClient") as client_cls:
            await alerting._send_webhook_alert(AlertType.CRON_FATAL, "x", "critical", None, None)
        client_cls.assert_not_called()
