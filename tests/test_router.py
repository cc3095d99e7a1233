"""
Tests for ghl_ingest/webhooks/router.py - event type registry and dispatch.
"""
import pytest
from unittest.mock import AsyncMock, patch

from ghl_ingest.webhooks.context import HandlerResult, HandlerStatus
from ghl_ingest.webhooks.router import (
    EventType,
    HANDLERS,
    ACKNOWLEDGED_TYPES,
    verify_registry,
    parse_event_type,
    route,
    infer_event_type,
)


class TestRegistry:
    def test_every_event_type_has_a_handler(self):
        verify_registry()
        assert set(HANDLERS) == set(EventType)

    def test_missing_handler_is_reported(self):
        incomplete = {k: v for k, v in HANDLERS.items() if k != EventType.CONTACT_CREATE}
        with pytest.raises(RuntimeError, match="ContactCreate"):
            verify_registry(incomplete)

    def test_parse_event_type(self):
        assert parse_event_type("INSTALL") is EventType.INSTALL
        assert parse_event_type("agency_sync") is EventType.AGENCY_SYNC
        assert parse_event_type("NoSuchType") is None
        assert parse_event_type(None) is None


# ---------------------------------------------------------------------------
# route()
# ---------------------------------------------------------------------------


class TestRoute:
    async def test_unknown_type_is_ignored(self, ctx):
        result = await route("SomethingNew", {"id": "x"}, ctx)
        assert result.status == HandlerStatus.IGNORED
        assert "SomethingNew" in result.detail

    async def test_missing_type_is_ignored(self, ctx):
        result = await route(None, {}, ctx)
        assert result.status == HandlerStatus.IGNORED

    @pytest.mark.parametrize("event_type", sorted(t.value for t in ACKNOWLEDGED_TYPES)[:5])
    async def test_acknowledged_types(self, ctx, event_type):
        result = await route(event_type, {"id": "x"}, ctx)
        assert result.status == HandlerStatus.ACKNOWLEDGED

    async def test_dispatches_to_registered_handler(self, ctx):
        handler = AsyncMock(return_value=HandlerResult(data={"ok": True}))
        with patch.dict(HANDLERS, {EventType.CONTACT_CREATE: handler}):
            result = await route("ContactCreate", {"id": "c1"}, ctx)
        handler.assert_awaited_once_with(ctx, {"id": "c1"})
        assert result.data == {"ok": True}

    async def test_none_result_becomes_processed(self, ctx):
        handler = AsyncMock(return_value=None)
        with patch.dict(HANDLERS, {EventType.CONTACT_CREATE: handler}):
            result = await route("ContactCreate", {}, ctx)
        assert result.status == HandlerStatus.PROCESSED

    async def test_handler_errors_propagate(self, ctx):
        handler = AsyncMock(side_effect=RuntimeError("db down"))
        with patch.dict(HANDLERS, {EventType.CONTACT_CREATE: handler}):
            with pytest.raises(RuntimeError):
                await route("ContactCreate", {}, ctx)


class TestInferEventType:
    def test_explicit_type_wins(self):
        assert infer_event_type({"type": "ContactUpdate", "installType": "Location"}) == "ContactUpdate"

    def test_install_shape(self):
        assert infer_event_type({"installType": "Location"}) == "INSTALL"

    def test_nested_shapes(self):
        assert infer_event_type({"appointment": {"id": "a1"}}) == "AppointmentUpdate"
        assert infer_event_type({"message": {"direction": "outbound"}}) == "OutboundMessage"
        assert infer_event_type({"message": {"direction": "inbound"}}) == "InboundMessage"

    def test_unrecognised(self):
        assert infer_event_type({"foo": "bar"}) is None
        assert infer_event_type([]) is None
