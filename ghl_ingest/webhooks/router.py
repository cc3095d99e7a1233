"""
Event router - maps a GHL event type tag to exactly one handler.

EventType is closed. Every member must appear in HANDLERS; the module refuses
to import otherwise, so adding a type without deciding how to handle it fails
at startup instead of silently dropping events.
"""
import enum
import logging
from typing import Awaitable, Callable, Optional

from ghl_ingest.webhooks.context import HandlerContext, HandlerResult, HandlerStatus
from ghl_ingest.webhooks.handlers import (
    appointments,
    contacts,
    general,
    installs,
    locations,
    messages,
    sync,
)

logger = logging.getLogger(__name__)

Handler = Callable[[HandlerContext, dict], Awaitable[Optional[HandlerResult]]]


class EventType(str, enum.Enum):
    # Contacts
    CONTACT_CREATE = "ContactCreate"
    CONTACT_UPDATE = "ContactUpdate"
    CONTACT_DELETE = "ContactDelete"
    CONTACT_DND_UPDATE = "ContactDndUpdate"
    CONTACT_TAG_UPDATE = "ContactTagUpdate"
    # Appointments
    APPOINTMENT_CREATE = "AppointmentCreate"
    APPOINTMENT_UPDATE = "AppointmentUpdate"
    APPOINTMENT_DELETE = "AppointmentDelete"
    # Conversations
    INBOUND_MESSAGE = "InboundMessage"
    OUTBOUND_MESSAGE = "OutboundMessage"
    CONVERSATION_UNREAD_UPDATE = "ConversationUnreadUpdate"
    CONVERSATION_PROVIDER_OUTBOUND_MESSAGE = "ConversationProviderOutboundMessage"
    LC_EMAIL_STATS = "LCEmailStats"
    # Locations / app lifecycle
    LOCATION_CREATE = "LocationCreate"
    LOCATION_UPDATE = "LocationUpdate"
    INSTALL = "INSTALL"
    UNINSTALL = "UNINSTALL"
    PLAN_CHANGE = "PLAN_CHANGE"
    EXTERNAL_AUTH_CONNECTED = "EXTERNAL_AUTH_CONNECTED"
    # Opportunities
    OPPORTUNITY_CREATE = "OpportunityCreate"
    OPPORTUNITY_UPDATE = "OpportunityUpdate"
    OPPORTUNITY_DELETE = "OpportunityDelete"
    OPPORTUNITY_STAGE_UPDATE = "OpportunityStageUpdate"
    OPPORTUNITY_STATUS_UPDATE = "OpportunityStatusUpdate"
    OPPORTUNITY_MONETARY_VALUE_UPDATE = "OpportunityMonetaryValueUpdate"
    OPPORTUNITY_ASSIGNED_TO_UPDATE = "OpportunityAssignedToUpdate"
    # Tasks / notes
    TASK_CREATE = "TaskCreate"
    TASK_COMPLETE = "TaskComplete"
    TASK_DELETE = "TaskDelete"
    NOTE_CREATE = "NoteCreate"
    NOTE_DELETE = "NoteDelete"
    # Invoices / orders / products
    INVOICE_CREATE = "InvoiceCreate"
    INVOICE_UPDATE = "InvoiceUpdate"
    INVOICE_DELETE = "InvoiceDelete"
    INVOICE_VOID = "InvoiceVoid"
    INVOICE_PAID = "InvoicePaid"
    INVOICE_PARTIALLY_PAID = "InvoicePartiallyPaid"
    ORDER_CREATE = "OrderCreate"
    ORDER_STATUS_UPDATE = "OrderStatusUpdate"
    PRODUCT_CREATE = "ProductCreate"
    PRODUCT_UPDATE = "ProductUpdate"
    PRODUCT_DELETE = "ProductDelete"
    PRICE_CREATE = "PriceCreate"
    PRICE_UPDATE = "PriceUpdate"
    PRICE_DELETE = "PriceDelete"
    # Misc
    USER_CREATE = "UserCreate"
    CAMPAIGN_STATUS_UPDATE = "CampaignStatusUpdate"
    OBJECT_SCHEMA_CREATE = "ObjectSchemaCreate"
    UPDATE_CUSTOM_OBJECT = "UpdateCustomObject"
    RECORD_CREATE = "RecordCreate"
    RECORD_UPDATE = "RecordUpdate"
    DELETE_RECORD = "DeleteRecord"
    ASSOCIATION_CREATED = "AssociationCreated"
    ASSOCIATION_UPDATED = "AssociationUpdated"
    ASSOCIATION_DELETED = "AssociationDeleted"
    RELATION_CREATE = "RelationCreate"
    RELATION_DELETE = "RelationDelete"
    # Sync queue jobs
    AGENCY_SYNC = "agency_sync"


# Received but intentionally not mirrored
ACKNOWLEDGED_TYPES = frozenset({
    EventType.CONVERSATION_PROVIDER_OUTBOUND_MESSAGE,
    EventType.LC_EMAIL_STATS,
    EventType.EXTERNAL_AUTH_CONNECTED,
    EventType.OPPORTUNITY_CREATE,
    EventType.OPPORTUNITY_UPDATE,
    EventType.OPPORTUNITY_DELETE,
    EventType.OPPORTUNITY_STAGE_UPDATE,
    EventType.OPPORTUNITY_STATUS_UPDATE,
    EventType.OPPORTUNITY_MONETARY_VALUE_UPDATE,
    EventType.OPPORTUNITY_ASSIGNED_TO_UPDATE,
    EventType.TASK_CREATE,
    EventType.TASK_COMPLETE,
    EventType.TASK_DELETE,
    EventType.NOTE_CREATE,
    EventType.NOTE_DELETE,
    EventType.INVOICE_CREATE,
    EventType.INVOICE_UPDATE,
    EventType.INVOICE_DELETE,
    EventType.INVOICE_VOID,
    EventType.INVOICE_PAID,
    EventType.INVOICE_PARTIALLY_PAID,
    EventType.ORDER_CREATE,
    EventType.ORDER_STATUS_UPDATE,
    EventType.PRODUCT_CREATE,
    EventType.PRODUCT_UPDATE,
    EventType.PRODUCT_DELETE,
    EventType.PRICE_CREATE,
    EventType.PRICE_UPDATE,
    EventType.PRICE_DELETE,
    EventType.USER_CREATE,
    EventType.CAMPAIGN_STATUS_UPDATE,
    EventType.OBJECT_SCHEMA_CREATE,
    EventType.UPDATE_CUSTOM_OBJECT,
    EventType.RECORD_CREATE,
    EventType.RECORD_UPDATE,
    EventType.DELETE_RECORD,
    EventType.ASSOCIATION_CREATED,
    EventType.ASSOCIATION_UPDATED,
    EventType.ASSOCIATION_DELETED,
    EventType.RELATION_CREATE,
    EventType.RELATION_DELETE,
})

HANDLERS: dict[EventType, Handler] = {
    EventType.CONTACT_CREATE: contacts.handle_contact_create,
    EventType.CONTACT_UPDATE: contacts.handle_contact_update,
    EventType.CONTACT_DELETE: contacts.handle_contact_delete,
    EventType.CONTACT_DND_UPDATE: contacts.handle_contact_dnd_update,
    EventType.CONTACT_TAG_UPDATE: contacts.handle_contact_tag_update,
    EventType.APPOINTMENT_CREATE: appointments.handle_appointment_create,
    EventType.APPOINTMENT_UPDATE: appointments.handle_appointment_update,
    EventType.APPOINTMENT_DELETE: appointments.handle_appointment_delete,
    EventType.INBOUND_MESSAGE: messages.handle_inbound_message,
    EventType.OUTBOUND_MESSAGE: messages.handle_outbound_message,
    EventType.CONVERSATION_UNREAD_UPDATE: messages.handle_conversation_unread_update,
    EventType.LOCATION_CREATE: locations.handle_location_upsert,
    EventType.LOCATION_UPDATE: locations.handle_location_upsert,
    EventType.PLAN_CHANGE: locations.handle_plan_change,
    EventType.INSTALL: installs.handle_install,
    EventType.UNINSTALL: installs.handle_uninstall,
    EventType.AGENCY_SYNC: sync.handle_agency_sync,
    **{event_type: general.acknowledge for event_type in ACKNOWLEDGED_TYPES},
}


def verify_registry(handlers: dict = HANDLERS) -> None:
    """Raise if any EventType has no handler."""
    unmapped = [t.value for t in EventType if t not in handlers]
    if unmapped:
        raise RuntimeError(f"Event types without a handler: {', '.join(unmapped)}")


verify_registry()


def parse_event_type(value: Optional[str]) -> Optional[EventType]:
    if not value:
        return None
    try:
        return EventType(value)
    except ValueError:
        return None


async def route(event_type: Optional[str], payload: dict, ctx: HandlerContext) -> HandlerResult:
    """Dispatch to the registered handler. Handler exceptions propagate."""
    parsed = parse_event_type(event_type)
    if parsed is None:
        logger.warning(
            "Unknown webhook type: %s", event_type,
            extra={"event_type": event_type, "webhook_id": ctx.webhook_id},
        )
        return HandlerResult(HandlerStatus.IGNORED, f"unknown event type: {event_type}")

    result = await HANDLERS[parsed](ctx, payload)
    return result or HandlerResult()


def infer_event_type(payload: dict) -> Optional[str]:
    """Best-effort type for payloads that arrive without a "type" field."""
    if not isinstance(payload, dict):
        return None
    if payload.get("type"):
        return payload["type"]
    if payload.get("installType"):
        return EventType.INSTALL.value
    if isinstance(payload.get("appointment"), dict):
        return EventType.APPOINTMENT_UPDATE.value
    if isinstance(payload.get("message"), dict):
        direction = payload["message"].get("direction")
        return (EventType.OUTBOUND_MESSAGE if direction == "outbound" else EventType.INBOUND_MESSAGE).value
    return None
