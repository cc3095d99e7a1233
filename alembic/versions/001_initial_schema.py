"""Initial schema - queues, locks, fingerprints, tenant mirrors, audit.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QUEUE_TABLES = ("webhook_queue", "install_retry_queue", "sync_queue")


def _create_queue_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("webhook_id", sa.String(100)),
        sa.Column("type", sa.String(60), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("source", sa.String(30)),
        sa.Column("location_id", sa.String(64)),
        sa.Column("company_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("process_after", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_attempt", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("skip_reason", sa.String(200)),
        sa.Column("result", postgresql.JSONB),
    )
    op.create_index(f"ix_{name}_webhook_id", name, ["webhook_id"])
    op.create_index(f"ix_{name}_eligible", name, ["status", "process_after", "created_at"])
    op.create_index(f"ix_{name}_completed_at", name, ["status", "completed_at"])


def upgrade() -> None:
    for name in QUEUE_TABLES:
        _create_queue_table(name)

    # Install locks
    op.create_table(
        "install_locks",
        sa.Column("lock_key", sa.String(140), primary_key=True),
        sa.Column("company_id", sa.String(64)),
        sa.Column("location_id", sa.String(64)),
        sa.Column("holder", sa.String(100), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_install_locks_expires_at", "install_locks", ["expires_at"])

    # Dedup fingerprints
    op.create_table(
        "webhook_fingerprints",
        sa.Column("fingerprint", sa.String(140), primary_key=True),
        sa.Column("claimed_by", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_fingerprints_expires_at", "webhook_fingerprints", ["expires_at"])

    # Locations (tenants)
    op.create_table(
        "locations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("location_id", sa.String(64), unique=True),
        sa.Column("company_id", sa.String(64)),
        sa.Column("is_company_level", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("name", sa.String(255)),
        sa.Column("email", sa.String(255)),
        sa.Column("stripe_product_id", sa.String(100)),
        sa.Column("app_installed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("install_state", sa.String(20)),
        sa.Column("install_type", sa.String(20)),
        sa.Column("installed_at", sa.DateTime(timezone=True)),
        sa.Column("installed_by", sa.String(64)),
        sa.Column("install_started", sa.DateTime(timezone=True)),
        sa.Column("install_started_by", sa.String(100)),
        sa.Column("install_completed", sa.DateTime(timezone=True)),
        sa.Column("plan_id", sa.String(100)),
        sa.Column("is_whitelabel_company", sa.Boolean),
        sa.Column("whitelabel_details", postgresql.JSONB),
        sa.Column("setup_triggered_by", sa.String(100)),
        sa.Column("setup_triggered_at", sa.DateTime(timezone=True)),
        sa.Column("initial_setup_complete", sa.Boolean),
        sa.Column("setup_failed", sa.Boolean),
        sa.Column("setup_error", sa.Text),
        sa.Column("needs_manual_setup", sa.Boolean),
        sa.Column("oauth", postgresql.JSONB),
        sa.Column("has_company_oauth", sa.Boolean),
        sa.Column("needs_reauth", sa.Boolean),
        sa.Column("reauth_reason", sa.String(255)),
        sa.Column("uninstalled_at", sa.DateTime(timezone=True)),
        sa.Column("uninstalled_by", sa.String(64)),
        sa.Column("uninstall_reason", sa.String(255)),
        sa.Column("last_webhook_update", sa.DateTime(timezone=True)),
        sa.Column("created_by_webhook", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_locations_company_id", "locations", ["company_id"])
    op.create_index("ix_locations_company_level", "locations", ["company_id", "is_company_level"])

    # Contacts
    op.create_table(
        "contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("ghl_contact_id", sa.String(64), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("full_name", sa.String(200)),
        sa.Column("phone", sa.String(30)),
        sa.Column("tags", postgresql.JSONB),
        sa.Column("source", sa.String(100)),
        sa.Column("date_of_birth", sa.String(30)),
        sa.Column("address1", sa.String(255)),
        sa.Column("city", sa.String(100)),
        sa.Column("state", sa.String(100)),
        sa.Column("country", sa.String(100)),
        sa.Column("postal_code", sa.String(20)),
        sa.Column("company_name", sa.String(255)),
        sa.Column("website", sa.String(255)),
        sa.Column("dnd", sa.Boolean, server_default=sa.false()),
        sa.Column("dnd_settings", postgresql.JSONB),
        sa.Column("custom_fields", postgresql.JSONB),
        sa.Column("deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("deleted_by_webhook", sa.String(100)),
        sa.Column("last_webhook_update", sa.DateTime(timezone=True)),
        sa.Column("created_by_webhook", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ghl_contact_id", "location_id", name="uq_contacts_ghl_id_location"),
    )
    op.create_index("ix_contacts_location_id", "contacts", ["location_id"])

    # Appointments
    op.create_table(
        "appointments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("ghl_appointment_id", sa.String(64), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("contact_id", sa.String(64)),
        sa.Column("calendar_id", sa.String(64)),
        sa.Column("group_id", sa.String(64)),
        sa.Column("title", sa.String(255)),
        sa.Column("appointment_status", sa.String(30)),
        sa.Column("assigned_user_id", sa.String(64)),
        sa.Column("users", postgresql.JSONB),
        sa.Column("notes", sa.Text),
        sa.Column("source", sa.String(100)),
        sa.Column("address", sa.String(255)),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        sa.Column("deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("deleted_by_webhook", sa.String(100)),
        sa.Column("last_webhook_update", sa.DateTime(timezone=True)),
        sa.Column("created_by_webhook", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ghl_appointment_id", "location_id", name="uq_appointments_ghl_id_location"),
    )
    op.create_index("ix_appointments_location_id", "appointments", ["location_id"])

    # Conversations
    op.create_table(
        "conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("ghl_conversation_id", sa.String(64), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("contacts.id")),
        sa.Column("type", sa.String(20)),
        sa.Column("unread_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_message_date", sa.DateTime(timezone=True)),
        sa.Column("last_message_body", sa.String(200)),
        sa.Column("last_message_type", sa.String(30)),
        sa.Column("last_message_direction", sa.String(10)),
        sa.Column("last_outbound_message_action", sa.String(30)),
        sa.Column("contact_name", sa.String(200)),
        sa.Column("contact_email", sa.String(255)),
        sa.Column("contact_phone", sa.String(30)),
        sa.Column("last_webhook_update", sa.DateTime(timezone=True)),
        sa.Column("created_by_webhook", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ghl_conversation_id", "location_id", name="uq_conversations_ghl_id_location"),
    )
    op.create_index("ix_conversations_location_id", "conversations", ["location_id"])

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("ghl_message_id", sa.String(64), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("ghl_conversation_id", sa.String(64)),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True)),
        sa.Column("type", sa.Integer),
        sa.Column("message_type", sa.String(30)),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("content_type", sa.String(50)),
        sa.Column("source", sa.String(30)),
        sa.Column("body", sa.Text),
        sa.Column("status", sa.String(20)),
        sa.Column("email_message_id", sa.String(100)),
        sa.Column("needs_content_fetch", sa.Boolean, server_default=sa.false()),
        sa.Column("media_url", sa.Text),
        sa.Column("media_type", sa.String(50)),
        sa.Column("meta", postgresql.JSONB),
        sa.Column("user_id", sa.String(64)),
        sa.Column("read", sa.Boolean, server_default=sa.false()),
        sa.Column("date_added", sa.DateTime(timezone=True)),
        sa.Column("created_by_webhook", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("ghl_message_id", "location_id", name="uq_messages_ghl_id_location"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])

    # Audit
    op.create_table(
        "webhook_metrics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("webhook_id", sa.String(100)),
        sa.Column("queue", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(60), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_metrics_created_at", "webhook_metrics", ["created_at"])

    op.create_table(
        "app_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("location_id", sa.String(64)),
        sa.Column("company_id", sa.String(64)),
        sa.Column("webhook_id", sa.String(100)),
        sa.Column("occurred_at", sa.DateTime(timezone=True)),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_app_events_created_at", "app_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("app_events")
    op.drop_table("webhook_metrics")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("appointments")
    op.drop_table("contacts")
    op.drop_table("locations")
    op.drop_table("webhook_fingerprints")
    op.drop_table("install_locks")
    for name in reversed(QUEUE_TABLES):
        op.drop_table(name)
