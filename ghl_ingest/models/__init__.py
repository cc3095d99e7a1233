"""
Database models - import all models here so Alembic can discover them.
"""
from ghl_ingest.models.queue import WebhookQueueItem, InstallRetryItem, SyncJob
from ghl_ingest.models.install_lock import InstallLock
from ghl_ingest.models.fingerprint import WebhookFingerprint
from ghl_ingest.models.location import Location
from ghl_ingest.models.contact import Contact
from ghl_ingest.models.appointment import Appointment
from ghl_ingest.models.conversation import Conversation, Message
from ghl_ingest.models.audit import WebhookMetric, AppEvent

__all__ = [
    "WebhookQueueItem",
    "InstallRetryItem",
    "SyncJob",
    "InstallLock",
    "WebhookFingerprint",
    "Location",
    "Contact",
    "Appointment",
    "Conversation",
    "Message",
    "WebhookMetric",
    "AppEvent",
]
