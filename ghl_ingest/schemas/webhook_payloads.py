"""
Webhook payload schemas - the GHL native webhook envelope.
Only the envelope is validated; the event body is stored as-is on the queue.
"""
from typing import Any, Optional, Union
from pydantic import BaseModel, ConfigDict


class NativeWebhookEnvelope(BaseModel):
    """Fields every GHL marketplace webhook may carry. Unknown keys are kept."""
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    webhookId: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None
    locationId: Optional[str] = None
    companyId: Optional[str] = None
    appId: Optional[str] = None
    versionId: Optional[str] = None


class WebhookAck(BaseModel):
    success: bool
    webhookId: Optional[str] = None
    type: Optional[str] = None
    queued: bool = False
    error: Optional[str] = None

    def body(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
