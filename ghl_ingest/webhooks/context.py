"""
What a type handler receives, and what it hands back.
"""
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ghl_ingest.config import Settings


class HandlerStatus:
    PROCESSED = "processed"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    ACKNOWLEDGED = "acknowledged"


@dataclass
class HandlerResult:
    status: str = HandlerStatus.PROCESSED
    detail: Optional[str] = None
    data: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        out: dict[str, Any] = {"status": self.status}
        if self.detail:
            out["detail"] = self.detail
        if self.data:
            out.update(self.data)
        return out


@dataclass
class HandlerContext:
    session: AsyncSession
    settings: Settings
    webhook_id: Optional[str] = None
    lock_manager: Any = None  # InstallLockManager
    downstream: Any = None  # DownstreamClient
    sync_queue: Any = None  # QueueStore for sync jobs
