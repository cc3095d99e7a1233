"""
API response schemas for cron and health endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class CronSummary(BaseModel):
    """Result of one cron driver run."""
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    cleaned: int = 0
    processing_time_ms: int = Field(0, alias="processingTimeMs")
    timestamp: datetime

    # Queue-specific counters
    cleaned_locks: Optional[int] = None
    reclaimed: Optional[int] = None
    sync_jobs: Optional[int] = None
    refreshed: Optional[int] = None

    model_config = {"populate_by_name": True}

    def body(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
