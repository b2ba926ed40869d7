"""Dedup record stored per (consumer_group, event_id)."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class DedupStatus(str, Enum):
    # Claimed by a worker that has not finished; expires after the claim TTL
    PROCESSING = "processing"
    COMPLETED = "completed"


class DedupRecord(BaseModel):
    consumer_group: str
    event_id: str
    status: DedupStatus
    processed_at: datetime
    ttl_expiry: datetime
    processed_by: str | None = None
