"""Outbox row value types shared by every store implementation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    # Terminal: publish attempts exhausted, row dead-lettered
    FAILED = "FAILED"


@dataclass
class OutboxRow:
    """Snapshot of an outbox row as seen by the relay."""

    id: int
    event_id: str
    event_type: str
    topic: str
    partition_key: str
    envelope: str
    status: OutboxStatus
    created_at: datetime
    sent_at: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    lease_token: str | None = None
    lease_expires_at: datetime | None = None

    def is_leased(self, now: datetime) -> bool:
        return (
            self.lease_token is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id)
