"""In-memory dedup store with the same claim/confirm/release semantics as Redis."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from outbox_pipeline.dedup.models import DedupRecord, DedupStatus
from outbox_pipeline.error_handling import raise_store_error
from outbox_pipeline.protocols import DedupStoreProtocol


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryDedupStore(DedupStoreProtocol):
    def __init__(
        self,
        *,
        dedup_ttl_seconds: int = 86400,
        claim_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self._clock = clock
        self._records: dict[tuple[str, str], DedupRecord] = {}
        self._lock = asyncio.Lock()
        # Flip to simulate an outage
        self.available = True

    def _check_available(self, operation: str) -> None:
        if not self.available:
            raise_store_error(
                service="outbox-pipeline",
                operation=operation,
                store="dedup",
                message="Dedup store unavailable",
            )

    def _live(self, key: tuple[str, str], now: datetime) -> DedupRecord | None:
        record = self._records.get(key)
        if record is not None and record.ttl_expiry <= now:
            del self._records[key]
            return None
        return record

    async def try_claim(self, consumer_group: str, event_id: str) -> bool:
        self._check_available("try_claim")
        key = (consumer_group, event_id)
        async with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._records[key] = DedupRecord(
                consumer_group=consumer_group,
                event_id=event_id,
                status=DedupStatus.PROCESSING,
                processed_at=now,
                ttl_expiry=now + timedelta(seconds=self.claim_ttl_seconds),
            )
            return True

    async def confirm(self, consumer_group: str, event_id: str) -> None:
        self._check_available("confirm")
        async with self._lock:
            now = self._clock()
            self._records[(consumer_group, event_id)] = DedupRecord(
                consumer_group=consumer_group,
                event_id=event_id,
                status=DedupStatus.COMPLETED,
                processed_at=now,
                ttl_expiry=now + timedelta(seconds=self.dedup_ttl_seconds),
            )

    async def release(self, consumer_group: str, event_id: str) -> None:
        self._check_available("release")
        async with self._lock:
            self._records.pop((consumer_group, event_id), None)

    async def get(self, consumer_group: str, event_id: str) -> DedupRecord | None:
        self._check_available("get")
        async with self._lock:
            return self._live((consumer_group, event_id), self._clock())
