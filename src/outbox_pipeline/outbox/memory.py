"""
In-memory outbox store for tests and local development.

Mirrors the SQL store's lease semantics under a single asyncio lock. Appends go
through an ``InMemoryTransaction`` so that rolled-back work never reaches the
relay.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import Any
from uuid import uuid4

from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_handling import raise_store_error
from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.outbox.models import OutboxRow, OutboxStatus
from outbox_pipeline.outbox.protocols import OutboxStoreProtocol

logger = create_service_logger("outbox_pipeline.outbox.memory")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryTransaction:
    """Buffers appended rows until the block exits without an exception."""

    def __init__(self, store: InMemoryOutboxStore) -> None:
        self._store = store
        self._active = False
        self._pending: list[OutboxRow] = []

    def in_transaction(self) -> bool:
        return self._active

    async def __aenter__(self) -> InMemoryTransaction:
        self._active = True
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._active = False
        pending, self._pending = self._pending, []
        if exc_type is None:
            await self._store._commit(pending)

    def _stage(self, row: OutboxRow) -> None:
        self._pending.append(row)

    def _staged_event_ids(self) -> set[str]:
        return {row.event_id for row in self._pending}


class InMemoryOutboxStore(OutboxStoreProtocol):
    def __init__(
        self,
        codec: EnvelopeCodec | None = None,
        clock: Callable[[], datetime] = _utcnow,
        service_name: str = "outbox-pipeline",
    ) -> None:
        self._codec = codec or EnvelopeCodec(service_name=service_name)
        self._clock = clock
        self._service_name = service_name
        self._rows: dict[int, OutboxRow] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    def transaction(self) -> InMemoryTransaction:
        return InMemoryTransaction(self)

    async def append(self, tx: Any, envelope: EventEnvelope, topic: str) -> int:
        if not isinstance(tx, InMemoryTransaction) or not tx.in_transaction():
            raise_store_error(
                service=self._service_name,
                operation="append",
                store="outbox",
                message="Outbox append requires an active transaction",
                event_id=envelope.event_id,
            )

        encoded = self._codec.encode(envelope).decode("utf-8")
        async with self._lock:
            existing = {row.event_id for row in self._rows.values()}
            if envelope.event_id in existing or envelope.event_id in tx._staged_event_ids():
                raise_store_error(
                    service=self._service_name,
                    operation="append",
                    store="outbox",
                    message="Event id already present in the outbox",
                    event_id=envelope.event_id,
                )
            row_id = self._next_id
            self._next_id += 1

        tx._stage(
            OutboxRow(
                id=row_id,
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                topic=topic,
                partition_key=envelope.partition_key,
                envelope=encoded,
                status=OutboxStatus.PENDING,
                created_at=self._clock(),
            )
        )
        return row_id

    async def _commit(self, rows: list[OutboxRow]) -> None:
        async with self._lock:
            for row in rows:
                self._rows[row.id] = row

    async def fetch_pending(
        self, limit: int, lease_duration: timedelta
    ) -> tuple[str, list[OutboxRow]]:
        token = uuid4().hex
        async with self._lock:
            now = self._clock()
            blocked_keys: set[str] = set()
            leased: list[OutboxRow] = []
            pending = sorted(
                (row for row in self._rows.values() if row.status is OutboxStatus.PENDING),
                key=OutboxRow.sort_key,
            )
            for row in pending:
                if len(leased) >= limit:
                    break
                if row.partition_key in blocked_keys:
                    continue
                if row.is_leased(now) or not row.is_due(now):
                    # Newer rows for this key must wait behind it
                    blocked_keys.add(row.partition_key)
                    continue
                row.lease_token = token
                row.lease_expires_at = now + lease_duration
                leased.append(replace(row))

        return token, leased

    def _held(self, ids: Sequence[int], lease_token: str) -> list[OutboxRow]:
        return [
            row
            for row_id in ids
            if (row := self._rows.get(row_id)) is not None
            and row.status is OutboxStatus.PENDING
            and row.lease_token == lease_token
        ]

    async def mark_sent(self, ids: Sequence[int], lease_token: str) -> int:
        async with self._lock:
            rows = self._held(ids, lease_token)
            now = self._clock()
            for row in rows:
                row.status = OutboxStatus.SENT
                row.sent_at = now
                row.lease_token = None
                row.lease_expires_at = None
        return len(rows)

    async def mark_failed(
        self,
        ids: Sequence[int],
        lease_token: str,
        error: str,
        next_attempt_at: datetime,
    ) -> int:
        async with self._lock:
            rows = self._held(ids, lease_token)
            for row in rows:
                row.attempt_count += 1
                row.last_error = error
                row.next_attempt_at = next_attempt_at
                row.lease_token = None
                row.lease_expires_at = None
        return len(rows)

    async def release(self, ids: Sequence[int], lease_token: str) -> int:
        async with self._lock:
            rows = self._held(ids, lease_token)
            for row in rows:
                row.lease_token = None
                row.lease_expires_at = None
        return len(rows)

    async def mark_dead_lettered(self, ids: Sequence[int], lease_token: str, error: str) -> int:
        async with self._lock:
            rows = self._held(ids, lease_token)
            for row in rows:
                row.attempt_count += 1
                row.status = OutboxStatus.FAILED
                row.last_error = error
                row.lease_token = None
                row.lease_expires_at = None
        return len(rows)

    async def purge_sent(self, older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                row.id
                for row in self._rows.values()
                if row.status is OutboxStatus.SENT
                and row.sent_at is not None
                and row.sent_at < older_than
            ]
            for row_id in doomed:
                del self._rows[row_id]
        if doomed:
            logger.info("Purged sent outbox rows", extra={"count": len(doomed)})
        return len(doomed)

    async def count_pending(self) -> int:
        async with self._lock:
            return sum(1 for row in self._rows.values() if row.status is OutboxStatus.PENDING)

    def rows(self) -> list[OutboxRow]:
        """Copies of all committed rows in creation order."""
        return [replace(row) for row in sorted(self._rows.values(), key=OutboxRow.sort_key)]

    def get(self, event_id: str) -> OutboxRow | None:
        for row in self._rows.values():
            if row.event_id == event_id:
                return replace(row)
        return None
