"""
SQLAlchemy implementation of OutboxStoreProtocol.

Runs against PostgreSQL in production (row locks with ``FOR UPDATE SKIP
LOCKED``) and SQLite in tests. Leasing happens in two short transactions:

1. select eligible row ids and stamp them with a fresh lease token;
2. release any leased row that still has an older PENDING row for the same
   partition key outside this lease, then read back what remains.

Step 2 runs after step 1 has committed, so it sees leases taken concurrently
by other relay instances and keeps per-key ordering across relays.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_handling import PipelineError, raise_store_error
from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.outbox.models import OutboxRow, OutboxStatus
from outbox_pipeline.outbox.models_db import OutboxEventDB
from outbox_pipeline.outbox.protocols import OutboxStoreProtocol

logger = create_service_logger("outbox_pipeline.outbox.repository")

PENDING = OutboxStatus.PENDING.value
MAX_ERROR_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _aware_or_none(value: datetime | None) -> datetime | None:
    return _aware(value) if value is not None else None


def _older_than(older: Any, row: Any) -> Any:
    return or_(
        older.created_at < row.created_at,
        and_(older.created_at == row.created_at, older.id < row.id),
    )


class SQLAlchemyOutboxStore(OutboxStoreProtocol):
    """
    Outbox store backed by the producing service's database.

    ``append`` joins the caller's session; every other operation opens its own
    short transaction.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        codec: EnvelopeCodec | None = None,
        timeout_seconds: float = 5.0,
        service_name: str = "outbox-pipeline",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
        self._codec = codec or EnvelopeCodec(service_name=service_name)
        self._timeout_seconds = timeout_seconds
        self._service_name = service_name
        self._clock = clock
        self._skip_locked = engine.dialect.name == "postgresql"
        logger.info(
            "Initialized SQLAlchemy outbox store",
            extra={"dialect": engine.dialect.name, "skip_locked": self._skip_locked},
        )

    @asynccontextmanager
    async def _guard(self, operation: str, **context: Any) -> AsyncIterator[None]:
        """Bound the operation by the store timeout and map failures to StoreError."""
        try:
            async with asyncio.timeout(self._timeout_seconds):
                yield
        except PipelineError:
            raise
        except TimeoutError:
            raise_store_error(
                service=self._service_name,
                operation=operation,
                store="outbox",
                message=f"Outbox operation timed out after {self._timeout_seconds}s",
                **context,
            )
        except SQLAlchemyError as e:
            raise_store_error(
                service=self._service_name,
                operation=operation,
                store="outbox",
                message=f"Outbox operation failed: {e.__class__.__name__}",
                error_details=str(e),
                **context,
            )

    async def append(self, tx: AsyncSession, envelope: EventEnvelope, topic: str) -> int:
        if not isinstance(tx, AsyncSession) or not tx.in_transaction():
            raise_store_error(
                service=self._service_name,
                operation="append",
                store="outbox",
                message="Outbox append requires an active transaction",
                event_id=envelope.event_id,
            )

        row = OutboxEventDB(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            topic=topic,
            partition_key=envelope.partition_key,
            envelope=self._codec.encode(envelope).decode("utf-8"),
            status=PENDING,
            created_at=self._clock(),
            attempt_count=0,
        )
        tx.add(row)
        async with self._guard("append", event_id=envelope.event_id):
            await tx.flush()

        logger.debug(
            "Added event to outbox",
            extra={
                "outbox_id": row.id,
                "event_id": envelope.event_id,
                "event_type": envelope.event_type,
                "topic": topic,
            },
        )
        return row.id

    async def fetch_pending(
        self, limit: int, lease_duration: timedelta
    ) -> tuple[str, list[OutboxRow]]:
        token = uuid4().hex
        async with self._guard("fetch_pending", limit=limit):
            leased = await self._lease(token, limit, lease_duration)
            if not leased:
                return token, []
            rows = await self._drop_out_of_order(token)

        if rows:
            logger.debug(
                "Leased outbox rows",
                extra={"count": len(rows), "lease_token": token, "limit": limit},
            )
        return token, rows

    async def _lease(self, token: str, limit: int, lease_duration: timedelta) -> int:
        outbox = OutboxEventDB
        older = aliased(OutboxEventDB)
        async with self._session_factory() as session, session.begin():
            now = self._clock()
            blocked_behind_older = (
                select(older.id)
                .where(
                    older.partition_key == outbox.partition_key,
                    older.status == PENDING,
                    _older_than(older, outbox),
                    or_(older.lease_expires_at > now, older.next_attempt_at > now),
                )
                .exists()
            )
            stmt = (
                select(outbox.id)
                .where(
                    outbox.status == PENDING,
                    or_(outbox.lease_expires_at.is_(None), outbox.lease_expires_at <= now),
                    or_(outbox.next_attempt_at.is_(None), outbox.next_attempt_at <= now),
                    ~blocked_behind_older,
                )
                .order_by(outbox.created_at, outbox.id)
                .limit(limit)
            )
            if self._skip_locked:
                stmt = stmt.with_for_update(skip_locked=True, of=outbox)

            ids = list((await session.execute(stmt)).scalars())
            if not ids:
                return 0

            result = await session.execute(
                update(outbox)
                .where(
                    outbox.id.in_(ids),
                    outbox.status == PENDING,
                    or_(outbox.lease_expires_at.is_(None), outbox.lease_expires_at <= now),
                )
                .values(lease_token=token, lease_expires_at=now + lease_duration)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    async def _drop_out_of_order(self, token: str) -> list[OutboxRow]:
        outbox = OutboxEventDB
        older = aliased(OutboxEventDB)
        async with self._session_factory() as session, session.begin():
            queued_behind_other_lease = (
                select(older.id)
                .where(
                    older.partition_key == outbox.partition_key,
                    older.status == PENDING,
                    _older_than(older, outbox),
                    or_(older.lease_token.is_(None), older.lease_token != token),
                )
                .exists()
            )
            await session.execute(
                update(outbox)
                .where(outbox.lease_token == token, queued_behind_other_lease)
                .values(lease_token=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(
                select(outbox)
                .where(outbox.lease_token == token)
                .order_by(outbox.created_at, outbox.id)
            )
            return [self._to_row(db_row) for db_row in result.scalars()]

    async def _update_held(
        self, operation: str, ids: Sequence[int], held_token: str, **values: Any
    ) -> int:
        """Update rows still held by `held_token` and clear their lease."""
        if not ids:
            return 0
        outbox = OutboxEventDB
        async with self._guard(operation, lease_token=held_token, row_count=len(ids)):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(outbox)
                    .where(
                        outbox.id.in_(list(ids)),
                        outbox.lease_token == held_token,
                        outbox.status == PENDING,
                    )
                    .values(lease_token=None, lease_expires_at=None, **values)
                    .execution_options(synchronize_session=False)
                )
                updated = int(result.rowcount or 0)

        if updated < len(ids):
            logger.warning(
                "Lease no longer held for some outbox rows",
                extra={
                    "operation": operation,
                    "lease_token": held_token,
                    "requested": len(ids),
                    "updated": updated,
                },
            )
        return updated

    async def mark_sent(self, ids: Sequence[int], lease_token: str) -> int:
        return await self._update_held(
            "mark_sent",
            ids,
            lease_token,
            status=OutboxStatus.SENT.value,
            sent_at=self._clock(),
        )

    async def mark_failed(
        self,
        ids: Sequence[int],
        lease_token: str,
        error: str,
        next_attempt_at: datetime,
    ) -> int:
        return await self._update_held(
            "mark_failed",
            ids,
            lease_token,
            attempt_count=OutboxEventDB.attempt_count + 1,
            last_error=error[:MAX_ERROR_LENGTH],
            next_attempt_at=next_attempt_at,
        )

    async def release(self, ids: Sequence[int], lease_token: str) -> int:
        return await self._update_held("release", ids, lease_token)

    async def mark_dead_lettered(self, ids: Sequence[int], lease_token: str, error: str) -> int:
        return await self._update_held(
            "mark_dead_lettered",
            ids,
            lease_token,
            status=OutboxStatus.FAILED.value,
            attempt_count=OutboxEventDB.attempt_count + 1,
            last_error=error[:MAX_ERROR_LENGTH],
        )

    async def purge_sent(self, older_than: datetime) -> int:
        async with self._guard("purge_sent"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    delete(OutboxEventDB)
                    .where(
                        OutboxEventDB.status == OutboxStatus.SENT.value,
                        OutboxEventDB.sent_at < older_than,
                    )
                    .execution_options(synchronize_session=False)
                )
                purged = int(result.rowcount or 0)

        if purged:
            logger.info("Purged sent outbox rows", extra={"count": purged})
        return purged

    async def count_pending(self) -> int:
        async with self._guard("count_pending"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(OutboxEventDB)
                    .where(OutboxEventDB.status == PENDING)
                )
                return int(result.scalar_one())

    @staticmethod
    def _to_row(db_row: OutboxEventDB) -> OutboxRow:
        return OutboxRow(
            id=db_row.id,
            event_id=db_row.event_id,
            event_type=db_row.event_type,
            topic=db_row.topic,
            partition_key=db_row.partition_key,
            envelope=db_row.envelope,
            status=OutboxStatus(db_row.status),
            created_at=_aware(db_row.created_at),
            sent_at=_aware_or_none(db_row.sent_at),
            attempt_count=db_row.attempt_count,
            last_error=db_row.last_error,
            next_attempt_at=_aware_or_none(db_row.next_attempt_at),
            lease_token=db_row.lease_token,
            lease_expires_at=_aware_or_none(db_row.lease_expires_at),
        )
