"""
Integration tests for SQLAlchemyOutboxStore against a file-backed SQLite database.

These exercise the real SQL for leasing, per-key blocking and the
lease-token-conditional updates. PostgreSQL-only row locking is not covered.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_handling import StoreError
from outbox_pipeline.outbox.models import OutboxStatus
from outbox_pipeline.outbox.models_db import Base, OutboxEventDB
from outbox_pipeline.outbox.repository import SQLAlchemyOutboxStore

from .._helpers import MutableClock

pytestmark = pytest.mark.integration

LEASE = timedelta(seconds=30)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def store(
    engine: AsyncEngine, codec: EnvelopeCodec, clock: MutableClock
) -> SQLAlchemyOutboxStore:
    return SQLAlchemyOutboxStore(engine, codec=codec, service_name="orders-service", clock=clock)


async def _append(
    sessions: async_sessionmaker, store: SQLAlchemyOutboxStore, *envelopes: EventEnvelope
) -> list[int]:
    async with sessions() as session, session.begin():
        return [await store.append(session, envelope, "orders") for envelope in envelopes]


async def _status(sessions: async_sessionmaker, row_id: int) -> OutboxEventDB:
    async with sessions() as session:
        result = await session.execute(select(OutboxEventDB).where(OutboxEventDB.id == row_id))
        return result.scalar_one()


class TestAppend:
    @pytest.mark.asyncio
    async def test_append_requires_active_transaction(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        async with sessions() as session:
            with pytest.raises(StoreError):
                await store.append(session, make_envelope(), "orders")

    @pytest.mark.asyncio
    async def test_rows_follow_the_business_transaction(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        codec: EnvelopeCodec,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        committed = make_envelope("order-1")
        rolled_back = make_envelope("order-2")
        await _append(sessions, store, committed)

        with pytest.raises(RuntimeError):
            async with sessions() as session, session.begin():
                await store.append(session, rolled_back, "orders")
                raise RuntimeError("business update failed")

        _, rows = await store.fetch_pending(10, LEASE)

        assert [row.event_id for row in rows] == [committed.event_id]
        assert rows[0].envelope == codec.encode(committed).decode("utf-8")
        assert await store.count_pending() == 1

    @pytest.mark.asyncio
    async def test_duplicate_event_id_is_rejected(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        envelope = make_envelope()
        await _append(sessions, store, envelope)

        with pytest.raises(StoreError):
            await _append(sessions, store, envelope)

        assert await store.count_pending() == 1


class TestLeasing:
    @pytest.mark.asyncio
    async def test_later_rows_wait_behind_a_leased_row_for_the_same_key(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        a1, a2, b1 = make_envelope("a"), make_envelope("a"), make_envelope("b")
        await _append(sessions, store, a1, a2, b1)

        first_token, first = await store.fetch_pending(1, LEASE)
        _, second = await store.fetch_pending(10, LEASE)

        assert [row.event_id for row in first] == [a1.event_id]
        assert [row.event_id for row in second] == [b1.event_id]

        assert await store.mark_sent([first[0].id], first_token) == 1
        _, third = await store.fetch_pending(10, LEASE)
        assert [row.event_id for row in third] == [a2.event_id]

    @pytest.mark.asyncio
    async def test_one_lease_may_hold_consecutive_rows_of_a_key(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        a1, a2 = make_envelope("a"), make_envelope("a")
        await _append(sessions, store, a1, a2)

        token, rows = await store.fetch_pending(10, LEASE)

        assert [row.event_id for row in rows] == [a1.event_id, a2.event_id]
        assert all(row.lease_token == token for row in rows)
        assert (await store.fetch_pending(10, LEASE))[1] == []

    @pytest.mark.asyncio
    async def test_updates_only_apply_while_the_lease_is_held(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        clock: MutableClock,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        [row_id] = await _append(sessions, store, make_envelope())
        stale_token, _ = await store.fetch_pending(10, LEASE)

        assert await store.mark_sent([row_id], "not-my-lease") == 0

        # The first relay stalls past its lease and another takes the row over
        clock.advance(LEASE.total_seconds() + 1)
        fresh_token, rows = await store.fetch_pending(10, LEASE)
        assert [row.id for row in rows] == [row_id]

        assert await store.mark_sent([row_id], stale_token) == 0
        assert await store.mark_sent([row_id], fresh_token) == 1
        assert await store.mark_sent([row_id], fresh_token) == 0
        db_row = await _status(sessions, row_id)
        assert db_row.status == OutboxStatus.SENT.value
        assert db_row.lease_token is None

    @pytest.mark.asyncio
    async def test_release_makes_rows_immediately_eligible(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        [row_id] = await _append(sessions, store, make_envelope())
        token, _ = await store.fetch_pending(10, LEASE)

        assert await store.release([row_id], token) == 1
        _, rows = await store.fetch_pending(10, LEASE)

        assert [row.id for row in rows] == [row_id]
        assert rows[0].attempt_count == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_backoff_blocks_the_key_until_due(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        clock: MutableClock,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        a1_id, a2_id = await _append(sessions, store, make_envelope("a"), make_envelope("a"))
        token, _ = await store.fetch_pending(10, LEASE)

        await store.mark_failed(
            [a1_id], token, "broker unavailable", clock.now + timedelta(seconds=10)
        )
        await store.release([a2_id], token)

        assert (await store.fetch_pending(10, LEASE))[1] == []

        clock.advance(11)
        _, rows = await store.fetch_pending(10, LEASE)

        assert [row.id for row in rows] == [a1_id, a2_id]
        assert rows[0].attempt_count == 1
        assert rows[0].last_error == "broker unavailable"

    @pytest.mark.asyncio
    async def test_dead_lettered_row_is_terminal_and_unblocks_the_key(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        a1_id, a2_id = await _append(sessions, store, make_envelope("a"), make_envelope("a"))
        token, _ = await store.fetch_pending(10, LEASE)

        assert await store.mark_dead_lettered([a1_id], token, "x" * 5000) == 1
        await store.release([a2_id], token)

        db_row = await _status(sessions, a1_id)
        assert db_row.status == OutboxStatus.FAILED.value
        assert db_row.attempt_count == 1
        assert db_row.last_error is not None and len(db_row.last_error) == 1000

        _, rows = await store.fetch_pending(10, LEASE)
        assert [row.id for row in rows] == [a2_id]
        assert await store.count_pending() == 1


class TestRetention:
    @pytest.mark.asyncio
    async def test_purge_removes_only_old_sent_rows(
        self,
        sessions: async_sessionmaker,
        store: SQLAlchemyOutboxStore,
        clock: MutableClock,
        make_envelope: Callable[..., EventEnvelope],
    ) -> None:
        sent_id, _ = await _append(sessions, store, make_envelope("a"), make_envelope("b"))
        token, _ = await store.fetch_pending(1, LEASE)
        await store.mark_sent([sent_id], token)

        assert await store.purge_sent(clock.now - timedelta(seconds=60)) == 0

        clock.advance(3600)
        assert await store.purge_sent(clock.now - timedelta(seconds=60)) == 1
        assert await store.count_pending() == 1
