"""
Unit tests for the dedup stores.

Both implementations share claim/confirm/release semantics: a claim is
exclusive while it lives, a confirmed event stays a duplicate for the dedup
TTL and a released claim can be taken again.
"""

from __future__ import annotations

import json

import pytest

from outbox_pipeline.dedup.memory import InMemoryDedupStore
from outbox_pipeline.dedup.models import DedupStatus
from outbox_pipeline.dedup.redis_store import RedisDedupStore
from outbox_pipeline.error_enums import ErrorCode
from outbox_pipeline.error_handling import StoreError

from .._helpers import MockRedisClient, MutableClock


@pytest.fixture
def redis_store(mock_redis_client: MockRedisClient) -> RedisDedupStore:
    return RedisDedupStore(
        mock_redis_client,
        dedup_ttl_seconds=86400,
        claim_ttl_seconds=300,
        key_prefix="test:dedup:v1",
        service_name="billing",
    )


class TestInMemoryDedupStore:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, dedup_store: InMemoryDedupStore) -> None:
        assert await dedup_store.try_claim("billing", "evt-1") is True
        assert await dedup_store.try_claim("billing", "evt-1") is False

    @pytest.mark.asyncio
    async def test_claims_are_scoped_per_consumer_group(
        self, dedup_store: InMemoryDedupStore
    ) -> None:
        assert await dedup_store.try_claim("billing", "evt-1") is True
        assert await dedup_store.try_claim("shipping", "evt-1") is True

    @pytest.mark.asyncio
    async def test_released_claim_can_be_taken_again(
        self, dedup_store: InMemoryDedupStore
    ) -> None:
        await dedup_store.try_claim("billing", "evt-1")

        await dedup_store.release("billing", "evt-1")

        assert await dedup_store.get("billing", "evt-1") is None
        assert await dedup_store.try_claim("billing", "evt-1") is True

    @pytest.mark.asyncio
    async def test_processing_claim_expires(
        self, dedup_store: InMemoryDedupStore, clock: MutableClock
    ) -> None:
        await dedup_store.try_claim("billing", "evt-1")

        clock.advance(dedup_store.claim_ttl_seconds + 1)

        assert await dedup_store.try_claim("billing", "evt-1") is True

    @pytest.mark.asyncio
    async def test_confirmed_event_outlives_claim_ttl(
        self, dedup_store: InMemoryDedupStore, clock: MutableClock
    ) -> None:
        await dedup_store.try_claim("billing", "evt-1")
        await dedup_store.confirm("billing", "evt-1")

        clock.advance(dedup_store.claim_ttl_seconds + 1)
        record = await dedup_store.get("billing", "evt-1")

        assert record is not None
        assert record.status is DedupStatus.COMPLETED
        assert await dedup_store.try_claim("billing", "evt-1") is False

    @pytest.mark.asyncio
    async def test_confirmed_event_expires_after_dedup_ttl(
        self, dedup_store: InMemoryDedupStore, clock: MutableClock
    ) -> None:
        await dedup_store.try_claim("billing", "evt-1")
        await dedup_store.confirm("billing", "evt-1")

        clock.advance(dedup_store.dedup_ttl_seconds + 1)

        assert await dedup_store.get("billing", "evt-1") is None

    @pytest.mark.asyncio
    async def test_unavailable_store_raises(self, dedup_store: InMemoryDedupStore) -> None:
        dedup_store.available = False

        with pytest.raises(StoreError) as exc_info:
            await dedup_store.try_claim("billing", "evt-1")

        assert exc_info.value.error_code == ErrorCode.STORE_UNAVAILABLE.value
        assert exc_info.value.error_detail.details["store"] == "dedup"


class TestRedisDedupStore:
    @pytest.mark.asyncio
    async def test_claim_writes_processing_record_with_claim_ttl(
        self, redis_store: RedisDedupStore, mock_redis_client: MockRedisClient
    ) -> None:
        assert await redis_store.try_claim("billing", "evt-1") is True

        key = "test:dedup:v1:billing:evt-1"
        assert mock_redis_client.ttls[key] == 300
        stored = json.loads(mock_redis_client.keys[key])
        assert stored["status"] == "processing"
        assert stored["processed_by"] == "billing"

    @pytest.mark.asyncio
    async def test_second_claim_is_duplicate(self, redis_store: RedisDedupStore) -> None:
        await redis_store.try_claim("billing", "evt-1")

        assert await redis_store.try_claim("billing", "evt-1") is False

    @pytest.mark.asyncio
    async def test_confirm_overwrites_with_completed_and_dedup_ttl(
        self, redis_store: RedisDedupStore, mock_redis_client: MockRedisClient
    ) -> None:
        await redis_store.try_claim("billing", "evt-1")

        await redis_store.confirm("billing", "evt-1")

        key = redis_store.key_for("billing", "evt-1")
        assert mock_redis_client.ttls[key] == 86400
        record = await redis_store.get("billing", "evt-1")
        assert record is not None
        assert record.status is DedupStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_release_deletes_claim(
        self, redis_store: RedisDedupStore, mock_redis_client: MockRedisClient
    ) -> None:
        await redis_store.try_claim("billing", "evt-1")

        await redis_store.release("billing", "evt-1")

        assert mock_redis_client.keys == {}
        assert await redis_store.try_claim("billing", "evt-1") is True

    @pytest.mark.asyncio
    async def test_unreadable_record_counts_as_completed(
        self, redis_store: RedisDedupStore, mock_redis_client: MockRedisClient
    ) -> None:
        mock_redis_client.keys[redis_store.key_for("billing", "evt-1")] = "1"

        record = await redis_store.get("billing", "evt-1")

        assert record is not None
        assert record.status is DedupStatus.COMPLETED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["try_claim", "confirm", "release", "get"])
    async def test_redis_failure_maps_to_store_error(
        self,
        redis_store: RedisDedupStore,
        mock_redis_client: MockRedisClient,
        operation: str,
    ) -> None:
        mock_redis_client.should_fail = True

        with pytest.raises(StoreError) as exc_info:
            await getattr(redis_store, operation)("billing", "evt-1")

        details = exc_info.value.error_detail.details
        assert details["store"] == "dedup"
        assert details["key"] == "test:dedup:v1:billing:evt-1"
