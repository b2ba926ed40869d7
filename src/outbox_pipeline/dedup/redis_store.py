"""
Redis-backed dedup store.

A claim is a single ``SET NX EX`` on ``{prefix}:{consumer_group}:{event_id}``
holding a *processing* record with the short claim TTL. After the handler
succeeds the key is overwritten with a *completed* record and the full dedup
TTL. If the worker dies mid-handler the processing record expires and the
broker's redelivery can claim the event again.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import NoReturn

from pydantic import ValidationError as PydanticValidationError

from outbox_pipeline.dedup.models import DedupRecord, DedupStatus
from outbox_pipeline.error_handling import raise_store_error
from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.protocols import DedupStoreProtocol, RedisClientProtocol

logger = create_service_logger("outbox_pipeline.dedup.redis_store")


class RedisDedupStore(DedupStoreProtocol):
    def __init__(
        self,
        redis_client: RedisClientProtocol,
        *,
        dedup_ttl_seconds: int,
        claim_ttl_seconds: int,
        key_prefix: str = "outbox-pipeline:dedup:v1",
        service_name: str = "outbox-pipeline",
    ) -> None:
        self.redis_client = redis_client
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self.key_prefix = key_prefix
        self.service_name = service_name

    def key_for(self, consumer_group: str, event_id: str) -> str:
        return f"{self.key_prefix}:{consumer_group}:{event_id}"

    def _record(
        self, consumer_group: str, event_id: str, status: DedupStatus, ttl_seconds: int
    ) -> str:
        now = datetime.now(UTC)
        return DedupRecord(
            consumer_group=consumer_group,
            event_id=event_id,
            status=status,
            processed_at=now,
            ttl_expiry=now + timedelta(seconds=ttl_seconds),
            processed_by=self.service_name,
        ).model_dump_json()

    def _raise_unavailable(self, operation: str, key: str, error: Exception) -> NoReturn:
        raise_store_error(
            service=self.service_name,
            operation=operation,
            store="dedup",
            message=f"Dedup store unavailable: {error.__class__.__name__}",
            key=key,
            error_details=str(error),
        )

    async def try_claim(self, consumer_group: str, event_id: str) -> bool:
        key = self.key_for(consumer_group, event_id)
        value = self._record(
            consumer_group, event_id, DedupStatus.PROCESSING, self.claim_ttl_seconds
        )
        try:
            claimed = await self.redis_client.set_if_not_exists(
                key, value, ttl_seconds=self.claim_ttl_seconds
            )
        except Exception as e:
            self._raise_unavailable("try_claim", key, e)

        if not claimed:
            logger.info(
                "Duplicate delivery detected",
                extra={"consumer_group": consumer_group, "event_id": event_id},
            )
        return claimed

    async def confirm(self, consumer_group: str, event_id: str) -> None:
        key = self.key_for(consumer_group, event_id)
        value = self._record(
            consumer_group, event_id, DedupStatus.COMPLETED, self.dedup_ttl_seconds
        )
        try:
            await self.redis_client.setex(key, self.dedup_ttl_seconds, value)
        except Exception as e:
            self._raise_unavailable("confirm", key, e)

    async def release(self, consumer_group: str, event_id: str) -> None:
        key = self.key_for(consumer_group, event_id)
        try:
            await self.redis_client.delete_key(key)
        except Exception as e:
            self._raise_unavailable("release", key, e)

    async def get(self, consumer_group: str, event_id: str) -> DedupRecord | None:
        key = self.key_for(consumer_group, event_id)
        try:
            raw = await self.redis_client.get(key)
        except Exception as e:
            self._raise_unavailable("get", key, e)
        if raw is None:
            return None
        try:
            return DedupRecord.model_validate_json(raw)
        except PydanticValidationError:
            # Unreadable markers still count as processed
            logger.warning("Unreadable dedup record", extra={"key": key})
            now = datetime.now(UTC)
            return DedupRecord(
                consumer_group=consumer_group,
                event_id=event_id,
                status=DedupStatus.COMPLETED,
                processed_at=now,
                ttl_expiry=now,
            )
