"""
Shared protocol definitions for outbox_pipeline.

These protocols define the contracts for the infrastructure the pipeline talks
to (Redis, Kafka, dead-letter and alert sinks, dedup store, domain handlers)
so that production adapters and test fakes are interchangeable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from outbox_pipeline.deadletter import DeadLetterRecord
    from outbox_pipeline.dedup.models import DedupRecord

__all__ = [
    "AlertSinkProtocol",
    "BrokerPublisherProtocol",
    "DeadLetterSinkProtocol",
    "DedupStoreProtocol",
    "EventHandlerProtocol",
    "RedisClientProtocol",
]


class RedisClientProtocol(Protocol):
    """Redis operations needed for dedup claims and relay wake-ups."""

    async def set_if_not_exists(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Atomic SET if NOT EXISTS.

        Returns:
            True if key was set, False if key already exists
        """
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def setex(self, key: str, ttl_seconds: int, value: str) -> bool:
        ...

    async def delete_key(self, key: str) -> int:
        ...

    async def lpush(self, key: str, *values: str) -> int:
        ...

    async def blpop(self, keys: list[str], timeout: float) -> tuple[str, str] | None:
        """Block until an element is available on one of ``keys`` or ``timeout`` elapses."""
        ...

    async def ping(self) -> bool:
        ...


class BrokerPublisherProtocol(Protocol):
    """Publisher that writes to an explicit partition and waits for the broker ack."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None,
        partition: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Return broker metadata once the write is acknowledged."""
        ...

    async def partition_count(self, topic: str) -> int | None:
        """Number of partitions the broker reports for ``topic``, if known."""
        ...


class DedupStoreProtocol(Protocol):
    """Per consumer-group record of processed event ids."""

    async def try_claim(self, consumer_group: str, event_id: str) -> bool:
        """
        Atomically claim ``event_id`` for ``consumer_group``.

        Returns:
            True if this caller owns the claim, False if the event was already
            claimed (duplicate delivery).

        Raises:
            StoreError: the store is unavailable.
        """
        ...

    async def confirm(self, consumer_group: str, event_id: str) -> None:
        """Mark a claimed event as durably processed for the full dedup TTL."""
        ...

    async def release(self, consumer_group: str, event_id: str) -> None:
        """Drop a claim so a later redelivery can process the event."""
        ...

    async def get(self, consumer_group: str, event_id: str) -> DedupRecord | None:
        """Current record, used to tell a completed event from one still in flight."""
        ...


class DeadLetterSinkProtocol(Protocol):
    """Durable parking place for events that exhausted their retries."""

    async def record(self, record: DeadLetterRecord) -> None:
        ...


class AlertSinkProtocol(Protocol):
    """Operator-facing signal for dead-lettered events and persistent failures."""

    async def alert(self, summary: str, **context: Any) -> None:
        ...


class EventHandlerProtocol(Protocol):
    """Domain capability invoked by the consumer dispatcher."""

    async def handle(self, event_type: str, payload: dict[str, Any]) -> Any:
        ...
