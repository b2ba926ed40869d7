"""
Producer-side outbox helper.

Services call ``publish_to_outbox`` inside the transaction that changes their
business data. The relay is nudged through a Redis list so it does not have to
wait for its next poll.

A wake-up sent before the transaction commits can reach the relay while the row
is still invisible to it; the row then waits for the next poll. Callers that
need the relay to see the row on the wake-up pass ``notify=False`` and call
``notify_relay_worker`` once the transaction has committed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from outbox_pipeline.envelope import EventEnvelope, new_envelope
from outbox_pipeline.logging_utils import create_service_logger

if TYPE_CHECKING:
    from outbox_pipeline.config import PipelineSettings
    from outbox_pipeline.outbox.protocols import OutboxStoreProtocol
    from outbox_pipeline.protocols import RedisClientProtocol

logger = create_service_logger("outbox_pipeline.outbox.manager")


class OutboxManager:
    def __init__(
        self,
        outbox_store: OutboxStoreProtocol,
        redis_client: RedisClientProtocol | None,
        settings: PipelineSettings,
    ) -> None:
        self.outbox_store = outbox_store
        self.redis_client = redis_client
        self.settings = settings

    async def publish_to_outbox(
        self, tx: Any, envelope: EventEnvelope, topic: str, *, notify: bool = True
    ) -> int:
        """
        Store an envelope in the outbox within ``tx``.

        With ``notify`` the relay is woken straight away, before ``tx`` commits.

        Raises:
            StoreError: ``tx`` is not active or the insert failed.
            ValidationError: the envelope cannot be encoded.
        """
        outbox_id = await self.outbox_store.append(tx, envelope, topic)

        logger.debug(
            "Event stored in outbox",
            extra={
                "outbox_id": outbox_id,
                "event_id": envelope.event_id,
                "event_type": envelope.event_type,
                "topic": topic,
                "correlation_id": envelope.correlation_id,
            },
        )

        if notify:
            await self.notify_relay_worker()
        return outbox_id

    async def emit(
        self,
        tx: Any,
        *,
        topic: str,
        event_type: str,
        data: dict[str, Any],
        partition_key: str,
        causation: EventEnvelope | None = None,
        correlation_id: str | None = None,
        schema_version: str = "1.0.0",
        notify: bool = True,
    ) -> EventEnvelope:
        """Build a new envelope stamped with this service as producer and store it."""
        envelope = new_envelope(
            event_type=event_type,
            data=data,
            partition_key=partition_key,
            producer=self.settings.producer_id,
            schema_version=schema_version,
            correlation_id=correlation_id,
            causation=causation,
        )
        await self.publish_to_outbox(tx, envelope, topic, notify=notify)
        return envelope

    async def notify_relay_worker(self) -> None:
        """
        Wake the relay through Redis LPUSH.

        Call it after commit for rows stored with ``notify=False``.

        Failures are logged only; the relay still picks the rows up on its next poll.
        """
        if self.redis_client is None or not self.settings.ENABLE_WAKE_NOTIFICATIONS:
            return
        try:
            await self.redis_client.lpush(self.settings.wake_key, "1")
            logger.debug("Relay worker notified via Redis")
        except Exception as e:
            logger.warning(
                "Failed to notify relay worker via Redis",
                extra={"error": str(e)},
            )
