"""
Dead-letter records and sinks.

A dead-letter record carries the original envelope (decoded when possible,
raw text otherwise) together with why and where delivery gave up. Kafka sinks
publish it to ``<topic>.DLQ`` for manual inspection and replay.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_handling import PipelineError, raise_kafka_ack_timeout
from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.protocols import BrokerPublisherProtocol, DeadLetterSinkProtocol

logger = create_service_logger("outbox_pipeline.deadletter")

DLQ_SUFFIX = ".DLQ"


class DeadLetterRecord(BaseModel):
    schema_version: int = 1
    envelope: dict[str, Any] | str
    event_id: str | None = None
    event_type: str | None = None
    partition_key: str | None = None
    failure_reason: str
    error_code: str | None = None
    attempt_count: int = 0
    last_attempt_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    stage: Literal["relay", "consumer"]
    service: str = "outbox-pipeline"
    consumer_group: str | None = None
    topic: str
    partition: int | None = None
    offset: int | None = None

    @classmethod
    def from_failure(
        cls,
        *,
        stage: Literal["relay", "consumer"],
        topic: str,
        envelope: EventEnvelope | dict[str, Any] | bytes | str,
        error: BaseException | str,
        attempt_count: int,
        service: str,
        **location: Any,
    ) -> DeadLetterRecord:
        """Build a record from whatever form of the envelope survived."""
        event_id = event_type = partition_key = None
        body: dict[str, Any] | str
        if isinstance(envelope, EventEnvelope):
            body = envelope.model_dump(mode="json")
        elif isinstance(envelope, dict):
            body = envelope
        elif isinstance(envelope, bytes | bytearray):
            body = bytes(envelope).decode("utf-8", errors="replace")
        else:
            body = envelope

        if isinstance(body, dict):
            event_id = _optional_str(body.get("event_id"))
            event_type = _optional_str(body.get("event_type"))
            partition_key = _optional_str(body.get("partition_key"))

        error_code = error.error_code if isinstance(error, PipelineError) else None
        return cls(
            envelope=body,
            event_id=event_id,
            event_type=event_type,
            partition_key=partition_key,
            failure_reason=str(error),
            error_code=error_code,
            attempt_count=attempt_count,
            stage=stage,
            service=service,
            topic=topic,
            **location,
        )


def _optional_str(value: Any) -> str | None:
    return str(value) if value is not None else None


class KafkaDeadLetterSink(DeadLetterSinkProtocol):
    """Publishes dead-letter records to ``<topic>.DLQ`` with a bounded wait."""

    def __init__(
        self,
        publisher: BrokerPublisherProtocol,
        timeout_seconds: float = 5.0,
        service_name: str = "outbox-pipeline",
    ):
        self.publisher = publisher
        self._timeout_seconds = timeout_seconds
        self.service_name = service_name

    async def record(self, record: DeadLetterRecord) -> None:
        """
        Raises:
            BrokerPublishError: the DLQ write failed or was not acknowledged in time.
        """
        dlq_topic = f"{record.topic}{DLQ_SUFFIX}"
        value = json.dumps(record.model_dump(mode="json")).encode("utf-8")
        key = record.partition_key.encode("utf-8") if record.partition_key else None

        try:
            await asyncio.wait_for(
                self.publisher.publish(dlq_topic, value, key=key),
                timeout=self._timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                "DLQ publish timeout",
                extra={
                    "dlq_topic": dlq_topic,
                    "event_id": record.event_id,
                    "timeout_seconds": self._timeout_seconds,
                },
            )
            raise_kafka_ack_timeout(
                service=self.service_name,
                operation="record_dead_letter",
                topic=dlq_topic,
                timeout_seconds=self._timeout_seconds,
                event_id=record.event_id,
            )

        logger.warning(
            "Event dead-lettered",
            extra={
                "dlq_topic": dlq_topic,
                "event_id": record.event_id,
                "event_type": record.event_type,
                "stage": record.stage,
                "attempt_count": record.attempt_count,
                "failure_reason": record.failure_reason,
            },
        )


class InMemoryDeadLetterSink(DeadLetterSinkProtocol):
    """Keeps dead-letter records in a list."""

    def __init__(self) -> None:
        self.records: list[DeadLetterRecord] = []

    async def record(self, record: DeadLetterRecord) -> None:
        self.records.append(record)

    def for_event(self, event_id: str) -> list[DeadLetterRecord]:
        return [r for r in self.records if r.event_id == event_id]
