"""Unit tests for dead-letter records, the Kafka dead-letter sink and alert sinks."""

from __future__ import annotations

import json
from collections.abc import Callable

import pytest
from prometheus_client import CollectorRegistry

from outbox_pipeline.alerting import LoggingAlertSink
from outbox_pipeline.deadletter import DeadLetterRecord, KafkaDeadLetterSink
from outbox_pipeline.envelope import EventEnvelope
from outbox_pipeline.error_enums import ErrorCode
from outbox_pipeline.error_handling import BrokerAckTimeout, HandlerError, raise_handler_error
from outbox_pipeline.metrics import PipelineMetrics

from .._helpers import FakeBrokerPublisher


class TestDeadLetterRecord:
    def test_from_decoded_envelope(self, make_envelope: Callable[..., EventEnvelope]) -> None:
        envelope = make_envelope("order-9")
        with pytest.raises(HandlerError) as exc_info:
            raise_handler_error(
                service="billing",
                operation="handle_event",
                event_type="order.created",
                message="ledger locked",
            )

        record = DeadLetterRecord.from_failure(
            stage="consumer",
            topic="orders",
            envelope=envelope,
            error=exc_info.value,
            attempt_count=3,
            service="billing",
            consumer_group="billing",
            partition=1,
            offset=17,
        )

        assert record.event_id == envelope.event_id
        assert record.event_type == "order.created"
        assert record.partition_key == "order-9"
        assert record.error_code == ErrorCode.HANDLER_ERROR.value
        assert record.failure_reason == "[HANDLER_ERROR] ledger locked"
        assert isinstance(record.envelope, dict)
        assert record.envelope["data"] == {"order_id": "order-9"}

    def test_from_undecodable_bytes_keeps_raw_text(self) -> None:
        record = DeadLetterRecord.from_failure(
            stage="consumer",
            topic="orders",
            envelope=b"\xffnot-json",
            error="Envelope is not valid JSON",
            attempt_count=1,
            service="billing",
        )

        assert isinstance(record.envelope, str)
        assert record.envelope.endswith("not-json")
        assert record.event_id is None
        assert record.error_code is None


class TestKafkaDeadLetterSink:
    @pytest.mark.asyncio
    async def test_publishes_to_dlq_topic_keyed_by_partition_key(
        self, make_envelope: Callable[..., EventEnvelope]
    ) -> None:
        publisher = FakeBrokerPublisher()
        sink = KafkaDeadLetterSink(publisher, timeout_seconds=0.5, service_name="orders-service")
        envelope = make_envelope("order-3")
        record = DeadLetterRecord.from_failure(
            stage="relay",
            topic="orders",
            envelope=envelope,
            error="broker unavailable",
            attempt_count=5,
            service="orders-service",
        )

        await sink.record(record)

        [message] = publisher.published
        assert message.topic == "orders.DLQ"
        assert message.key == b"order-3"
        body = json.loads(message.value)
        assert body["event_id"] == envelope.event_id
        assert body["stage"] == "relay"
        assert body["attempt_count"] == 5

    @pytest.mark.asyncio
    async def test_unacknowledged_publish_raises_ack_timeout(self) -> None:
        publisher = FakeBrokerPublisher()
        publisher.hang = True
        sink = KafkaDeadLetterSink(publisher, timeout_seconds=0.05)
        record = DeadLetterRecord.from_failure(
            stage="relay",
            topic="orders",
            envelope="{}",
            error="broker unavailable",
            attempt_count=5,
            service="orders-service",
        )

        with pytest.raises(BrokerAckTimeout) as exc_info:
            await sink.record(record)

        assert exc_info.value.error_code == ErrorCode.KAFKA_ACK_TIMEOUT.value
        assert exc_info.value.error_detail.details["topic"] == "orders.DLQ"
        assert publisher.published == []


class TestLoggingAlertSink:
    @pytest.mark.asyncio
    async def test_counts_alerts_per_stage(self) -> None:
        registry = CollectorRegistry()
        sink = LoggingAlertSink(PipelineMetrics(registry=registry))

        await sink.alert("Relay dead-lettered event", stage="relay", event_id="evt-1")
        await sink.alert("Relay dead-lettered event", stage="relay", event_id="evt-2")
        await sink.alert("Consumer dead-lettered event", stage="consumer")

        assert registry.get_sample_value("outbox_alerts_total", {"stage": "relay"}) == 2.0
        assert registry.get_sample_value("outbox_alerts_total", {"stage": "consumer"}) == 1.0

    @pytest.mark.asyncio
    async def test_works_without_metrics(self) -> None:
        await LoggingAlertSink().alert("Repartition detected", topic="orders")
