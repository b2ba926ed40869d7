from __future__ import annotations

from collections.abc import Callable

import pytest
from prometheus_client import CollectorRegistry

from outbox_pipeline.alerting import InMemoryAlertSink
from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.config import PipelineSettings
from outbox_pipeline.deadletter import InMemoryDeadLetterSink
from outbox_pipeline.dedup.memory import InMemoryDedupStore
from outbox_pipeline.envelope import EventEnvelope, new_envelope
from outbox_pipeline.metrics import PipelineMetrics
from outbox_pipeline.outbox.memory import InMemoryOutboxStore
from outbox_pipeline.partitioning import PartitionRouter

from ._helpers import FakeBrokerPublisher, MockRedisClient, MutableClock


@pytest.fixture
def settings() -> PipelineSettings:
    """Settings with short timeouts and backoff so tests run fast."""
    return PipelineSettings(
        SERVICE_NAME="orders-service",
        PARTITION_COUNT=4,
        OUTBOX_BATCH_SIZE=50,
        RELAY_CONCURRENCY=4,
        LEASE_DURATION_SECONDS=30.0,
        MAX_ATTEMPT_COUNT=3,
        BACKOFF_BASE_SECONDS=0.01,
        BACKOFF_CAP_SECONDS=0.05,
        PUBLISH_TIMEOUT_SECONDS=0.2,
        HANDLER_TIMEOUT_SECONDS=0.2,
        COMMIT_TIMEOUT_SECONDS=0.2,
        SHUTDOWN_TIMEOUT_SECONDS=2.0,
        OUTBOX_POLL_INTERVAL_SECONDS=0.05,
        ENABLE_WAKE_NOTIFICATIONS=False,
        CONSUMER_GROUP="billing",
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def codec(settings: PipelineSettings) -> EnvelopeCodec:
    return EnvelopeCodec(supported_major=1, service_name=settings.SERVICE_NAME)


@pytest.fixture
def router(settings: PipelineSettings) -> PartitionRouter:
    return PartitionRouter(settings.PARTITION_COUNT, service_name=settings.SERVICE_NAME)


@pytest.fixture
def outbox_store(codec: EnvelopeCodec, clock: MutableClock) -> InMemoryOutboxStore:
    return InMemoryOutboxStore(codec=codec, clock=clock)


@pytest.fixture
def dedup_store(settings: PipelineSettings, clock: MutableClock) -> InMemoryDedupStore:
    return InMemoryDedupStore(
        dedup_ttl_seconds=settings.DEDUP_TTL_SECONDS,
        claim_ttl_seconds=settings.CLAIM_TTL_SECONDS,
        clock=clock,
    )


@pytest.fixture
def publisher(settings: PipelineSettings) -> FakeBrokerPublisher:
    return FakeBrokerPublisher(partition_count=settings.PARTITION_COUNT)


@pytest.fixture
def dead_letter_sink() -> InMemoryDeadLetterSink:
    return InMemoryDeadLetterSink()


@pytest.fixture
def alert_sink() -> InMemoryAlertSink:
    return InMemoryAlertSink()


@pytest.fixture
def mock_redis_client() -> MockRedisClient:
    return MockRedisClient()


@pytest.fixture
def metrics() -> PipelineMetrics:
    """Metrics bound to a throwaway registry."""
    return PipelineMetrics(registry=CollectorRegistry())


@pytest.fixture
def make_envelope() -> Callable[..., EventEnvelope]:
    def factory(
        partition_key: str = "order-1",
        event_type: str = "order.created",
        **data: object,
    ) -> EventEnvelope:
        return new_envelope(
            event_type=event_type,
            data=dict(data) or {"order_id": partition_key},
            partition_key=partition_key,
            producer="orders-service:0.1.0",
        )

    return factory
