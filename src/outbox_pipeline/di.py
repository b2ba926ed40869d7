"""Dependency injection providers for the outbox pipeline."""

from __future__ import annotations

from collections.abc import AsyncIterator

from dishka import Provider, Scope, provide
from sqlalchemy.ext.asyncio import AsyncEngine

from outbox_pipeline.alerting import LoggingAlertSink
from outbox_pipeline.codec import EnvelopeCodec
from outbox_pipeline.config import PipelineSettings
from outbox_pipeline.deadletter import KafkaDeadLetterSink
from outbox_pipeline.dedup.redis_store import RedisDedupStore
from outbox_pipeline.kafka_client import KafkaEventPublisher
from outbox_pipeline.metrics import PipelineMetrics, get_metrics
from outbox_pipeline.outbox.manager import OutboxManager
from outbox_pipeline.outbox.protocols import OutboxStoreProtocol
from outbox_pipeline.outbox.relay import EventRelayWorker
from outbox_pipeline.outbox.repository import SQLAlchemyOutboxStore
from outbox_pipeline.partitioning import PartitionRouter
from outbox_pipeline.protocols import (
    AlertSinkProtocol,
    BrokerPublisherProtocol,
    DeadLetterSinkProtocol,
    DedupStoreProtocol,
    RedisClientProtocol,
)
from outbox_pipeline.redis_client import RedisClient


class PipelineProvider(Provider):
    """Dishka provider for the relay, the outbox store and the consumer's collaborators."""

    def __init__(self, engine: AsyncEngine, settings: PipelineSettings | None = None) -> None:
        """Initialize provider with guaranteed infrastructure."""
        super().__init__()
        self._engine = engine
        self._settings = settings or PipelineSettings()

    @provide(scope=Scope.APP)
    def provide_settings(self) -> PipelineSettings:
        return self._settings

    @provide(scope=Scope.APP)
    def provide_database_engine(self) -> AsyncEngine:
        """Provide database engine from guaranteed infrastructure."""
        return self._engine

    @provide(scope=Scope.APP)
    def provide_metrics(self) -> PipelineMetrics:
        return get_metrics()

    @provide(scope=Scope.APP)
    def provide_codec(self, settings: PipelineSettings) -> EnvelopeCodec:
        return EnvelopeCodec(
            supported_major=settings.SUPPORTED_SCHEMA_MAJOR,
            service_name=settings.SERVICE_NAME,
        )

    @provide(scope=Scope.APP)
    def provide_partition_router(self, settings: PipelineSettings) -> PartitionRouter:
        return PartitionRouter(settings.PARTITION_COUNT, service_name=settings.SERVICE_NAME)

    @provide(scope=Scope.APP)
    async def provide_redis_client(
        self, settings: PipelineSettings
    ) -> AsyncIterator[RedisClientProtocol]:
        """Provide Redis client for dedup claims and relay wake-ups."""
        redis_client = RedisClient(
            client_id=f"{settings.SERVICE_NAME}-redis",
            redis_url=settings.REDIS_URL,
        )
        await redis_client.start()
        try:
            yield redis_client
        finally:
            await redis_client.stop()

    @provide(scope=Scope.APP)
    async def provide_publisher(
        self, settings: PipelineSettings
    ) -> AsyncIterator[BrokerPublisherProtocol]:
        """Provide the idempotent Kafka producer."""
        publisher = KafkaEventPublisher(
            client_id=f"{settings.KAFKA_CLIENT_ID}-producer",
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
            service_name=settings.SERVICE_NAME,
        )
        await publisher.start()
        try:
            yield publisher
        finally:
            await publisher.stop()

    @provide(scope=Scope.APP)
    def provide_outbox_store(
        self, engine: AsyncEngine, codec: EnvelopeCodec, settings: PipelineSettings
    ) -> OutboxStoreProtocol:
        return SQLAlchemyOutboxStore(
            engine,
            codec=codec,
            timeout_seconds=settings.STORE_TIMEOUT_SECONDS,
            service_name=settings.SERVICE_NAME,
        )

    @provide(scope=Scope.APP)
    def provide_outbox_manager(
        self,
        outbox_store: OutboxStoreProtocol,
        redis_client: RedisClientProtocol,
        settings: PipelineSettings,
    ) -> OutboxManager:
        return OutboxManager(outbox_store, redis_client, settings)

    @provide(scope=Scope.APP)
    def provide_dedup_store(
        self, redis_client: RedisClientProtocol, settings: PipelineSettings
    ) -> DedupStoreProtocol:
        return RedisDedupStore(
            redis_client,
            dedup_ttl_seconds=settings.DEDUP_TTL_SECONDS,
            claim_ttl_seconds=settings.CLAIM_TTL_SECONDS,
            key_prefix=settings.DEDUP_KEY_PREFIX,
            service_name=settings.SERVICE_NAME,
        )

    @provide(scope=Scope.APP)
    def provide_dead_letter_sink(
        self, publisher: BrokerPublisherProtocol, settings: PipelineSettings
    ) -> DeadLetterSinkProtocol:
        return KafkaDeadLetterSink(
            publisher,
            timeout_seconds=settings.PUBLISH_TIMEOUT_SECONDS,
            service_name=settings.SERVICE_NAME,
        )

    @provide(scope=Scope.APP)
    def provide_alert_sink(self, metrics: PipelineMetrics) -> AlertSinkProtocol:
        return LoggingAlertSink(metrics)

    @provide(scope=Scope.APP)
    def provide_relay_worker(
        self,
        outbox_store: OutboxStoreProtocol,
        publisher: BrokerPublisherProtocol,
        router: PartitionRouter,
        settings: PipelineSettings,
        dead_letter_sink: DeadLetterSinkProtocol,
        alert_sink: AlertSinkProtocol,
        codec: EnvelopeCodec,
        redis_client: RedisClientProtocol,
        metrics: PipelineMetrics,
    ) -> EventRelayWorker:
        return EventRelayWorker(
            outbox_store=outbox_store,
            publisher=publisher,
            router=router,
            settings=settings,
            dead_letter_sink=dead_letter_sink,
            alert_sink=alert_sink,
            codec=codec,
            redis_client=redis_client,
            metrics=metrics if settings.ENABLE_METRICS else None,
        )
