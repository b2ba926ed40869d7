"""
Thin Kafka publisher using aiokafka.

The producer runs with ``acks="all"`` and idempotence enabled. The relay picks
the partition itself, so publishes carry an explicit partition rather than
relying on the client's key hashing.
"""

from __future__ import annotations

from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError

from outbox_pipeline.error_handling import raise_kafka_publish_error
from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.protocols import BrokerPublisherProtocol

logger = create_service_logger("outbox_pipeline.kafka_client")


class KafkaEventPublisher(BrokerPublisherProtocol):
    def __init__(
        self,
        *,
        client_id: str,
        bootstrap_servers: str,
        service_name: str = "outbox-pipeline",
        producer: Any | None = None,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.service_name = service_name
        self.producer = producer or AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            acks="all",
            enable_idempotence=True,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        try:
            await self.producer.start()
            self._started = True
            logger.info(f"KafkaProducer '{self.client_id}' started successfully.")
        except KafkaConnectionError as e:
            logger.error(f"KafkaProducer '{self.client_id}' failed to start: {e}")
            raise

    async def stop(self) -> None:
        try:
            # Stop even when never started so a half-built producer does not leak.
            await self.producer.stop()
            self._started = False
            logger.info(f"KafkaProducer '{self.client_id}' stopped.")
        except Exception as e:
            logger.error(
                f"Error stopping KafkaProducer '{self.client_id}': {e}",
                exc_info=True,
            )

    async def publish(
        self,
        topic: str,
        value: bytes,
        *,
        key: bytes | None,
        partition: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Publish to ``topic``/``partition`` and wait for the broker acknowledgement.

        Without an explicit ``partition`` the client's default partitioner hashes ``key``.

        Raises:
            BrokerPublishError: the broker rejected the write.
            RuntimeError: the producer was never started.
        """
        if not self._started:
            raise RuntimeError(f"KafkaProducer '{self.client_id}' is not running.")

        kafka_headers = [(k, v.encode("utf-8")) for k, v in (headers or {}).items()]
        try:
            record_metadata = await self.producer.send_and_wait(
                topic,
                value=value,
                key=key,
                partition=partition,
                headers=kafka_headers or None,
            )
        except KafkaError as e:
            logger.error(
                f"Error publishing message by '{self.client_id}' to topic '{topic}': {e}",
                exc_info=True,
            )
            raise_kafka_publish_error(
                service=self.service_name,
                operation="publish",
                topic=topic,
                message=f"Broker rejected publish: {e.__class__.__name__}",
                partition=partition,
                error_details=str(e),
            )

        logger.debug(
            f"Message published by '{self.client_id}' to {topic} "
            f"[partition:{record_metadata.partition}, offset:{record_metadata.offset}]",
        )
        return record_metadata

    async def partition_count(self, topic: str) -> int | None:
        if not self._started:
            raise RuntimeError(f"KafkaProducer '{self.client_id}' is not running.")
        partitions = await self.producer.partitions_for(topic)
        return len(partitions) if partitions else None
