"""
Partition routing for outbox events.

The router uses the same murmur2 hash as Kafka's default partitioner, so an
event published to an explicit partition by the relay lands exactly where a
keyed publish from any other Kafka client would. The mapping is only stable
for a fixed partition count.
"""

from __future__ import annotations

from aiokafka.partitioner import murmur2

from outbox_pipeline.error_handling import raise_repartition_error
from outbox_pipeline.logging_utils import create_service_logger

logger = create_service_logger("outbox_pipeline.partitioning")


def partition_for_key(partition_key: str, partition_count: int) -> int:
    """Map ``partition_key`` to an index in ``[0, partition_count)``."""
    if partition_count < 1:
        raise ValueError(f"partition_count must be >= 1, got {partition_count}")
    digest = murmur2(partition_key.encode("utf-8"))
    return (digest & 0x7FFFFFFF) % partition_count


class PartitionRouter:
    """Routes partition keys for a fixed partition count."""

    def __init__(self, partition_count: int, service_name: str = "outbox-pipeline") -> None:
        if partition_count < 1:
            raise ValueError(f"partition_count must be >= 1, got {partition_count}")
        self.partition_count = partition_count
        self.service_name = service_name

    def partition(self, partition_key: str) -> int:
        return partition_for_key(partition_key, self.partition_count)

    def verify_partition_count(self, topic: str, actual_partition_count: int) -> None:
        """
        Refuse to route when the broker disagrees with the configured count.

        Repartitioning silently remaps existing keys and breaks per-key
        ordering, so it is treated as an operator-driven migration.

        Raises:
            RepartitionError: counts differ.
        """
        if actual_partition_count != self.partition_count:
            logger.critical(
                "Partition count mismatch, refusing to route events",
                extra={
                    "topic": topic,
                    "configured_partitions": self.partition_count,
                    "actual_partitions": actual_partition_count,
                },
            )
            raise_repartition_error(
                service=self.service_name,
                operation="verify_partition_count",
                topic=topic,
                configured=self.partition_count,
                actual=actual_partition_count,
            )
