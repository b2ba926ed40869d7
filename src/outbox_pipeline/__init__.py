"""
Outbox Pipeline Package.

Transactional outbox relay and idempotent, partition-ordered event
consumption on top of Kafka, Redis and SQLAlchemy.
"""

from .codec import EnvelopeCodec
from .config import PipelineSettings
from .envelope import EventEnvelope, new_envelope
from .kafka_client import KafkaEventPublisher
from .partitioning import PartitionRouter, partition_for_key
from .redis_client import RedisClient

__version__ = "0.1.0"

__all__ = [
    "EnvelopeCodec",
    "EventEnvelope",
    "KafkaEventPublisher",
    "PartitionRouter",
    "PipelineSettings",
    "RedisClient",
    "new_envelope",
    "partition_for_key",
]
