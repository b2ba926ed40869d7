"""Idempotent, partition-ordered event consumption."""

from .dispatcher import (
    Committer,
    Delivery,
    DeliveryOutcome,
    DispatcherState,
    PartitionDispatcher,
)
from .handlers import HandlerFunc, HandlerRegistry
from .kafka_consumer import PartitionedKafkaConsumer

__all__ = [
    "Committer",
    "Delivery",
    "DeliveryOutcome",
    "DispatcherState",
    "HandlerFunc",
    "HandlerRegistry",
    "PartitionDispatcher",
    "PartitionedKafkaConsumer",
]
