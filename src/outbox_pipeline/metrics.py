"""Prometheus metrics for the outbox relay and the consumer dispatcher.

Metrics are created once per registry and shared by every component in the
process. Tests pass a fresh ``CollectorRegistry`` to avoid duplicate
registration errors.
"""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from outbox_pipeline.logging_utils import create_service_logger

logger = create_service_logger("outbox_pipeline.metrics")

_shared: PipelineMetrics | None = None


class PipelineMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = registry if registry is not None else REGISTRY

        # Relay
        self.relay_published = Counter(
            "outbox_relay_published_total",
            "Outbox events acknowledged by the broker",
            ["topic"],
            registry=registry,
        )
        self.relay_publish_failures = Counter(
            "outbox_relay_publish_failures_total",
            "Outbox publish attempts that failed or timed out",
            ["topic", "error_code"],
            registry=registry,
        )
        self.relay_dead_lettered = Counter(
            "outbox_relay_dead_lettered_total",
            "Outbox events moved to FAILED after exhausting retries",
            ["topic"],
            registry=registry,
        )
        self.relay_batch_size = Histogram(
            "outbox_relay_batch_size",
            "Rows leased per relay batch",
            buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
            registry=registry,
        )
        self.relay_publish_duration = Histogram(
            "outbox_relay_publish_duration_seconds",
            "Time from publish call to broker acknowledgement",
            ["topic"],
            registry=registry,
        )
        self.outbox_pending = Gauge(
            "outbox_pending_rows",
            "PENDING rows in the outbox at the last relay poll",
            registry=registry,
        )

        # Consumer
        self.consumer_processed = Counter(
            "outbox_consumer_processed_total",
            "Events handled successfully",
            ["consumer_group", "event_type"],
            registry=registry,
        )
        self.consumer_duplicates = Counter(
            "outbox_consumer_duplicates_total",
            "Redeliveries skipped by the dedup store",
            ["consumer_group"],
            registry=registry,
        )
        self.consumer_retries = Counter(
            "outbox_consumer_retries_total",
            "Handler attempts that failed and were retried",
            ["consumer_group", "event_type"],
            registry=registry,
        )
        self.consumer_dead_lettered = Counter(
            "outbox_consumer_dead_lettered_total",
            "Events dead-lettered by the consumer",
            ["consumer_group", "reason"],
            registry=registry,
        )
        self.handler_duration = Histogram(
            "outbox_consumer_handler_duration_seconds",
            "Handler execution time per attempt",
            ["event_type"],
            registry=registry,
        )

        # Alerts
        self.alerts_raised = Counter(
            "outbox_alerts_total",
            "Operator alerts raised by the pipeline",
            ["stage"],
            registry=registry,
        )


def get_metrics() -> PipelineMetrics:
    """Return process-wide metrics bound to the default registry."""
    global _shared

    if _shared is None:
        _shared = PipelineMetrics()
        logger.info("Pipeline metrics initialized")

    return _shared
