"""Operator alert sinks."""

from __future__ import annotations

from typing import Any

from outbox_pipeline.logging_utils import create_service_logger
from outbox_pipeline.metrics import PipelineMetrics
from outbox_pipeline.protocols import AlertSinkProtocol

logger = create_service_logger("outbox_pipeline.alerting")


class LoggingAlertSink(AlertSinkProtocol):
    """Emits alerts as CRITICAL log lines and counts them for alerting rules."""

    def __init__(self, metrics: PipelineMetrics | None = None) -> None:
        self._metrics = metrics

    async def alert(self, summary: str, **context: Any) -> None:
        logger.critical(summary, extra=context)
        if self._metrics is not None:
            self._metrics.alerts_raised.labels(stage=str(context.get("stage", "unknown"))).inc()


class InMemoryAlertSink(AlertSinkProtocol):
    """Collects alerts for inspection."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, summary: str, **context: Any) -> None:
        self.alerts.append((summary, dict(context)))
