"""
Exception hierarchy for the outbox pipeline.

Every error carries a frozen ErrorDetail so that logs, dead-letter records and
alerts all see the same structured context. Subclasses only differ in their
type (for ``except`` clauses) and in whether the failure is worth retrying.
"""

from __future__ import annotations

from typing import Any

from outbox_pipeline.error_handling.error_detail import ErrorDetail


class PipelineError(Exception):
    """Base exception wrapping an ErrorDetail."""

    retriable: bool = False

    def __init__(self, error_detail: ErrorDetail) -> None:
        super().__init__(error_detail.message)
        self.error_detail = error_detail

    def __str__(self) -> str:
        return f"[{self.error_detail.error_code.value}] {self.error_detail.message}"

    @property
    def error_code(self) -> str:
        return self.error_detail.error_code.value

    @property
    def correlation_id(self) -> str:
        return str(self.error_detail.correlation_id)

    @property
    def service(self) -> str:
        return self.error_detail.service

    @property
    def operation(self) -> str:
        return self.error_detail.operation

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging and dead-letter records."""
        return {
            "error": str(self),
            "error_type": type(self).__name__,
            "retriable": self.retriable,
            "error_detail": self.error_detail.model_dump(mode="json"),
        }

    def add_detail(self, key: str, value: Any) -> PipelineError:
        """Return a new error of the same type with an extra detail entry."""
        details = {**self.error_detail.details, key: value}
        new_detail = self.error_detail.model_copy(update={"details": details})
        return type(self)(new_detail)


class ValidationError(PipelineError):
    """Envelope failed validation before encoding."""


class MalformedEnvelopeError(PipelineError):
    """Bytes could not be parsed into an envelope."""


class UnsupportedSchemaError(PipelineError):
    """Envelope major schema version is newer than this consumer understands."""


class StoreError(PipelineError):
    """Outbox or dedup store unavailable, or used outside a transaction."""

    retriable = True


class BrokerPublishError(PipelineError):
    """Broker rejected or failed the publish."""

    retriable = True


class BrokerAckTimeout(BrokerPublishError):
    """Broker did not acknowledge within the publish timeout."""


class HandlerError(PipelineError):
    """Domain handler failed to process an event."""

    retriable = True


class DeliveryFailedError(PipelineError):
    """Delivery must not be committed; the broker has to redeliver it."""

    retriable = True


class RepartitionError(PipelineError):
    """Broker partition count differs from the configured partition count."""
