"""
Factory functions that build an ErrorDetail and raise the matching error type.

All factories share the signature convention ``service``, ``operation``,
``message``, ``correlation_id`` plus free-form keyword context that ends up in
``ErrorDetail.details``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, NoReturn
from uuid import UUID

from outbox_pipeline.error_enums import ErrorCode
from outbox_pipeline.error_handling.error_detail import ErrorDetail
from outbox_pipeline.error_handling.pipeline_error import (
    BrokerAckTimeout,
    BrokerPublishError,
    DeliveryFailedError,
    HandlerError,
    MalformedEnvelopeError,
    PipelineError,
    RepartitionError,
    StoreError,
    UnsupportedSchemaError,
    ValidationError,
)

NIL_CORRELATION_ID = UUID("00000000-0000-0000-0000-000000000000")


def create_error_detail(
    *,
    error_code: ErrorCode,
    message: str,
    service: str,
    operation: str,
    correlation_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> ErrorDetail:
    return ErrorDetail(
        error_code=error_code,
        message=message,
        correlation_id=correlation_id or NIL_CORRELATION_ID,
        timestamp=datetime.now(UTC),
        service=service,
        operation=operation,
        details=details or {},
    )


def _build(
    error_type: type[PipelineError],
    error_code: ErrorCode,
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID | None,
    details: dict[str, Any],
) -> PipelineError:
    detail = create_error_detail(
        error_code=error_code,
        message=message,
        service=service,
        operation=operation,
        correlation_id=correlation_id,
        details=details,
    )
    return error_type(detail)


def raise_validation_error(
    service: str,
    operation: str,
    field: str,
    message: str,
    correlation_id: UUID | None = None,
    value: Any = None,
    **additional_context: Any,
) -> NoReturn:
    details: dict[str, Any] = {"field": field}
    if value is not None:
        details["value"] = value
    details.update(additional_context)
    raise _build(
        ValidationError,
        ErrorCode.VALIDATION_ERROR,
        service,
        operation,
        message,
        correlation_id,
        details,
    )


def raise_malformed_envelope(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        MalformedEnvelopeError,
        ErrorCode.MALFORMED_ENVELOPE,
        service,
        operation,
        message,
        correlation_id,
        dict(additional_context),
    )


def raise_unsupported_schema(
    service: str,
    operation: str,
    schema_version: str,
    supported_major: int,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        UnsupportedSchemaError,
        ErrorCode.UNSUPPORTED_SCHEMA,
        service,
        operation,
        f"Schema version '{schema_version}' is newer than supported major {supported_major}",
        correlation_id,
        {
            "schema_version": schema_version,
            "supported_major": supported_major,
            **additional_context,
        },
    )


def raise_store_error(
    service: str,
    operation: str,
    store: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        StoreError,
        ErrorCode.STORE_UNAVAILABLE,
        service,
        operation,
        message,
        correlation_id,
        {"store": store, **additional_context},
    )


def raise_kafka_publish_error(
    service: str,
    operation: str,
    topic: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        BrokerPublishError,
        ErrorCode.KAFKA_PUBLISH_ERROR,
        service,
        operation,
        message,
        correlation_id,
        {"topic": topic, **additional_context},
    )


def raise_kafka_ack_timeout(
    service: str,
    operation: str,
    topic: str,
    timeout_seconds: float,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        BrokerAckTimeout,
        ErrorCode.KAFKA_ACK_TIMEOUT,
        service,
        operation,
        f"Broker did not acknowledge publish to '{topic}' within {timeout_seconds}s",
        correlation_id,
        {"topic": topic, "timeout_seconds": timeout_seconds, **additional_context},
    )


def raise_handler_error(
    service: str,
    operation: str,
    event_type: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        HandlerError,
        ErrorCode.HANDLER_ERROR,
        service,
        operation,
        message,
        correlation_id,
        {"event_type": event_type, **additional_context},
    )


def raise_delivery_failed(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    raise _build(
        DeliveryFailedError,
        ErrorCode.DELIVERY_FAILED,
        service,
        operation,
        message,
        correlation_id,
        dict(additional_context),
    )


def raise_repartition_error(
    service: str,
    operation: str,
    topic: str,
    configured: int,
    actual: int,
    correlation_id: UUID | None = None,
) -> NoReturn:
    raise _build(
        RepartitionError,
        ErrorCode.REPARTITION_DETECTED,
        service,
        operation,
        (
            f"Topic '{topic}' has {actual} partitions but {configured} are configured; "
            "repartitioning breaks per-key ordering and requires a coordinated migration"
        ),
        correlation_id,
        {"topic": topic, "configured_partitions": configured, "actual_partitions": actual},
    )
