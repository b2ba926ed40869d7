"""Structured error handling for the outbox pipeline."""

from outbox_pipeline.error_handling.error_detail import ErrorDetail
from outbox_pipeline.error_handling.factories import (
    create_error_detail,
    raise_delivery_failed,
    raise_handler_error,
    raise_kafka_ack_timeout,
    raise_kafka_publish_error,
    raise_malformed_envelope,
    raise_repartition_error,
    raise_store_error,
    raise_unsupported_schema,
    raise_validation_error,
)
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

__all__ = [
    "BrokerAckTimeout",
    "BrokerPublishError",
    "DeliveryFailedError",
    "ErrorDetail",
    "HandlerError",
    "MalformedEnvelopeError",
    "PipelineError",
    "RepartitionError",
    "StoreError",
    "UnsupportedSchemaError",
    "ValidationError",
    "create_error_detail",
    "raise_delivery_failed",
    "raise_handler_error",
    "raise_kafka_ack_timeout",
    "raise_kafka_publish_error",
    "raise_malformed_envelope",
    "raise_repartition_error",
    "raise_store_error",
    "raise_unsupported_schema",
    "raise_validation_error",
]
