"""
outbox_pipeline.error_enums - Centralized error code definitions.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # Envelope-level, non-retriable without a code change
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MALFORMED_ENVELOPE = "MALFORMED_ENVELOPE"
    UNSUPPORTED_SCHEMA = "UNSUPPORTED_SCHEMA"

    # Transient infrastructure failures
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    KAFKA_PUBLISH_ERROR = "KAFKA_PUBLISH_ERROR"
    KAFKA_ACK_TIMEOUT = "KAFKA_ACK_TIMEOUT"
    DELIVERY_FAILED = "DELIVERY_FAILED"

    # Domain processing
    HANDLER_ERROR = "HANDLER_ERROR"
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"

    # Operational
    REPARTITION_DETECTED = "REPARTITION_DETECTED"
