"""
JSON codec for the event envelope wire format.

Compatibility rule: a newer *major* schema version is a breaking change and is
rejected; newer minor or patch versions are accepted and their unknown fields
are preserved.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from outbox_pipeline.envelope import REQUIRED_FIELDS, EventEnvelope, parse_schema_major
from outbox_pipeline.error_handling import (
    raise_malformed_envelope,
    raise_unsupported_schema,
    raise_validation_error,
)
from outbox_pipeline.logging_utils import create_service_logger

logger = create_service_logger("outbox_pipeline.codec")


def _first_error_field(error: PydanticValidationError) -> str:
    errors = error.errors()
    if errors and errors[0].get("loc"):
        return ".".join(str(part) for part in errors[0]["loc"])
    return "envelope"


class EnvelopeCodec:
    """Encodes envelopes to UTF-8 JSON bytes and decodes them back."""

    def __init__(self, supported_major: int = 1, service_name: str = "outbox-pipeline") -> None:
        self.supported_major = supported_major
        self.service_name = service_name

    def encode(self, envelope: EventEnvelope | Mapping[str, Any]) -> bytes:
        """
        Serialize an envelope.

        Raises:
            ValidationError: a required field is missing or malformed.
        """
        return json.dumps(
            self.encode_dict(envelope), separators=(",", ":"), sort_keys=True
        ).encode("utf-8")

    def encode_dict(self, envelope: EventEnvelope | Mapping[str, Any]) -> dict[str, Any]:
        """Validate and return the JSON-compatible dict form of an envelope."""
        if isinstance(envelope, EventEnvelope):
            raw = envelope.model_dump(mode="json")
        else:
            raw = dict(envelope)

        for field in REQUIRED_FIELDS:
            if raw.get(field) in (None, ""):
                raise_validation_error(
                    service=self.service_name,
                    operation="encode_envelope",
                    field=field,
                    message=f"Required envelope field '{field}' is missing",
                    event_id=raw.get("event_id"),
                )

        try:
            validated = EventEnvelope.model_validate(raw)
        except PydanticValidationError as e:
            field = _first_error_field(e)
            raise_validation_error(
                service=self.service_name,
                operation="encode_envelope",
                field=field,
                message=f"Envelope field '{field}' is malformed",
                event_id=raw.get("event_id"),
                error_details=str(e),
            )

        return validated.model_dump(mode="json")

    def decode(self, payload: bytes | str) -> EventEnvelope:
        """
        Parse bytes into an envelope.

        Raises:
            MalformedEnvelopeError: input is not a valid envelope.
            UnsupportedSchemaError: the major schema version is too new.
        """
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes | bytearray) else payload
            raw = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise_malformed_envelope(
                service=self.service_name,
                operation="decode_envelope",
                message=f"Envelope is not valid JSON: {e.__class__.__name__}",
                error_details=str(e),
            )

        return self.decode_dict(raw)

    def decode_dict(self, raw: Any) -> EventEnvelope:
        """Validate an already-parsed JSON object as an envelope."""
        if not isinstance(raw, dict):
            raise_malformed_envelope(
                service=self.service_name,
                operation="decode_envelope",
                message=f"Envelope must be a JSON object, got {type(raw).__name__}",
            )

        # The major version is checked first: a newer major may have renamed
        # or removed fields, so field validation would report the wrong error.
        schema_version = raw.get("schema_version")
        if isinstance(schema_version, str):
            try:
                major = parse_schema_major(schema_version)
            except ValueError:
                major = None
            if major is not None and major > self.supported_major:
                logger.warning(
                    "Rejecting envelope with unsupported schema major",
                    extra={
                        "event_id": raw.get("event_id"),
                        "schema_version": schema_version,
                        "supported_major": self.supported_major,
                    },
                )
                raise_unsupported_schema(
                    service=self.service_name,
                    operation="decode_envelope",
                    schema_version=schema_version,
                    supported_major=self.supported_major,
                    event_id=raw.get("event_id"),
                )

        try:
            return EventEnvelope.model_validate(raw)
        except PydanticValidationError as e:
            field = _first_error_field(e)
            raise_malformed_envelope(
                service=self.service_name,
                operation="decode_envelope",
                message=f"Envelope field '{field}' is missing or invalid",
                field=field,
                event_id=raw.get("event_id"),
                error_details=str(e),
            )
