"""
Event envelope shared by producers, the outbox relay and consumers.

The envelope is immutable. Fields this version does not know about are kept in
``model_extra`` and written back out on encode, so a consumer on 1.2 can relay
or dead-letter a 1.3 envelope without losing data.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION_PATTERN = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")
EVENT_TYPE_PATTERN = re.compile(r"^[a-z0-9_\-]+(\.[a-z0-9_\-]+)+$")

REQUIRED_FIELDS = ("event_id", "event_type", "schema_version", "data")


def parse_schema_major(schema_version: str) -> int:
    """Return the major component of a ``major.minor.patch`` version string."""
    match = SCHEMA_VERSION_PATTERN.match(schema_version)
    if match is None:
        raise ValueError(f"schema_version must be 'major.minor.patch', got {schema_version!r}")
    return int(match.group(1))


class EventEnvelope(BaseModel):
    event_id: str = Field(min_length=1)
    event_type: str  # e.g., "order.created"
    schema_version: str = "1.0.0"
    produced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    producer: str = "unknown:0.0.0"
    correlation_id: str | None = None
    causation_id: str | None = None
    partition_key: str = Field(min_length=1)
    data: dict[str, Any]

    model_config = ConfigDict(frozen=True, extra="allow")

    @field_validator("event_type")
    @classmethod
    def _check_event_type(cls, value: str) -> str:
        if not EVENT_TYPE_PATTERN.match(value):
            raise ValueError(f"event_type must be a dotted domain name, got {value!r}")
        return value

    @field_validator("schema_version")
    @classmethod
    def _check_schema_version(cls, value: str) -> str:
        parse_schema_major(value)
        return value

    @field_validator("produced_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def schema_major(self) -> int:
        return parse_schema_major(self.schema_version)

    @property
    def unknown_fields(self) -> dict[str, Any]:
        """Top-level fields carried through from a newer minor version."""
        return dict(self.model_extra or {})


def new_envelope(
    *,
    event_type: str,
    data: dict[str, Any],
    partition_key: str,
    producer: str,
    schema_version: str = "1.0.0",
    correlation_id: str | None = None,
    causation: EventEnvelope | None = None,
) -> EventEnvelope:
    """
    Build a new envelope with a freshly assigned ``event_id``.

    This is the only place an ``event_id`` is generated. Retrying producers
    must keep the returned envelope (or its row in the outbox) rather than
    calling this again for the same logical event.

    When ``causation`` is given, the new event inherits its correlation id and
    records the parent's ``event_id`` as ``causation_id``.
    """
    causation_id = None
    if causation is not None:
        causation_id = causation.event_id
        correlation_id = correlation_id or causation.correlation_id or causation.event_id

    return EventEnvelope(
        event_id=str(uuid4()),
        event_type=event_type,
        schema_version=schema_version,
        producer=producer,
        correlation_id=correlation_id,
        causation_id=causation_id,
        partition_key=partition_key,
        data=data,
    )
