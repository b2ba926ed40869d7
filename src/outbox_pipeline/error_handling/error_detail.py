"""
Standardized, PURE error data model for the pipeline.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from outbox_pipeline.error_enums import ErrorCode


class ErrorDetail(BaseModel):
    """
    The canonical data model for an error raised anywhere in the pipeline.
    This model contains only data fields and no behavior.
    """

    error_code: ErrorCode
    message: str
    correlation_id: UUID
    timestamp: datetime
    service: str
    operation: str
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)
