"""
Pydantic response models for the feedback REST API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class APIErrorCode(str, Enum):
    """Error codes carried in the error envelope."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    SERIALIZATION_ERROR = "SERIALIZATION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorEnvelope(BaseModel):
    """Uniform error body returned by every endpoint.

    Attributes:
        code: Error code.
        message: Human-readable error description.
        details: Structured context (validation errors, ids...).
        timestamp: ISO-8601 UTC time the error was rendered.
        request_id: Request ID for correlation (``requestId`` on the wire).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: APIErrorCode
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    request_id: str = "unknown"


class HealthResponse(BaseModel):
    """Health check response.

    Attributes:
        status: ``ok`` when the cache is connected, else ``degraded``.
        version: API version string.
        cache: Cache hit/miss counters, when a cache is attached.
    """

    status: str
    version: str
    cache: Optional[Dict[str, Any]] = None
