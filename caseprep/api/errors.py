"""
Mapping from pipeline exceptions to the API error envelope.
"""

from typing import Any, Dict, Optional, Tuple

import openai

from caseprep.api.schemas import APIErrorCode, ErrorEnvelope
from caseprep.exceptions import (
    CacheNotConnectedError,
    CasePrepError,
    ConfigurationError,
    NotFoundError,
    SerializationError,
    TransientError,
    ValidationError,
)


# Checked in order; subclasses before their bases
_ERROR_MAP: Tuple[Tuple[type, APIErrorCode, int], ...] = (
    (ValidationError, APIErrorCode.VALIDATION_ERROR, 400),
    (NotFoundError, APIErrorCode.NOT_FOUND, 404),
    (CacheNotConnectedError, APIErrorCode.SERVICE_UNAVAILABLE, 503),
    (ConfigurationError, APIErrorCode.CONFIGURATION_ERROR, 500),
    (SerializationError, APIErrorCode.SERIALIZATION_ERROR, 500),
    (TransientError, APIErrorCode.SERVICE_UNAVAILABLE, 503),
    (openai.APIError, APIErrorCode.SERVICE_UNAVAILABLE, 503),
)


def to_envelope(
    exc: BaseException,
    request_id: str = "unknown",
    details: Optional[Dict[str, Any]] = None,
) -> Tuple[int, ErrorEnvelope]:
    """Render *exc* as ``(http_status, ErrorEnvelope)``.

    Unknown exceptions become ``INTERNAL_ERROR`` without leaking their
    message.
    """
    for exc_type, code, status_code in _ERROR_MAP:
        if isinstance(exc, exc_type):
            message = exc.message if isinstance(exc, CasePrepError) and exc.message else str(exc)
            merged: Dict[str, Any] = {}
            if isinstance(exc, CasePrepError):
                merged.update(exc.details)
            elif isinstance(exc, openai.APIError):
                merged["provider_error"] = type(exc).__name__
            merged.update(details or {})
            return status_code, ErrorEnvelope(
                code=code, message=message, details=merged, request_id=request_id
            )

    return 500, ErrorEnvelope(
        code=APIErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred",
        details=details or {},
        request_id=request_id,
    )
