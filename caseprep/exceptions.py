"""
CasePrep exception hierarchy.

All custom exceptions inherit from CasePrepError so the HTTP boundary
can catch a single base type and render the error envelope.
"""

from typing import Any, Dict, Optional


class CasePrepError(Exception):
    """Base exception for all CasePrep errors.

    Args:
        message: Human-readable description.
        details: Optional structured context for the error envelope.
    """

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})


class ConfigurationError(CasePrepError, ValueError):
    """Raised when cache, client or settings configuration is invalid."""


class CacheNotConnectedError(ConfigurationError):
    """Raised when the cache is used before ``connect()`` succeeded."""


class ValidationError(CasePrepError, ValueError):
    """Raised when caller input is malformed."""


class TransientError(CasePrepError):
    """Raised for network or timeout failures reaching an external service."""


class CacheConnectionError(TransientError):
    """Raised when the cache store is unreachable."""


class ProviderTimeoutError(TransientError):
    """Raised when a single AI provider attempt exceeds its timeout."""


class MalformedResponseError(TransientError):
    """Raised when the AI provider returns a structurally invalid response."""


class SerializationError(CasePrepError):
    """Raised when a cache value cannot be encoded."""


class NotFoundError(CasePrepError, LookupError):
    """Raised when a referenced feedback record does not exist."""
