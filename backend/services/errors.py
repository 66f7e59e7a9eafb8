"""Error types shared by the ChatRelay services."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ErrorDetail:
    """Structured error information carried by every ChatAppError."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class ChatAppError(Exception):
    """Base exception with structured error information and an HTTP status."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.error = ErrorDetail(
            code=code or self.default_code,
            message=message,
            details=details or {},
        )
        super().__init__(message)


class ConfigurationError(ChatAppError):
    """A required setting (e.g. the provider credential) is missing."""

    default_code = "CONFIGURATION_ERROR"


class ValidationError(ChatAppError):
    """Client input was rejected; nothing was persisted."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(ChatAppError):
    """Unknown conversation or message."""

    status_code = 404
    default_code = "NOT_FOUND"


class ProviderError(ChatAppError):
    """The LLM provider failed (rate limit, network, malformed or empty response)."""

    status_code = 503
    default_code = "API_ERROR"
