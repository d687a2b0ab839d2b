"""Exception hierarchy for ics_scraper.

Every error raised by the pipeline is a ``ScraperError`` carrying a machine-readable
``ErrorCode`` and an explicit ``retryable`` flag so callers can apply their own retry
policy without inspecting messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced to callers."""

    # Network errors
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    DNS_FAILURE = "DNS_FAILURE"

    # HTTP errors
    HTTP_CLIENT_ERROR = "HTTP_CLIENT_ERROR"
    HTTP_SERVER_ERROR = "HTTP_SERVER_ERROR"
    HTTP_NOT_FOUND = "HTTP_NOT_FOUND"

    # Parsing errors
    PARSE_ERROR = "PARSE_ERROR"
    INVALID_HTML = "INVALID_HTML"
    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"

    # LLM errors
    AI_API_ERROR = "AI_API_ERROR"
    AI_RATE_LIMIT = "AI_RATE_LIMIT"
    AI_INVALID_RESPONSE = "AI_INVALID_RESPONSE"

    # Validation errors
    INVALID_EVENT_DATA = "INVALID_EVENT_DATA"
    INVALID_DATE_FORMAT = "INVALID_DATE_FORMAT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

    # System errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


_HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.CONFIGURATION_ERROR: 400,
    ErrorCode.INVALID_EVENT_DATA: 400,
    ErrorCode.INVALID_DATE_FORMAT: 400,
    ErrorCode.MISSING_REQUIRED_FIELD: 400,
    ErrorCode.HTTP_NOT_FOUND: 404,
    ErrorCode.AI_RATE_LIMIT: 429,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
}


def http_status_for(code: ErrorCode | str) -> int:
    """Map an error code to the HTTP status an external handler should return."""
    try:
        key = ErrorCode(code)
    except ValueError:
        return 500
    return _HTTP_STATUS_BY_CODE.get(key, 500)


class ScraperError(Exception):
    """Base exception for all ics_scraper failures.

    Args:
        message: Human readable description
        code: Machine readable error code
        details: Optional structured context (status codes, urls, counts)
        retryable: Whether repeating the same operation may succeed
    """

    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logging or transport."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value}, retryable={self.retryable}, message={self.message!r})"


class ConfigurationError(ScraperError):
    """Raised when the scrape configuration is unusable.

    Raised when:
    - The source URL is missing or is not an http(s) URL
    - No LLM API key is configured and no client was injected
    - Option values are out of range
    """

    default_code = ErrorCode.CONFIGURATION_ERROR


class FetchError(ScraperError):
    """Raised when page content cannot be retrieved.

    Raised when:
    - DNS resolution fails or the connection is refused
    - The server answers with a 4xx or 5xx status
    - The request times out or the body is empty
    """

    default_code = ErrorCode.NETWORK_ERROR


class ContentError(ScraperError):
    """Raised when fetched content holds nothing extractable."""

    default_code = ErrorCode.INVALID_HTML


class ExtractionError(ScraperError):
    """Raised when the LLM extraction produced no usable events.

    Raised when:
    - The LLM API fails before any event was accumulated
    - The first response contains no JSON structure at all
    """

    default_code = ErrorCode.AI_API_ERROR


class ICSGenerationError(ScraperError):
    """Raised when a calendar document cannot be produced at all."""

    default_code = ErrorCode.INTERNAL_ERROR
