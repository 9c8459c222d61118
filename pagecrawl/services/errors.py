"""Crawl error taxonomy.

Page-scoped errors (navigation, extraction) are recorded against the page
and the run proceeds. Run-scoped errors (configuration, pool exhaustion)
either reject the request before any work starts or abort the run.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple


class CrawlError(Exception):
    """Base exception for crawl errors."""

    pass


class FieldError(NamedTuple):
    """A single invalid configuration field.

    Attributes:
        field: Request field name, as submitted (camelCase).
        message: Why the value was rejected.
    """

    field: str
    message: str


class ConfigValidationError(CrawlError):
    """Raised when a crawl request is invalid. Enumerates every invalid field."""

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        fields = ", ".join(err.field for err in self.errors) or "request"
        super().__init__(f"Invalid crawl configuration: {fields}")

    def to_dict(self) -> dict:
        return {
            "error": "invalid_configuration",
            "fields": [
                {"field": err.field, "message": err.message} for err in self.errors
            ],
        }


class NavigationError(CrawlError):
    """Raised when a page cannot be loaded.

    Attributes:
        retryable: True for timeouts, network errors and transient HTTP
            statuses; False for other 4xx responses and permanent DNS failures.
        status: HTTP status code when the server answered, else None.
    """

    def __init__(self, message: str, *, retryable: bool, status: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class ExtractionErrorKind(str, Enum):
    """Why a page function did not produce a record."""

    SYNTAX_ERROR = "syntax_error"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    MALFORMED_RESULT = "malformed_result"
    REJECTED_SOURCE = "rejected_source"


class ExtractionError(CrawlError):
    """Raised when the page function fails. Always page-scoped, never retried."""

    def __init__(self, kind: ExtractionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class PoolExhaustionError(CrawlError):
    """Raised when no browser session can be acquired."""

    pass


def error_kind(error: BaseException) -> str:
    """Short machine-readable name for an error, used in results and events."""
    if isinstance(error, ExtractionError):
        return error.kind.value
    if isinstance(error, NavigationError):
        return "navigation_error"
    if isinstance(error, PoolExhaustionError):
        return "pool_exhausted"
    return "internal_error"
