"""Typed errors raised by source and destination adapters."""

from __future__ import annotations

from typing import Any


class SyncAdapterError(RuntimeError):
    """Base error for source/destination adapter failures."""


class RateLimitError(SyncAdapterError):
    """The remote API rejected the call for rate limiting."""

    def __init__(self, message: str, *, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class AdapterTimeoutError(SyncAdapterError, TimeoutError):
    """The remote API did not answer within the configured timeout."""


class SourceTimeoutError(AdapterTimeoutError):
    """A source API call timed out."""


class DestinationTimeoutError(AdapterTimeoutError):
    """A destination API call timed out."""


class ApiError(SyncAdapterError):
    """Non-retryable remote API failure carrying the HTTP status and body."""

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AdapterConfigError(SyncAdapterError):
    """Raised when required adapter configuration is missing."""


TRANSIENT_ERRORS: tuple[type[Exception], ...] = (RateLimitError, AdapterTimeoutError)


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


__all__ = [
    "AdapterConfigError",
    "AdapterTimeoutError",
    "DestinationTimeoutError",
    "SourceTimeoutError",
    "ApiError",
    "RateLimitError",
    "SyncAdapterError",
    "TRANSIENT_ERRORS",
    "parse_retry_after",
]
