# fleet_trip_sync/errors.py
"""
Error taxonomy for the sync core.

Every failure the core raises derives from SyncError. The subclasses map onto
how a scheduled run reacts to them:

- RateLimited: provider-imposed throttling. Always retryable after a backoff,
  and treated as a run-abort signal, never as a per-device failure.
- ProviderError: any other non-2xx, malformed, or rejected provider response.
  The affected device is skipped and the run continues.
- RecordValidationError: a single raw record fails basic sanity (end before
  start, coordinates out of range). The record is dropped with a diagnostic.
- StoreError: checkpoint, rate-limit state, or telemetry log persistence
  failed. Fatal for the current run.

RateLimited is deliberately not a ProviderError subclass so that a device-level
`except ProviderError` handler can never swallow the abort signal.
"""

from typing import Any

__all__: list[str] = [
    'ProviderError',
    'RateLimited',
    'RecordValidationError',
    'StoreError',
    'SyncError',
]


class SyncError(Exception):
    """Root of the sync core's exception hierarchy."""


class ProviderError(SyncError):
    """
    Raised for provider failures other than rate limiting.

    Attributes:
        status_code: HTTP status code or provider status code, if known.
        response_body: Raw (truncated) response body for debugging.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.response_body: str | None = response_body


class RateLimited(SyncError):
    """
    Raised when the provider rate limit is in force.

    Either the provider rejected the call with a rate-limit code and internal
    retries were exhausted, or a shared backoff window set by another
    invocation is longer than this caller is willing to wait.

    Attributes:
        retry_after_seconds: Suggested wait before the next attempt.
        status_code: Provider status code that triggered the limit, if any.
    """

    def __init__(
        self,
        message: str,
        retry_after_seconds: float = 0.0,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after_seconds: float = retry_after_seconds
        self.status_code: int | None = status_code


class RecordValidationError(SyncError):
    """
    Raised when one raw record fails sanity checks and must be dropped.

    Attributes:
        record: The offending raw payload, kept for the diagnostic log line.
    """

    def __init__(self, message: str, record: Any = None) -> None:
        super().__init__(message)
        self.record: Any = record


class StoreError(SyncError):
    """Raised when the durable store cannot be read or written."""
