"""
Error taxonomy shared by the client, stores, and batch pipeline.

Only ``QuotaExceededError`` is retryable (by rotating to another credential);
every other generation failure is fatal for the row it happened on.
"""

from typing import Optional


class StockMetaError(Exception):
    """Base exception for all Stockmeta errors."""
    pass


class GenerationTimeoutError(StockMetaError):
    """Raised when a remote call exceeds its hard timeout."""
    pass


class QuotaExceededError(StockMetaError):
    """Raised when the provider reports a rate or usage limit (HTTP 429)."""

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds


class ApiError(StockMetaError):
    """Raised when the provider rejects a request for a non-quota reason."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.http_status = http_status


class NetworkError(ApiError):
    """Raised when the request never produced an HTTP response."""

    def __init__(self, message: str):
        super().__init__(message, http_status=None)


class MalformedResponseError(StockMetaError):
    """Raised when the provider answered but the content is unusable."""
    pass


class NoModelAvailableError(StockMetaError):
    """Raised when no listed model supports content generation."""
    pass


class PersistenceError(StockMetaError):
    """Raised when the local key-value store rejects a write."""
    pass


class ValidationError(StockMetaError):
    """Raised when an input file or credential is rejected before any network call."""
    pass


class InvalidTransitionError(StockMetaError):
    """Raised when a row status change would break the row state machine."""
    pass


class BatchInProgressError(StockMetaError):
    """Raised when an operation is refused because a batch is running."""
    pass
