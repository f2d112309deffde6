"""
Unified exception hierarchy for the finance sync engine.

This module defines the exception hierarchy with FinanceSyncError as the
base exception, so callers can handle every engine failure uniformly while
still distinguishing authentication, provider, store, and validation errors.
"""

from typing import Optional


class FinanceSyncError(Exception):
    """
    Base exception class for all finance sync engine errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
        original_error: Optional original exception that caused this error
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        """
        Initialize FinanceSyncError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error context
            original_error: Optional original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        msg = self.message
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg = f"{msg} ({detail_str})"
        return msg


class ConfigError(FinanceSyncError):
    """Raised when configuration loading or validation fails."""
    pass


class NotAuthenticatedError(FinanceSyncError):
    """Raised when an operation needs a signed-in user and none is present."""
    pass


class ProviderError(FinanceSyncError):
    """Raised when the external financial-data provider is unreachable or rejects a call."""
    pass


class StoreError(FinanceSyncError):
    """Raised when a document store read or write fails."""
    pass


class StoreWriteError(StoreError):
    """
    Raised when a batch commit fails.

    The details carry ``batch_index`` (zero-based index of the failed batch),
    ``committed_batches`` and ``total_batches`` so callers can tell how far
    the write got before stopping.
    """

    @property
    def batch_index(self) -> Optional[int]:
        return self.details.get("batch_index")

    @property
    def committed_batches(self) -> int:
        return self.details.get("committed_batches", 0)


class ValidationError(FinanceSyncError):
    """Raised when a single user operation is rejected (e.g. duplicate category name)."""
    pass


class NotFoundError(FinanceSyncError):
    """Raised when a required document does not exist."""
    pass


class AnalyticsError(FinanceSyncError):
    """Raised when aggregation inputs are malformed (e.g. a bad month key)."""
    pass


class SyncCancelledError(FinanceSyncError):
    """Raised inside a sync run when cancellation was requested at a batch or phase boundary."""
    pass


class EncryptionError(FinanceSyncError):
    """Base error for encryption failures."""
    pass


class EncryptionKeyError(EncryptionError):
    """Raised when encryption key loading or validation fails."""
    pass


class DecryptionError(EncryptionError):
    """Raised when decryption fails."""
    pass
