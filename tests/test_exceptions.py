"""
Unit tests for the unified exception hierarchy.

Tests exception creation, attributes, string representations, and error context.
"""

import pytest
from exceptions import (
    FinanceSyncError,
    ConfigError,
    NotAuthenticatedError,
    ProviderError,
    StoreError,
    StoreWriteError,
    ValidationError,
    NotFoundError,
    AnalyticsError,
    SyncCancelledError,
    EncryptionError,
    EncryptionKeyError,
    DecryptionError,
)


class TestFinanceSyncError:
    """Test base FinanceSyncError class."""

    def test_basic_exception_creation(self):
        """Test creating a basic FinanceSyncError."""
        error = FinanceSyncError("Test error message")
        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.details == {}
        assert error.original_error is None

    def test_exception_with_details(self):
        """Test creating exception with details dictionary."""
        details = {"key1": "value1", "key2": 123}
        error = FinanceSyncError("Test error", details=details)
        assert error.details == details
        assert str(error) == "Test error (key1=value1, key2=123)"

    def test_exception_with_original_error(self):
        """Test creating exception with original error chaining."""
        original = ValueError("Original error")
        error = FinanceSyncError("Wrapped error", original_error=original)
        assert error.original_error is original


class TestExceptionHierarchy:
    """Test specific exception subclasses."""

    @pytest.mark.parametrize("error_cls", [
        ConfigError,
        NotAuthenticatedError,
        ProviderError,
        StoreError,
        ValidationError,
        NotFoundError,
        AnalyticsError,
        SyncCancelledError,
        EncryptionError,
    ])
    def test_subclasses_share_base(self, error_cls):
        """Every engine error can be caught as FinanceSyncError."""
        with pytest.raises(FinanceSyncError):
            raise error_cls("boom")

    def test_store_write_error_is_store_error(self):
        """Batch failures are store errors carrying the failed batch index."""
        error = StoreWriteError(
            "Batch commit failed",
            details={"batch_index": 2, "committed_batches": 2, "total_batches": 5}
        )
        assert isinstance(error, StoreError)
        assert error.batch_index == 2
        assert error.committed_batches == 2
        assert "batch_index=2" in str(error)

    def test_store_write_error_without_index(self):
        """An oversized batch has no batch index."""
        error = StoreWriteError("Batch exceeds store limit")
        assert error.batch_index is None
        assert error.committed_batches == 0

    def test_encryption_errors(self):
        """Key and decryption errors specialize EncryptionError."""
        assert issubclass(EncryptionKeyError, EncryptionError)
        assert issubclass(DecryptionError, EncryptionError)

    def test_catching_specific_before_base(self):
        """Specific handlers run before the base handler."""
        try:
            raise ValidationError("duplicate")
        except ValidationError as e:
            caught = e
        except FinanceSyncError:  # pragma: no cover
            pytest.fail("ValidationError should be caught by its own handler")
        assert caught.message == "duplicate"
