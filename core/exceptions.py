"""
Custom exceptions for the sync pipeline with structured error context.

This module provides the exception hierarchy used throughout the
cross-warehouse sync pipeline. Each exception carries context information
for debugging and monitoring, and a retry classification consumed by
core.retry.

Exception Hierarchy:
    SyncError (base)
    ├── RetryableError / NonRetryableError (mixins)
    ├── ValidationError                (non-retryable)
    ├── CredentialDecryptError         (non-retryable)
    ├── UnsupportedWarehouseError      (non-retryable)
    ├── SchemaIntrospectionError       (non-retryable)
    ├── SyncCancelledError             (non-retryable)
    ├── WarehouseConnectionError       (retryable)
    ├── QueryError                     (retryable)
    ├── BatchWriteError                (retryable)
    ├── JobRecordError                 (retryable)
    ├── RowConversionError             (recovered locally, never propagated)
    └── CleanupError                   (logged, never propagated)

Context must never contain credential material: put warehouse kinds,
table names and counts in it, never hosts with passwords, tokens or
decrypted records.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SyncError(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (table, destination, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    @property
    def error_kind(self) -> str:
        return self.__class__.__name__

    @property
    def retryable(self) -> bool:
        return isinstance(self, RetryableError)

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.error_kind}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def user_message(self) -> str:
        """Message safe to show to end users: no context, no cause."""
        return f"{self.error_kind}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.error_kind,
            "message": self.message,
            "context": self.context,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
            "original_error": type(self.original_exception).__name__ if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts and per-call timeout expiry
    - Warehouse temporarily unreachable
    - Destination rejecting a batch under load
    - Job-record store hiccups
    """
    pass


class NonRetryableError(SyncError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Invalid job payloads
    - Tampered or undecryptable credentials
    - Missing tables / empty schemas
    """
    pass


# ============================================================================
# Non-Retryable Errors
# ============================================================================

class ValidationError(NonRetryableError):
    """
    Raised when an inbound job payload is malformed or incomplete.

    Context should include:
        - fields: Names of the offending fields
    """
    pass


class CredentialDecryptError(NonRetryableError):
    """
    Raised when a credential token cannot be decrypted.

    Never include the token or any decrypted content in the context.
    """
    pass


class UnsupportedWarehouseError(NonRetryableError):
    """Raised when no connector is registered for a warehouse kind."""
    pass


class SchemaIntrospectionError(NonRetryableError):
    """
    Raised when the source table is missing or has no columns.

    Context should include:
        - table_name: Table that was introspected
        - warehouse_kind: Source warehouse kind
    """
    pass


class SyncCancelledError(NonRetryableError):
    """Raised when a job observes its cancellation flag between chunks."""
    pass


# ============================================================================
# Retryable Errors
# ============================================================================

class WarehouseConnectionError(RetryableError):
    """
    Warehouse unreachable or authentication rejected.

    Context should include:
        - warehouse_kind: Backend kind
        - role: "source" or "destination"
    """
    pass


class QueryError(RetryableError):
    """Source query failed to start or the stream broke."""
    pass


class BatchWriteError(RetryableError):
    """
    Destination rejected a batch. The whole batch is retried as a unit.

    Context should include:
        - table_name: Destination table
        - batch_size: Number of records in the batch
    """
    pass


class JobRecordError(RetryableError):
    """Job-record store write failed."""
    pass


# ============================================================================
# Locally Recovered Errors
# ============================================================================

class RowConversionError(SyncError):
    """
    Raised when a single value cannot be converted.

    The streaming loop catches it, logs it and skips the row.

    Context should include:
        - source_type: Canonical source type tag
        - destination: Destination kind
    """
    pass


class CleanupError(SyncError):
    """Failure releasing a connection. Logged, never re-raised."""
    pass
