"""
Core utilities and configuration for the warehouse sync service.

This package provides foundational components used throughout the sync pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session management for the job-record store
    exceptions: Exception hierarchy with retry classification
    logging: Logging configuration and utilities
    retry: Bounded exponential-backoff retry policy
    encryption: Credential codec (JWE, dir + A256GCM)

Usage:
    from core.config import settings
    from core.encryption import CredentialCodec
    from core.exceptions import BatchWriteError, WarehouseConnectionError
    from core.logging import setup_logging
    from core.retry import RetryPolicy, retry_async

Example:
    setup_logging()

    codec = CredentialCodec(settings.ENCRYPTION_KEY)
    token = codec.encrypt({"host": "https://ch.example.com:8443", "username": "reader"})
    assert codec.decrypt(token)["username"] == "reader"
"""

__all__ = [
    "settings",
    "get_session",
    "setup_logging",
    "CredentialCodec",
    "RetryPolicy",
    "retry_async",
    # Exceptions
    "SyncError",
    "RetryableError",
    "NonRetryableError",
    "ValidationError",
    "CredentialDecryptError",
    "UnsupportedWarehouseError",
    "SchemaIntrospectionError",
    "SyncCancelledError",
    "WarehouseConnectionError",
    "QueryError",
    "BatchWriteError",
    "JobRecordError",
    "RowConversionError",
    "CleanupError",
]
