"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (WarehouseKind, SyncStatus, SyncPhase)
    sync_job: Persisted job record, one row per SyncJob

Database Schema:
    Column types are dialect-neutral (Uuid, Enum, DateTime) so the store runs
    on PostgreSQL in production and SQLite in tests.

Usage:
    from models.sync_job import SyncJobRecord
    from models.base import WarehouseKind, SyncStatus
"""

__all__ = [
    "Base",
    "WarehouseKind",
    "SyncStatus",
    "SyncPhase",
    "SyncJobRecord",
]
