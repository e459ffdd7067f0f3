from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, Uuid
from datetime import datetime, timezone
import uuid
from models.base import Base, WarehouseKind, SyncStatus, SyncPhase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncJobRecord(Base):
    """
    One row per SyncJob: audit trail and idempotency record.

    Purpose:
    - Persisted before any warehouse I/O begins
    - Recognise retried/duplicate invocations via idempotency_key
    - Back the job status query
    - Track processed/skipped row counts

    Design:
    - Credentials are never stored, encrypted or otherwise
    - error_message holds the user-safe message only (no context, no cause)
    """
    __tablename__ = "sync_jobs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)

    # Job identification
    organization = Column(String(255), nullable=False, index=True)
    internal_warehouse = Column(String(255), nullable=False)
    source_kind = Column(Enum(WarehouseKind), nullable=False)
    destination_kind = Column(Enum(WarehouseKind), nullable=False, index=True)
    table_name = Column(String(255), nullable=False)
    tenancy_column = Column(String(255), nullable=True)

    # Lifecycle
    status = Column(Enum(SyncStatus), default=SyncStatus.PENDING, nullable=False, index=True)
    phase = Column(Enum(SyncPhase), default=SyncPhase.VALIDATING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)

    # Statistics
    processed_count = Column(Integer, default=0, nullable=False)
    skipped_count = Column(Integer, default=0, nullable=False)
    batches_written = Column(Integer, default=0, nullable=False)

    # Error tracking
    error_kind = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    # Timestamps
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_sync_jobs_org_created", "organization", "created_at"),
        Index("idx_sync_jobs_status", "status", "created_at"),
    )
