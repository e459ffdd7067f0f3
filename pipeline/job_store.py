"""
Persisted job records: the audit and idempotency trail of every SyncJob
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import JobRecordError, SyncError
from models.base import SyncPhase, SyncStatus
from models.sync_job import SyncJobRecord, utcnow
from schemas.sync import SyncJobRequest

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncJobStore:
    """
    Job-record store over an async SQLAlchemy session factory.

    Each method runs in its own short session and commits before
    returning; jobs never share a session. Database failures surface as
    JobRecordError, which the orchestrator retries.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def start(
        self,
        request: SyncJobRequest,
        run_id: uuid.UUID,
        idempotency_key: str,
    ) -> SyncJobRecord:
        """
        Get-or-create the record for `idempotency_key` and mark it running.

        A retried or duplicate invocation finds the existing row: its
        attempt counter is bumped and its counters and error are reset.
        """
        try:
            async with self._session_factory() as session:
                record = await self._get_by_key(session, idempotency_key)

                if record is None:
                    record = SyncJobRecord(
                        run_id=run_id,
                        idempotency_key=idempotency_key,
                        organization=request.organization,
                        internal_warehouse=request.internal_warehouse,
                        source_kind=request.source_type,
                        destination_kind=request.destination_type,
                        table_name=request.table_name,
                        tenancy_column=request.tenancy_column,
                        scheduled_at=request.scheduled_at,
                        attempts=0,
                    )
                    session.add(record)
                    try:
                        await session.flush()
                    except IntegrityError:
                        # Lost a race against a concurrent start with the same key
                        await session.rollback()
                        record = await self._get_by_key(session, idempotency_key)
                        if record is None:
                            raise
                else:
                    logger.info(
                        f"Resuming job record {record.id} for idempotency key {idempotency_key} "
                        f"(attempt {record.attempts + 1})"
                    )

                record.status = SyncStatus.RUNNING
                record.phase = SyncPhase.RECORDING_JOB
                record.attempts = (record.attempts or 0) + 1
                record.processed_count = 0
                record.skipped_count = 0
                record.batches_written = 0
                record.error_kind = None
                record.error_message = None
                record.started_at = utcnow()
                record.completed_at = None
                record.duration_seconds = None

                await session.commit()
                await session.refresh(record)
                return record

        except SQLAlchemyError as e:
            raise JobRecordError(
                "Failed to persist job record",
                context={"organization": request.organization, "table_name": request.table_name},
                original_exception=e
            )

    async def record_progress(
        self,
        sync_id: int,
        phase: SyncPhase,
        processed_count: int = 0,
        skipped_count: int = 0,
        batches_written: int = 0,
    ) -> None:
        """Update phase and counters of a running job."""
        try:
            async with self._session_factory() as session:
                record = await session.get(SyncJobRecord, sync_id)
                if record is None:
                    raise JobRecordError(f"Job record {sync_id} not found", context={"sync_id": sync_id})
                record.phase = phase
                record.processed_count = processed_count
                record.skipped_count = skipped_count
                record.batches_written = batches_written
                await session.commit()
        except SQLAlchemyError as e:
            raise JobRecordError(
                "Failed to update job progress",
                context={"sync_id": sync_id, "phase": phase.value},
                original_exception=e
            )

    async def complete(
        self,
        sync_id: int,
        status: SyncStatus,
        processed_count: int = 0,
        skipped_count: int = 0,
        batches_written: int = 0,
        error: Optional[SyncError] = None,
    ) -> None:
        """Mark a job terminal with final statistics and a user-safe error message."""
        try:
            async with self._session_factory() as session:
                record = await session.get(SyncJobRecord, sync_id)
                if record is None:
                    raise JobRecordError(f"Job record {sync_id} not found", context={"sync_id": sync_id})

                record.status = status
                record.phase = SyncPhase.SUCCEEDED if status == SyncStatus.SUCCEEDED else SyncPhase.FAILED
                record.processed_count = processed_count
                record.skipped_count = skipped_count
                record.batches_written = batches_written
                record.completed_at = utcnow()
                started_at = _aware(record.started_at)
                if started_at is not None:
                    record.duration_seconds = (record.completed_at - started_at).total_seconds()
                if error is not None:
                    record.error_kind = error.error_kind
                    record.error_message = error.user_message()

                await session.commit()
        except SQLAlchemyError as e:
            raise JobRecordError(
                "Failed to complete job record",
                context={"sync_id": sync_id, "status": status.value},
                original_exception=e
            )

    async def get_by_run_id(self, run_id: uuid.UUID) -> Optional[SyncJobRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SyncJobRecord).where(SyncJobRecord.run_id == run_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise JobRecordError(
                "Failed to load job record",
                context={"run_id": str(run_id)},
                original_exception=e
            )

    async def list_recent(self, limit: int = 20, organization: Optional[str] = None) -> List[SyncJobRecord]:
        """Most recently created jobs first."""
        query = select(SyncJobRecord).order_by(SyncJobRecord.created_at.desc(), SyncJobRecord.id.desc())
        if organization:
            query = query.where(SyncJobRecord.organization == organization)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query.limit(limit))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise JobRecordError("Failed to list job records", original_exception=e)

    async def count_by_status(self) -> Dict[str, int]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SyncJobRecord.status, func.count(SyncJobRecord.id)).group_by(SyncJobRecord.status)
                )
                counts = {status.value: 0 for status in SyncStatus}
                for status, count in result.all():
                    counts[SyncStatus(status).value] = count
                return counts
        except SQLAlchemyError as e:
            raise JobRecordError("Failed to count job records", original_exception=e)

    @staticmethod
    async def _get_by_key(session, idempotency_key: str) -> Optional[SyncJobRecord]:
        result = await session.execute(
            select(SyncJobRecord).where(SyncJobRecord.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()
