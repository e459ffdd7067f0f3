"""
Job dispatch and whole-job retry harness on APScheduler
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from core.config import settings
from core.exceptions import JobRecordError, SyncCancelledError, SyncError
from core.retry import DEFAULT_RETRY_POLICY, RetryPolicy
from models.base import SyncStatus, WarehouseKind
from pipeline.job_store import SyncJobStore
from pipeline.runner import SyncRunner
from schemas.sync import JobStatus, SyncJobRequest, SyncResult

logger = logging.getLogger(__name__)

IN_FLIGHT = (SyncStatus.PENDING, SyncStatus.RUNNING)


@dataclass
class DispatchedJob:
    """In-process view of a submitted job"""
    run_id: uuid.UUID
    idempotency_key: str
    request: Optional[SyncJobRequest]
    submitted_at: datetime
    organization: str = ""
    table_name: str = ""
    destination_type: Optional[WarehouseKind] = None
    scheduled_at: Optional[datetime] = None
    status: SyncStatus = SyncStatus.PENDING
    attempts: int = 0
    error_kind: Optional[str] = None
    error: Optional[str] = None
    result: Optional[SyncResult] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class SyncDispatcher:
    """
    Trigger-and-retry harness the orchestrator runs inside.

    - submit() validates synchronously and schedules a one-shot job
    - each execution runs the orchestrator up to `max_attempts` times,
      retrying only retryable terminal errors with the same idempotency
      key (at-least-once)
    - status() answers from the job store, falling back to in-process state
    - cancel() sets the job's cooperative cancellation flag
    - a finished job drops its request (and the credentials in it); only
      the newest `max_finished_jobs` finished jobs stay in memory
    """

    def __init__(
        self,
        runner: SyncRunner,
        job_store: Optional[SyncJobStore] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        max_attempts: int = 3,
        max_finished_jobs: int = 1000,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.runner = runner
        self.job_store = job_store
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.max_attempts = max_attempts
        self.max_finished_jobs = max_finished_jobs
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.rng = rng
        self._jobs: Dict[uuid.UUID, DispatchedJob] = {}

    def start(self):
        """Start the scheduler"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Sync dispatcher started")

    def stop(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Sync dispatcher stopped")

    def submit(self, payload: Any) -> DispatchedJob:
        """
        Validate and schedule a job.

        Returns:
            The pending DispatchedJob (carrying run_id and idempotency key)

        Raises:
            ValidationError: Synchronously, for an invalid payload
        """
        request = SyncJobRequest.from_payload(payload)
        submitted_at = datetime.now(timezone.utc)

        job = DispatchedJob(
            run_id=uuid.uuid4(),
            idempotency_key=request.resolve_idempotency_key(submitted_at),
            request=request,
            submitted_at=submitted_at,
            organization=request.organization,
            table_name=request.table_name,
            destination_type=request.destination_type,
            scheduled_at=request.scheduled_at,
        )
        self._jobs[job.run_id] = job

        run_date = request.scheduled_at or submitted_at
        if run_date.tzinfo is None:
            run_date = run_date.replace(tzinfo=timezone.utc)
        if run_date < submitted_at:
            run_date = submitted_at

        self.scheduler.add_job(
            self.execute,
            trigger=DateTrigger(run_date=run_date, timezone=timezone.utc),
            args=[job.run_id],
            id=str(job.run_id),
            misfire_grace_time=None,
            replace_existing=True,
        )
        logger.info(
            f"Scheduled sync {job.run_id} ({job.idempotency_key}) for {run_date.isoformat()}"
        )
        return job

    async def execute(self, run_id: uuid.UUID) -> Optional[SyncResult]:
        """Run a submitted job with whole-job retry; never raises."""
        job = self._jobs.get(run_id)
        if job is None:
            logger.error(f"Dispatcher: unknown run {run_id}")
            return None
        if job.request is None:
            logger.info(f"Dispatcher: sync {run_id} already finished")
            return job.result

        for attempt in range(1, self.max_attempts + 1):
            if job.cancel_event.is_set():
                self._mark_failed(job, SyncCancelledError("Sync cancelled before start"))
                return None

            job.attempts = attempt
            job.status = SyncStatus.RUNNING
            try:
                result = await self.runner.run(
                    job.request,
                    run_id=job.run_id,
                    idempotency_key=job.idempotency_key,
                    cancel_event=job.cancel_event,
                )
                job.status = SyncStatus.SUCCEEDED
                job.result = result
                job.error_kind = job.error = None
                self._finish(job)
                return result

            except SyncError as e:
                if not e.retryable or attempt >= self.max_attempts or job.cancel_event.is_set():
                    self._mark_failed(job, e)
                    logger.error(
                        f"Dispatcher: sync {run_id} failed after {attempt} attempt(s): {e.user_message()}",
                        extra={"error_context": e.to_dict()}
                    )
                    return None

                job.error_kind = e.error_kind
                job.error = e.user_message()
                delay = self.retry_policy.delay_for(attempt, self.rng)
                logger.warning(
                    f"Dispatcher: sync {run_id} attempt {attempt}/{self.max_attempts} failed "
                    f"({e.error_kind}). Retrying job in {delay:.2f} seconds"
                )
                await self.sleep(delay)

            except Exception as e:
                logger.exception(f"Dispatcher: unexpected error in sync {run_id}")
                self._mark_failed(job, SyncError("Unexpected error during sync", original_exception=e))
                return None

        return None

    async def status(self, run_id: uuid.UUID) -> Optional[JobStatus]:
        """
        Status of a job, or None if unknown.

        The store is authoritative; while this process still has the job
        in flight (e.g. waiting between whole-job attempts) the in-process
        status wins over a failed attempt already recorded in the store.
        """
        record = None
        if self.job_store is not None:
            try:
                record = await self.job_store.get_by_run_id(run_id)
            except JobRecordError as e:
                logger.warning(
                    f"Status lookup for {run_id} fell back to in-process state: {e.message}",
                    extra={"error_context": e.to_dict()}
                )

        job = self._jobs.get(run_id)

        if record is not None:
            status = SyncStatus(record.status)
            error_kind, error = record.error_kind, record.error_message
            if job is not None and job.status in IN_FLIGHT:
                status = job.status
                error_kind = error = None
            return JobStatus(
                run_id=record.run_id,
                status=status,
                error_kind=error_kind,
                error=error,
                processed_count=record.processed_count or 0,
                skipped_count=record.skipped_count or 0,
                created_at=record.created_at,
                completed_at=record.completed_at,
            )

        if job is not None:
            return JobStatus(
                run_id=job.run_id,
                status=job.status,
                error_kind=job.error_kind if job.status == SyncStatus.FAILED else None,
                error=job.error if job.status == SyncStatus.FAILED else None,
                processed_count=job.result.processed_count if job.result else 0,
                skipped_count=job.result.skipped_count if job.result else 0,
                created_at=job.submitted_at,
            )

        return None

    def cancel(self, run_id: uuid.UUID) -> bool:
        """
        Request cancellation.

        A job that has not started is unscheduled and marked failed; a
        running job stops at the next chunk boundary.

        Returns:
            False if the job is unknown to this process or already terminal
        """
        job = self._jobs.get(run_id)
        if job is None or job.status not in IN_FLIGHT:
            return False

        job.cancel_event.set()
        if job.status == SyncStatus.PENDING:
            try:
                self.scheduler.remove_job(str(run_id))
            except JobLookupError:
                # Already handed to the event loop; execute() sees the flag
                pass
            else:
                self._mark_failed(job, SyncCancelledError("Sync cancelled before start"))

        logger.info(f"Cancellation requested for sync {run_id}")
        return True

    def get(self, run_id: uuid.UUID) -> Optional[DispatchedJob]:
        return self._jobs.get(run_id)

    def _mark_failed(self, job: DispatchedJob, error: SyncError) -> None:
        job.status = SyncStatus.FAILED
        job.error_kind = error.error_kind
        job.error = error.user_message()
        self._finish(job)

    def _finish(self, job: DispatchedJob) -> None:
        """Drop a finished job's request and evict the oldest finished jobs over the cap."""
        job.request = None
        finished = [run_id for run_id, j in self._jobs.items() if j.status not in IN_FLIGHT]
        for run_id in finished[:max(0, len(finished) - self.max_finished_jobs)]:
            del self._jobs[run_id]


def create_dispatcher() -> SyncDispatcher:
    """Dispatcher wired from settings: default connectors, database job store."""
    from core.database import async_session_maker
    from core.encryption import CredentialCodec
    from pipeline.connectors.registry import default_registry

    job_store = SyncJobStore(async_session_maker)
    policy = RetryPolicy.from_settings()
    runner = SyncRunner(
        registry=default_registry(),
        codec=CredentialCodec(settings.ENCRYPTION_KEY),
        job_store=job_store,
        retry_policy=policy,
        batch_size=settings.SYNC_BATCH_SIZE,
        max_dwell_seconds=settings.SYNC_MAX_DWELL_SECONDS,
        block_size=settings.SYNC_STREAM_BLOCK_SIZE,
        connect_timeout=settings.CONNECT_TIMEOUT,
        query_timeout=settings.QUERY_TIMEOUT,
        write_timeout=settings.WRITE_TIMEOUT,
    )
    return SyncDispatcher(
        runner=runner,
        job_store=job_store,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        max_finished_jobs=settings.DISPATCHER_MAX_FINISHED_JOBS,
        retry_policy=policy,
    )
