# ============================================================================
# File: pipeline/runner.py
# Description: Sync orchestrator - one table, one source, one destination
# ============================================================================
"""
Sync Runner - Orchestrates Validate, Record, Connect, Introspect, Stream, Flush.

This module provides the per-job state machine with:
- Synchronous payload validation (no resources opened on failure)
- Job recording before any warehouse I/O
- Bounded retry with backoff for connect, query start and batch writes
- Row-level recovery (malformed or unconvertible rows are skipped)
- Cooperative cancellation between streamed chunks
- Guaranteed cleanup of both connections on every exit path
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.encryption import CredentialCodec
from core.exceptions import (
    BatchWriteError,
    CleanupError,
    JobRecordError,
    QueryError,
    RowConversionError,
    SyncCancelledError,
    SyncError,
    WarehouseConnectionError,
)
from core.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_async
from models.base import SyncPhase, SyncStatus
from pipeline.connectors.base import RowStream, WarehouseConnector
from pipeline.connectors.registry import ConnectorRegistry
from pipeline.introspection import introspect
from pipeline.job_store import SyncJobStore
from pipeline.transformers.converter import ValueConverter
from schemas.sync import ColumnDescriptor, SyncJobRequest, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_DWELL_SECONDS = 30.0
DEFAULT_BLOCK_SIZE = 1000
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_QUERY_TIMEOUT = 60.0
DEFAULT_WRITE_TIMEOUT = 120.0


@dataclass
class JobState:
    """Mutable per-job progress, owned by one run() call."""
    run_id: uuid.UUID
    idempotency_key: str
    sync_id: Optional[int] = None
    phase: SyncPhase = SyncPhase.VALIDATING
    processed_count: int = 0
    skipped_count: int = 0
    batches_written: int = 0
    table_ready: bool = False


class SyncRunner:
    """
    Sync Orchestrator

    Responsibilities:
    - Drive Validating → RecordingJob → Connecting → Introspecting →
      Streaming ⇄ Flushing → Succeeded, with Failed reachable from every
      non-terminal phase
    - Run Cleanup before either terminal phase, whatever the path
    - Keep decrypted credentials inside the scope of one run

    Collaborators are injected: the connector registry builds backends,
    the codec decrypts credentials, the job store persists the record.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        codec: CredentialCodec,
        job_store: SyncJobStore,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_dwell_seconds: float = DEFAULT_MAX_DWELL_SECONDS,
        block_size: int = DEFAULT_BLOCK_SIZE,
        connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT,
        query_timeout: Optional[float] = DEFAULT_QUERY_TIMEOUT,
        write_timeout: Optional[float] = DEFAULT_WRITE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.registry = registry
        self.codec = codec
        self.job_store = job_store
        self.retry_policy = retry_policy
        self.batch_size = batch_size
        self.max_dwell_seconds = max_dwell_seconds
        self.block_size = block_size
        self.connect_timeout = connect_timeout
        self.query_timeout = query_timeout
        self.write_timeout = write_timeout
        self.clock = clock
        self.sleep = sleep
        self.rng = rng

    async def run(
        self,
        payload: Any,
        *,
        run_id: Optional[uuid.UUID] = None,
        idempotency_key: Optional[str] = None,
        submitted_at: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Run one sync job to a terminal state.

        Args:
            payload: Raw job payload (dict) or an already validated SyncJobRequest
            run_id: Run identifier; generated when omitted
            idempotency_key: Overrides the key derived from the payload
            submitted_at: Submission time used to derive the idempotency key
            cancel_event: Set to request cooperative cancellation

        Returns:
            SyncResult with row counts and the job/sync id

        Raises:
            ValidationError: Payload invalid (nothing recorded, nothing opened)
            JobRecordError: The job could not be recorded after retries
            SyncError: The job's terminal failure, after Cleanup and after the
                failure was recorded
        """
        # --------------------------------------------------
        # PHASE 1: VALIDATING
        # --------------------------------------------------
        request = SyncJobRequest.from_payload(payload)
        state = JobState(
            run_id=run_id or uuid.uuid4(),
            idempotency_key=idempotency_key or request.resolve_idempotency_key(submitted_at),
        )

        # --------------------------------------------------
        # PHASE 2: RECORDING JOB
        # --------------------------------------------------
        state.phase = SyncPhase.RECORDING_JOB
        record = await self._retry(
            lambda: self.job_store.start(request, state.run_id, state.idempotency_key),
            description=f"Recording job {state.idempotency_key}",
        )
        state.sync_id = record.id
        state.run_id = record.run_id

        logger.info(
            f"Starting sync {state.run_id}: {request.source_type.value}:{request.table_name} -> "
            f"{request.destination_type.value}:{request.target_table} (attempt {record.attempts})"
        )

        source: Optional[WarehouseConnector] = None
        destination: Optional[WarehouseConnector] = None
        stream: Optional[RowStream] = None
        failure: Optional[SyncError] = None

        try:
            # Decrypted only here, handed straight to the connectors
            source = self.registry.create(
                request.source_type, self.codec.decrypt(request.internal_credentials)
            )
            destination = self.registry.create(
                request.destination_type, self.codec.decrypt(request.destination_credentials)
            )

            # --------------------------------------------------
            # PHASE 3: CONNECTING
            # --------------------------------------------------
            await self._enter(state, SyncPhase.CONNECTING)
            await self._retry(
                source.open,
                description=f"Connecting to source {request.source_type.value}",
                timeout=self.connect_timeout,
                timeout_error=WarehouseConnectionError,
            )
            await self._retry(
                destination.open,
                description=f"Connecting to destination {request.destination_type.value}",
                timeout=self.connect_timeout,
                timeout_error=WarehouseConnectionError,
            )

            # --------------------------------------------------
            # PHASE 4: INTROSPECTING
            # --------------------------------------------------
            await self._enter(state, SyncPhase.INTROSPECTING)
            columns = await self._retry(
                lambda: introspect(source, request.table_name),
                description=f"Introspecting {request.table_name}",
                timeout=self.query_timeout,
                timeout_error=QueryError,
            )

            # --------------------------------------------------
            # PHASE 5: STREAMING (with FLUSHING)
            # --------------------------------------------------
            await self._enter(state, SyncPhase.STREAMING)
            query, params = source.build_select(
                request.table_name, [c.name for c in columns], request.tenancy_filter
            )
            stream = await self._retry(
                lambda: source.open_stream(query, params, self.block_size),
                description=f"Starting stream for {request.table_name}",
                timeout=self.query_timeout,
                timeout_error=QueryError,
            )
            await self._stream(state, request, stream, destination, columns, cancel_event)

        except SyncError as e:
            failure = e

        except Exception as e:
            logger.exception(f"Unexpected error in sync {state.run_id}")
            failure = SyncError(
                "Unexpected error during sync",
                context={"run_id": str(state.run_id), "phase": state.phase.value},
                original_exception=e
            )

        finally:
            # --------------------------------------------------
            # CLEANUP (always)
            # --------------------------------------------------
            phase_before_cleanup = state.phase
            state.phase = SyncPhase.CLEANUP
            await self._cleanup(state, stream, destination, source)

        if failure is not None:
            await self._fail(state, failure, phase_before_cleanup)

        # --------------------------------------------------
        # PHASE 6: SUCCEEDED
        # --------------------------------------------------
        state.phase = SyncPhase.SUCCEEDED
        await self._retry(
            lambda: self.job_store.complete(
                state.sync_id,
                SyncStatus.SUCCEEDED,
                processed_count=state.processed_count,
                skipped_count=state.skipped_count,
                batches_written=state.batches_written,
            ),
            description=f"Completing job record {state.sync_id}",
        )

        message = (
            f"Synced {state.processed_count} rows from {request.table_name} to "
            f"{request.destination_type.value}:{request.target_table}"
        )
        if state.skipped_count:
            message += f" ({state.skipped_count} rows skipped)"
        logger.info(f"Sync {state.run_id} succeeded: {message}")

        return SyncResult(
            status=SyncStatus.SUCCEEDED,
            sync_id=state.sync_id,
            run_id=state.run_id,
            idempotency_key=state.idempotency_key,
            processed_count=state.processed_count,
            skipped_count=state.skipped_count,
            batches_written=state.batches_written,
            message=message,
        )

    # ------------------------------------------------------------------
    # Streaming and flushing
    # ------------------------------------------------------------------

    async def _stream(
        self,
        state: JobState,
        request: SyncJobRequest,
        stream: RowStream,
        destination: WarehouseConnector,
        columns: List[ColumnDescriptor],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        converter = ValueConverter(request.destination_type)
        batch: List[Dict[str, Any]] = []
        batch_started = 0.0

        async for block in stream:
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError(
                    "Sync cancelled",
                    context={"run_id": str(state.run_id), "pending_rows": len(batch)}
                )

            for row in block:
                record = self._convert_row(state, converter, columns, row)
                if record is None:
                    continue

                if not batch:
                    batch_started = self.clock()
                batch.append(record)

                if len(batch) >= self.batch_size or self._dwell_exceeded(batch, batch_started):
                    await self._flush(state, request, destination, columns, batch)
                    batch = []

            if self._dwell_exceeded(batch, batch_started):
                await self._flush(state, request, destination, columns, batch)
                batch = []

        if batch:
            await self._flush(state, request, destination, columns, batch)

        if state.batches_written == 0:
            logger.info(f"Source table {request.table_name} produced no rows to write")

    def _dwell_exceeded(self, batch: List[Dict[str, Any]], batch_started: float) -> bool:
        return bool(batch) and (self.clock() - batch_started) >= self.max_dwell_seconds

    def _convert_row(
        self,
        state: JobState,
        converter: ValueConverter,
        columns: List[ColumnDescriptor],
        row: Any,
    ) -> Optional[Dict[str, Any]]:
        """Positional row -> named destination record; None if the row is skipped."""
        if (
            isinstance(row, (str, bytes))
            or not isinstance(row, Sequence)
            or len(row) == 0
            or len(row) != len(columns)
        ):
            state.skipped_count += 1
            logger.warning(
                f"Skipping malformed row: expected {len(columns)} fields, "
                f"got {len(row) if isinstance(row, Sequence) else type(row).__name__}"
            )
            return None

        record: Dict[str, Any] = {}
        for column, value in zip(columns, row):
            try:
                record[column.name] = converter.convert(column.source_type, value)
            except RowConversionError as e:
                state.skipped_count += 1
                e.context["column"] = column.name
                logger.warning(
                    f"Skipping row: column {column.name} failed conversion: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                return None
        return record

    async def _flush(
        self,
        state: JobState,
        request: SyncJobRequest,
        destination: WarehouseConnector,
        columns: List[ColumnDescriptor],
        batch: List[Dict[str, Any]],
    ) -> None:
        state.phase = SyncPhase.FLUSHING
        table = request.target_table

        if not state.table_ready:
            await self._retry(
                lambda: destination.ensure_table(table, columns),
                description=f"Ensuring destination table {table}",
                timeout=self.write_timeout,
                timeout_error=BatchWriteError,
            )
            state.table_ready = True

        records = list(batch)
        await self._retry(
            lambda: destination.write_batch(table, columns, records),
            description=f"Writing batch {state.batches_written + 1} ({len(records)} rows) to {table}",
            timeout=self.write_timeout,
            timeout_error=BatchWriteError,
        )

        state.processed_count += len(records)
        state.batches_written += 1
        logger.info(
            f"Flushed batch {state.batches_written}: {len(records)} rows "
            f"({state.processed_count} total) to {table}"
        )
        await self._enter(state, SyncPhase.STREAMING)

    # ------------------------------------------------------------------
    # Cleanup and terminal states
    # ------------------------------------------------------------------

    async def _cleanup(
        self,
        state: JobState,
        stream: Optional[RowStream],
        destination: Optional[WarehouseConnector],
        source: Optional[WarehouseConnector],
    ) -> None:
        """Close the stream, then destination, then source; never raises."""
        resources = [
            ("source stream", stream),
            ("destination connection", destination),
            ("source connection", source),
        ]
        for name, resource in resources:
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                error = CleanupError(
                    f"Failed to close {name}",
                    context={"run_id": str(state.run_id), "resource": name},
                    original_exception=e
                )
                logger.error(error.message, extra={"error_context": error.to_dict()})

    async def _fail(self, state: JobState, failure: SyncError, failed_phase: SyncPhase) -> None:
        """Record the terminal failure, then re-raise it."""
        state.phase = SyncPhase.FAILED
        failure.context.setdefault("phase", failed_phase.value)
        logger.error(
            f"Sync {state.run_id} failed in {failed_phase.value}: {failure.user_message()}",
            extra={"error_context": failure.to_dict()}
        )

        try:
            await self._retry(
                lambda: self.job_store.complete(
                    state.sync_id,
                    SyncStatus.FAILED,
                    processed_count=state.processed_count,
                    skipped_count=state.skipped_count,
                    batches_written=state.batches_written,
                    error=failure,
                ),
                description=f"Recording failure of job {state.sync_id}",
            )
        except JobRecordError as e:
            logger.error(
                f"Could not record failure of sync {state.run_id}",
                extra={"error_context": e.to_dict()}
            )

        raise failure

    async def _enter(self, state: JobState, phase: SyncPhase) -> None:
        """Move to `phase` and persist progress; progress writes are best effort."""
        state.phase = phase
        logger.debug(f"Sync {state.run_id} entering {phase.value}")
        try:
            await self.job_store.record_progress(
                state.sync_id,
                phase,
                processed_count=state.processed_count,
                skipped_count=state.skipped_count,
                batches_written=state.batches_written,
            )
        except JobRecordError as e:
            logger.warning(
                f"Could not record progress of sync {state.run_id}: {e.message}",
                extra={"error_context": e.to_dict()}
            )

    async def _retry(self, operation, *, description: str, timeout: Optional[float] = None, timeout_error=None):
        kwargs = {}
        if timeout_error is not None:
            kwargs["timeout_error"] = timeout_error
        return await retry_async(
            operation,
            self.retry_policy,
            description=description,
            timeout=timeout,
            sleep=self.sleep,
            rng=self.rng,
            **kwargs
        )
