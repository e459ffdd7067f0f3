"""
Sync job endpoints: submit, list, status and cancel
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from api.dependencies import get_dispatcher, get_job_store
from pipeline.dispatcher import SyncDispatcher
from pipeline.job_store import SyncJobStore
from schemas.api import (
    ErrorResponse,
    SyncCancelResponse,
    SyncJobList,
    SyncJobSummary,
    SyncSubmissionResponse,
)
from schemas.sync import JobStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/syncs", tags=["Syncs"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


@router.post(
    "",
    response_model=SyncSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}},
)
async def submit_sync(
    request: Request,
    payload: Dict[str, Any] = Body(..., description="Sync job payload"),
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
):
    """
    Accept a sync job for execution.

    The payload is validated before anything is scheduled; an invalid
    payload is rejected with 422 and nothing is recorded.
    """
    request_id = _request_id(request)
    job = dispatcher.submit(payload)

    logger.info(
        f"[{request_id}] POST /syncs - accepted run {job.run_id} "
        f"({job.organization}/{job.table_name} -> {job.destination_type.value})"
    )
    return SyncSubmissionResponse(
        run_id=job.run_id,
        idempotency_key=job.idempotency_key,
        status=job.status,
        scheduled_at=job.scheduled_at,
    )


@router.get("", response_model=SyncJobList)
async def list_syncs(
    request: Request,
    limit: int = Query(20, ge=1, le=200, description="Maximum number of jobs"),
    organization: Optional[str] = Query(None, description="Filter by organization"),
    job_store: SyncJobStore = Depends(get_job_store),
):
    """Most recent job records, newest first."""
    request_id = _request_id(request)
    records = await job_store.list_recent(limit=limit, organization=organization)
    logger.info(f"[{request_id}] GET /syncs - {len(records)} jobs (organization={organization})")

    jobs = [SyncJobSummary.model_validate(record) for record in records]
    return SyncJobList(jobs=jobs, count=len(jobs))


@router.get("/{run_id}", response_model=JobStatus, responses={404: {"description": "Unknown run"}})
async def get_sync_status(
    run_id: uuid.UUID,
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
):
    job_status = await dispatcher.status(run_id)
    if job_status is None:
        raise HTTPException(status_code=404, detail=f"Sync {run_id} not found")
    return job_status


@router.post(
    "/{run_id}/cancel",
    response_model=SyncCancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={404: {"description": "Unknown run"}, 409: {"description": "Run already finished"}},
)
async def cancel_sync(
    request: Request,
    run_id: uuid.UUID,
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
):
    """
    Request cooperative cancellation.

    Returns 409 when the job already reached a terminal state and 404 when
    it is unknown.
    """
    if dispatcher.cancel(run_id):
        logger.info(f"[{_request_id(request)}] POST /syncs/{run_id}/cancel - requested")
        return SyncCancelResponse(run_id=run_id, cancel_requested=True)

    job_status = await dispatcher.status(run_id)
    if job_status is None:
        raise HTTPException(status_code=404, detail=f"Sync {run_id} not found")
    raise HTTPException(
        status_code=409,
        detail=f"Sync {run_id} is {job_status.status.value} and cannot be cancelled"
    )
