"""
Health check endpoint with database and dispatcher status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db
from core.exceptions import JobRecordError
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether the dispatcher's scheduler is running
    - Job counts per status
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    dispatcher = getattr(request.app.state, "dispatcher", None)
    scheduler_running = bool(dispatcher is not None and dispatcher.scheduler.running)

    job_counts = {}
    if db_connected and dispatcher is not None and dispatcher.job_store is not None:
        try:
            job_counts = await dispatcher.job_store.count_by_status()
        except JobRecordError as e:
            logger.error(f"Failed to count sync jobs: {e.message}")

    # Overall status is derived by the HealthCheckResponse validator
    return HealthCheckResponse(
        database_connected=db_connected,
        scheduler_running=scheduler_running,
        job_counts=job_counts,
    )
