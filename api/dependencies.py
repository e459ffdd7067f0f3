"""
FastAPI dependencies: database sessions, the dispatcher and the job store
"""

from typing import AsyncGenerator

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from pipeline.dispatcher import SyncDispatcher
from pipeline.job_store import SyncJobStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for the request, closed afterwards"""
    async with async_session_maker() as session:
        yield session


def get_dispatcher(request: Request) -> SyncDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Sync dispatcher is not running")
    return dispatcher


def get_job_store(request: Request) -> SyncJobStore:
    dispatcher = get_dispatcher(request)
    if dispatcher.job_store is None:
        raise HTTPException(status_code=503, detail="Job store is not configured")
    return dispatcher.job_store
