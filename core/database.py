"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the job-record store"""
    return create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,
        future=True
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


engine = create_engine_for(settings.DATABASE_URL)

async_session_maker = create_session_factory(engine)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session
