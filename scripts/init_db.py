import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_engine_for
from core.logging import setup_logging
from models.base import Base
# Import the job record so its table is registered on Base.metadata
from models.sync_job import SyncJobRecord  # noqa: F401

logger = logging.getLogger(__name__)


async def init_database(drop: bool = False):
    target = settings.DATABASE_URL.split("@")[-1]
    logger.info(f"Connecting to job-record database {target}...")
    engine = create_engine_for(settings.DATABASE_URL)

    async with engine.begin() as conn:
        if drop:
            logger.warning("Dropping existing sync tables")
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the sync job-record tables")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(init_database(drop=args.drop))
