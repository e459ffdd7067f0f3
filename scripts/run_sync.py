"""
Run one sync job in the foreground from a JSON payload file
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import async_session_maker, engine
from core.encryption import CredentialCodec
from core.exceptions import SyncError
from core.logging import setup_logging
from core.retry import RetryPolicy
from pipeline.connectors.registry import default_registry
from pipeline.job_store import SyncJobStore
from pipeline.runner import SyncRunner

logger = logging.getLogger(__name__)


async def run_sync(payload: dict) -> int:
    """Run the job and print its result as JSON"""
    runner = SyncRunner(
        registry=default_registry(),
        codec=CredentialCodec(settings.ENCRYPTION_KEY),
        job_store=SyncJobStore(async_session_maker),
        retry_policy=RetryPolicy.from_settings(),
        batch_size=settings.SYNC_BATCH_SIZE,
        max_dwell_seconds=settings.SYNC_MAX_DWELL_SECONDS,
        block_size=settings.SYNC_STREAM_BLOCK_SIZE,
        connect_timeout=settings.CONNECT_TIMEOUT,
        query_timeout=settings.QUERY_TIMEOUT,
        write_timeout=settings.WRITE_TIMEOUT,
    )

    try:
        result = await runner.run(payload)
        print(result.model_dump_json(indent=2))
        return 0
    except SyncError as e:
        logger.error(f"Sync failed: {e.user_message()}")
        print(json.dumps({"error_kind": e.error_kind, "message": e.message}, indent=2))
        return 1
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one warehouse sync job")
    parser.add_argument("payload", help="Path to a JSON job payload")
    args = parser.parse_args(argv)

    setup_logging()

    try:
        with open(args.payload) as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read payload: {e}")
        return 1

    return asyncio.run(run_sync(payload))


if __name__ == "__main__":
    sys.exit(main())
