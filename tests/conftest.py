"""
Pytest configuration and fixtures
"""

from typing import Optional

import pytest
import pytest_asyncio

from core.database import create_engine_for, create_session_factory
from core.encryption import CredentialCodec
from core.retry import RetryPolicy
from models.base import Base
from pipeline.connectors.registry import ConnectorRegistry
from pipeline.job_store import SyncJobStore
from pipeline.runner import SyncRunner
from tests.fakes import TEST_ENCRYPTION_KEY, InMemoryWarehouse, SleepRecorder, make_registry


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def codec():
    return CredentialCodec(TEST_ENCRYPTION_KEY)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def source_warehouse():
    """ClickHouse source with the three-column `events` table."""
    warehouse = InMemoryWarehouse()
    warehouse.add_table(
        "events",
        columns=[("id", "Int32"), ("name", "String"), ("amount", "Float64")],
        rows=[(1, "alpha", 1.5), (2, "beta", 2.25), (3, "gamma", 3.0)],
        primary_key=["id"],
    )
    return warehouse


@pytest.fixture
def destination_warehouse():
    return InMemoryWarehouse(supports_merge=True)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite job-record database, created fresh per test"""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'sync_jobs.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def job_store(session_factory):
    return SyncJobStore(session_factory)


@pytest.fixture
def sync_payload(codec):
    """Valid job payload with encrypted credentials on both sides"""
    return {
        "organization": "org_123",
        "internal_warehouse": "wh_main",
        "internal_credentials": codec.encrypt({"host": "https://ch.internal:8443", "username": "reader"}),
        "link_type": "snowflake",
        "link_credentials": codec.encrypt({"account": "acme-xy12345", "username": "loader", "password": "s3cret"}),
        "table_name": "events",
    }


@pytest.fixture
def make_runner(codec, job_store, sleep_recorder, source_warehouse, destination_warehouse):
    """Build a SyncRunner over fake warehouses; keyword overrides pass through."""

    def _make(registry: Optional[ConnectorRegistry] = None, **overrides) -> SyncRunner:
        options = {
            "registry": registry or make_registry(source_warehouse, destination_warehouse),
            "codec": codec,
            "job_store": job_store,
            "retry_policy": RetryPolicy(),
            "sleep": sleep_recorder,
            "rng": lambda: 0.5,
        }
        options.update(overrides)
        return SyncRunner(**options)

    return _make
