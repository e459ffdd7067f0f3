"""
Cross-warehouse sync pipeline components.

This package contains everything that moves one table from an internal
ClickHouse warehouse into a customer destination:

Modules:
    runner: Sync orchestrator driving validate, record, connect,
        introspect, stream and flush, with guaranteed cleanup
    dispatcher: APScheduler-backed trigger with whole-job retry, status
        queries and cooperative cancellation
    introspection: Column catalog and primary-key discovery
    job_store: Persisted job records (audit trail and idempotency)

Subpackages:
    connectors: Uniform async connectors for ClickHouse, Snowflake,
        BigQuery, Redshift and Postgres
    transformers: Canonical type mapping, destination DDL and value
        conversion

Architecture:
    Rows are streamed from the source in blocks, converted value by value
    into the destination's accepted form and written in bounded batches:

    1. Stream - A block is fetched only when the previous one is consumed
    2. Convert - Malformed or unconvertible rows are skipped and counted
    3. Flush - A batch is written when full or when it has waited too long,
       merged by primary key where the destination supports it

Usage:
    from pipeline.connectors.registry import default_registry
    from pipeline.job_store import SyncJobStore
    from pipeline.runner import SyncRunner

Example:
    runner = SyncRunner(
        registry=default_registry(),
        codec=CredentialCodec(settings.ENCRYPTION_KEY),
        job_store=SyncJobStore(async_session_maker),
    )
    result = await runner.run(payload)

    print(f"Synced {result.processed_count} rows")

Error Handling:
    All components raise exceptions from core.exceptions. Retryable errors
    are retried with backoff by core.retry; credentials never appear in
    error messages, logs or job records.
"""

__all__ = [
    "SyncRunner",
    "SyncDispatcher",
    "SyncJobStore",
    "introspect",
    "create_dispatcher",
]
