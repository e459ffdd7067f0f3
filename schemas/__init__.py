"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for job payloads, pipeline metadata
and API responses:

Schemas:
    sync: Inbound job payload, column descriptors, run results, job status
    api: API endpoint response models (submission, listing, errors, health)

Features:
    - Automatic payload validation (required fields, identifier shapes)
    - Aliases for the dashboard's field names (link_type, link_credentials)
    - Credentials excluded from repr and never echoed in validation errors
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.sync import SyncJobRequest, ColumnDescriptor
    from schemas.api import SyncSubmissionResponse, HealthCheckResponse

Example:
    request = SyncJobRequest.from_payload({
        "organization": "org_123",
        "internal_warehouse": "wh_1",
        "internal_credentials": token,
        "link_type": "snowflake",
        "link_credentials": other_token,
        "table_name": "events",
    })
    assert request.destination_type == WarehouseKind.SNOWFLAKE
"""

__all__ = [
    "SyncJobRequest",
    "ColumnDescriptor",
    "SyncResult",
    "JobStatus",
    "SyncSubmissionResponse",
    "SyncCancelResponse",
    "SyncJobSummary",
    "SyncJobList",
    "ErrorResponse",
    "HealthCheckResponse",
]
