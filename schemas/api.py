"""
Pydantic schemas for API request/response models
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.base import SyncStatus, WarehouseKind


# ============================================================================
# Sync Job Schemas
# ============================================================================

class SyncSubmissionResponse(BaseModel):
    """Returned when a job is accepted for execution"""
    run_id: UUID
    idempotency_key: str
    status: SyncStatus = SyncStatus.PENDING
    scheduled_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "run_id": "550e8400-e29b-41d4-a716-446655440000",
                "idempotency_key": "org_123-events-1705314600000",
                "status": "pending",
                "scheduled_at": None,
            }
        }
    )


class SyncCancelResponse(BaseModel):
    run_id: UUID
    cancel_requested: bool


class SyncJobSummary(BaseModel):
    """One persisted job record, as listed by GET /syncs"""
    id: int
    run_id: UUID
    idempotency_key: str
    organization: str
    internal_warehouse: str
    source_kind: WarehouseKind
    destination_kind: WarehouseKind
    table_name: str
    status: SyncStatus
    attempts: int
    processed_count: int
    skipped_count: int
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class SyncJobList(BaseModel):
    jobs: List[SyncJobSummary] = Field(default_factory=list)
    count: int = 0


class ErrorResponse(BaseModel):
    """Error body: the error kind and a message without credential material"""
    error_kind: str
    message: str
    request_id: Optional[str] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    database_connected: bool
    scheduler_running: bool = False
    job_counts: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif not self.scheduler_running:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "scheduler_running": True,
                "job_counts": {"pending": 0, "running": 1, "succeeded": 42, "failed": 2},
            }
        }
    )
