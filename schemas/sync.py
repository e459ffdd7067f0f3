"""
Pydantic schemas for sync job payloads, column metadata and results
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from models.base import WarehouseKind, SyncStatus

# Plain or qualified (schema.table / project.dataset.table) SQL identifiers
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*){0,2}$")
COLUMN_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Credentials = Union[str, Dict[str, Any]]


class SyncJobRequest(BaseModel):
    """
    Inbound job payload: one table from one internal warehouse to one destination.

    Credentials arrive either as encrypted tokens (strings) or as records
    that were already decrypted upstream; both are accepted here and
    resolved by the credential codec at execution time.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, str_strip_whitespace=True)

    organization: str = Field(..., min_length=1, max_length=255)
    internal_warehouse: str = Field(..., min_length=1, max_length=255)
    source_type: WarehouseKind = WarehouseKind.CLICKHOUSE
    internal_credentials: Credentials = Field(..., repr=False)
    destination_type: WarehouseKind = Field(
        ..., validation_alias=AliasChoices("destination_type", "link_type")
    )
    destination_credentials: Credentials = Field(
        ..., repr=False, validation_alias=AliasChoices("destination_credentials", "link_credentials")
    )
    table_name: str = Field(..., min_length=1, max_length=255)
    destination_table: Optional[str] = Field(None, max_length=255)
    tenancy_column: Optional[str] = Field(None, max_length=255)
    tenancy_id: Optional[Union[int, str]] = None
    scheduled_at: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)

    @field_validator("source_type", "destination_type", mode="before")
    @classmethod
    def lowercase_kind(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("internal_credentials", "destination_credentials")
    @classmethod
    def credentials_present(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("credentials token must not be empty")
        if isinstance(v, dict) and not v:
            raise ValueError("credentials record must not be empty")
        return v

    @field_validator("table_name", "destination_table")
    @classmethod
    def valid_table_identifier(cls, v):
        if v is not None and not IDENTIFIER_PATTERN.match(v):
            raise ValueError("must be a plain or dotted SQL identifier")
        return v

    @field_validator("tenancy_column")
    @classmethod
    def valid_column_identifier(cls, v):
        if v is not None and not COLUMN_PATTERN.match(v):
            raise ValueError("must be a plain SQL identifier")
        return v

    @model_validator(mode="after")
    def tenancy_pair(self):
        if (self.tenancy_column is None) != (self.tenancy_id is None):
            raise ValueError("tenancy_column and tenancy_id must be given together")
        return self

    @classmethod
    def from_payload(cls, payload: Any) -> "SyncJobRequest":
        """
        Validate a raw payload.

        Raises:
            ValidationError: With field locations and reasons only; input
                values are never echoed because they may hold credentials
        """
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, dict):
            raise ValidationError(
                "Job payload must be an object",
                context={"payload_type": type(payload).__name__}
            )
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in e.errors(include_input=False, include_url=False)
            ]
            raise ValidationError(
                "Invalid job payload: " + "; ".join(problems),
                context={"fields": [".".join(str(p) for p in err["loc"]) for err in e.errors(include_input=False)]}
            )

    @property
    def target_table(self) -> str:
        return self.destination_table or self.table_name

    @property
    def tenancy_filter(self) -> Dict[str, Any]:
        if self.tenancy_column is None:
            return {}
        return {self.tenancy_column: self.tenancy_id}

    def resolve_idempotency_key(self, submitted_at: Optional[datetime] = None) -> str:
        """Explicit key if supplied, else `{organization}-{table}-{submitted epoch ms}`."""
        if self.idempotency_key:
            return self.idempotency_key
        submitted_at = submitted_at or datetime.now(timezone.utc)
        return f"{self.organization}-{self.table_name}-{int(submitted_at.timestamp() * 1000)}"


class ColumnDescriptor(BaseModel):
    """Schema metadata for one source column"""

    model_config = ConfigDict(frozen=True)

    name: str
    source_type: str
    is_primary_key: bool = False


class SyncResult(BaseModel):
    """Outcome of one successful orchestrator run"""

    status: SyncStatus
    sync_id: Optional[int] = None
    run_id: UUID
    idempotency_key: str
    processed_count: int = 0
    skipped_count: int = 0
    batches_written: int = 0
    message: str


class JobStatus(BaseModel):
    """Job status as returned by the status query"""

    run_id: UUID
    status: SyncStatus
    error_kind: Optional[str] = None
    error: Optional[str] = None
    processed_count: int = 0
    skipped_count: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

