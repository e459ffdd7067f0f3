from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class WarehouseKind(str, enum.Enum):
    """Warehouse backends a sync can read from or write to"""
    SNOWFLAKE = "snowflake"
    BIGQUERY = "bigquery"
    REDSHIFT = "redshift"
    CLICKHOUSE = "clickhouse"
    POSTGRES = "postgres"


class SyncStatus(str, enum.Enum):
    """Externally visible job status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncPhase(str, enum.Enum):
    """Orchestrator state machine phases"""
    VALIDATING = "validating"
    RECORDING_JOB = "recording_job"
    CONNECTING = "connecting"
    INTROSPECTING = "introspecting"
    STREAMING = "streaming"
    FLUSHING = "flushing"
    CLEANUP = "cleanup"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
