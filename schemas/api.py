"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from core.clock import utcnow
from models.base import SyncStatus


# ============================================================================
# Sync Trigger Schemas
# ============================================================================

class EtaSyncRequest(BaseModel):
    """Optional body of POST /admin/sync/etas"""
    model_config = ConfigDict(populate_by_name=True)

    manifest_name: Optional[str] = Field(None, alias="manifestName")


class SyncResponse(BaseModel):
    """Outcome of one sync job run"""
    ok: bool = True
    job: str
    run_id: Optional[str] = None
    status: SyncStatus
    dry_run: bool
    counts: Dict[str, int] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        use_enum_values=True,
        json_schema_extra={
            "example": {
                "ok": True,
                "job": "etas",
                "run_id": "6f1c2b1e-0d4c-4b8e-9a53-1b0f7f0f2a11",
                "status": "success",
                "dry_run": False,
                "counts": {"read": 1200, "inserted": 40, "updated": 1160, "soft_deleted": 12},
                "context": {"locations_in_file": [1, 2]},
            }
        },
    )


class ErrorResponse(BaseModel):
    """Standard error response"""
    ok: bool = False
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "ok": False,
                "error": "remote_error",
                "message": "customers: NetSuite returned 400",
                "details": {"tag": "customers", "status": 400, "code": "INVALID_PARAMETER"},
            }
        }
    )


# ============================================================================
# Health Check Schemas
# ============================================================================

class SyncStateInfo(BaseModel):
    """Persisted cursor state of one job"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    key: str
    status: Optional[SyncStatus] = None
    last_cursor: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SyncRunSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    run_id: str
    job_name: str
    status: SyncStatus
    dry_run: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_read: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_soft_deleted: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_run(cls, run) -> "SyncRunSummary":
        return cls(
            run_id=str(run.run_id),
            job_name=run.job_name,
            status=run.status,
            dry_run=run.dry_run,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            records_read=run.records_read or 0,
            records_inserted=run.records_inserted or 0,
            records_updated=run.records_updated or 0,
            records_soft_deleted=run.records_soft_deleted or 0,
            records_failed=run.records_failed or 0,
            error_message=run.error_message,
        )


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    sync_states: List[SyncStateInfo] = Field(default_factory=list)
    latest_runs: List[SyncRunSummary] = Field(default_factory=list)
    total_jobs: int = 0
    failed_jobs: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status from the latest run of each job"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.failed_jobs == 0:
            self.status = "healthy"
        elif self.failed_jobs < self.total_jobs:
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self


# ============================================================================
# Run History Schemas
# ============================================================================

class RunsResponse(BaseModel):
    """Recent sync runs, newest first"""
    timestamp: datetime = Field(default_factory=utcnow)
    runs: List[SyncRunSummary] = Field(default_factory=list)
    total_runs: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    avg_duration_seconds: Optional[float] = None
    request_id: Optional[str] = None
