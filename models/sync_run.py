from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Boolean, Index, Uuid
import uuid
from core.clock import utcnow
from models.base import Base, BigIntPK, JSONType, SyncStatus


class SyncRun(Base):
    """
    Tracks metadata for each sync job execution.

    Purpose:
    - Audit trail of all sync runs
    - Partial counts when a run fails midway
    - Error tracking and debugging
    """
    __tablename__ = "sync_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    job_name = Column(String(64), nullable=False, index=True)
    status = Column(Enum(SyncStatus), default=SyncStatus.PENDING, nullable=False, index=True)
    dry_run = Column(Boolean, nullable=False, default=False)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_read = Column(Integer, default=0)
    records_inserted = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_soft_deleted = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Request parameters and job-specific counts/context
    parameters = Column(JSONType, nullable=True)
    run_metadata = Column("metadata", JSONType, nullable=True)

    __table_args__ = (
        Index("idx_sync_run_job_started", "job_name", "started_at"),
    )
