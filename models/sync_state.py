from sqlalchemy import Column, String, Enum, DateTime, Text
from core.clock import utcnow
from models.base import Base, SyncStatus


class SyncState(Base):
    """
    Persisted cursor per job.

    Purpose:
    - Incremental jobs resume from the last successful watermark
    - One row per job key (e.g. "invoices")
    """
    __tablename__ = "sync_state"

    key = Column(String(64), primary_key=True)

    last_cursor = Column(String(64), nullable=True)  # ISO-8601 UTC watermark
    last_success_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)

    status = Column(Enum(SyncStatus), default=SyncStatus.PENDING, nullable=False)
    error_message = Column(Text, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
