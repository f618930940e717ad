"""
Abstract base class for sync jobs with run tracking and cursor management
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import json
import uuid

from sqlalchemy import distinct, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.clock import utcnow
from core.exceptions import CheckpointError, DatabaseError
from ingestion.remote.client import NetSuiteClient
from models.base import SyncStatus
from models.profile import Profile
from models.sync_run import SyncRun
from models.sync_state import SyncState

logger = logging.getLogger(__name__)

COUNT_COLUMNS = {
    "read": "records_read",
    "inserted": "records_inserted",
    "updated": "records_updated",
    "soft_deleted": "records_soft_deleted",
    "failed": "records_failed",
}


def jsonable(value: Any) -> Any:
    """Round-trip through json so dates, UUIDs and tuples fit a JSON column"""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


class SyncJob(ABC):
    """
    Abstract base class for all sync jobs.

    Responsibilities:
    - Sync run tracking (one sync_runs row per execution)
    - Persisted cursors (sync_state) for incremental jobs
    - Count bookkeeping that survives a mid-run failure
    """

    job_name: str = ""

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
    ):
        self.db = db_session
        self.client = client
        self.dry_run = dry_run
        self.parameters: Dict[str, Any] = {}
        self.counts: Dict[str, int] = {}
        self.context: Dict[str, Any] = {}
        self.run_id: Optional[uuid.UUID] = None
        self._run_pk: Optional[int] = None
        self._started_at = None

    @abstractmethod
    async def execute(self) -> None:
        """
        Extract, normalize and reconcile.

        Implementations record progress with ``count`` / ``add_counts`` as
        they go so a failure still reports partial counts.
        """
        pass

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    def count(self, name: str, n: int = 1) -> None:
        self.counts[name] = self.counts.get(name, 0) + n

    def add_counts(self, counts: Dict[str, int]) -> None:
        for name, n in counts.items():
            self.count(name, n)

    # ------------------------------------------------------------------
    # Run tracking
    # ------------------------------------------------------------------

    async def start_run(self) -> uuid.UUID:
        """Create sync run record"""
        self.run_id = uuid.uuid4()
        self._started_at = utcnow()
        run = SyncRun(
            run_id=self.run_id,
            job_name=self.job_name,
            status=SyncStatus.RUNNING,
            dry_run=self.dry_run,
            started_at=self._started_at,
            parameters=jsonable(self.parameters),
        )
        self.db.add(run)
        await self.db.commit()
        self._run_pk = run.id
        logger.info(f"Started {self.job_name} run {self.run_id} (dry_run={self.dry_run})")
        return self.run_id

    async def complete_run(
        self,
        status: SyncStatus,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Complete sync run with statistics"""
        if self._run_pk is None:
            return

        completed_at = utcnow()
        values = {
            "status": status,
            "completed_at": completed_at,
            "duration_seconds": (completed_at - self._started_at).total_seconds(),
            "error_message": error_message,
            "error_details": jsonable(error_details),
            "run_metadata": jsonable({"counts": self.counts, "context": self.context}),
        }
        for name, column in COUNT_COLUMNS.items():
            values[column] = self.counts.get(name, 0)

        await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == self._run_pk)
            .values({getattr(SyncRun, name): value for name, value in values.items()})
        )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    async def get_cursor(self, key: Optional[str] = None) -> Optional[SyncState]:
        """Retrieve persisted state for this job"""
        key = key or self.job_name
        try:
            result = await self.db.execute(select(SyncState).where(SyncState.key == key))
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to read sync cursor",
                context={"key": key, "operation": "read"},
                original_exception=e,
            )

    async def save_cursor(
        self,
        cursor: Optional[str],
        status: SyncStatus = SyncStatus.SUCCESS,
        key: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> SyncState:
        """Create or update the persisted cursor"""
        key = key or self.job_name
        now = utcnow()
        try:
            state = await self.get_cursor(key)
            if state is None:
                state = SyncState(key=key)
                self.db.add(state)

            state.last_cursor = cursor
            state.status = status
            state.last_run_at = now
            state.error_message = error_message
            state.updated_at = now
            if status == SyncStatus.SUCCESS:
                state.last_success_at = now

            await self.db.commit()
            return state
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CheckpointError(
                "Failed to save sync cursor",
                context={"key": key, "operation": "write", "cursor": cursor},
                original_exception=e,
            )

    # ------------------------------------------------------------------
    # Shared lookups
    # ------------------------------------------------------------------

    async def portal_customer_ids(self) -> List[int]:
        """Distinct ERP customer ids of portal profiles"""
        try:
            result = await self.db.execute(
                select(distinct(Profile.netsuite_customer_id))
                .where(Profile.netsuite_customer_id.is_not(None))
                .order_by(Profile.netsuite_customer_id)
            )
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to load profile customer ids",
                context={"operation": "SELECT", "table_name": Profile.__tablename__},
                original_exception=e,
            )
        return [cid for cid in result.scalars().all() if cid and cid > 0]

    def response(self, status: SyncStatus) -> Dict[str, Any]:
        return {
            "ok": True,
            "job": self.job_name,
            "run_id": str(self.run_id) if self.run_id else None,
            "status": status.value,
            "dry_run": self.dry_run,
            "counts": dict(self.counts),
            "context": self.context,
        }
