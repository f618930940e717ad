# ============================================================================
# File: ingestion/runner.py
# Description: Sync job orchestrator with run ledger and error conversion
# ============================================================================
"""
Sync Runner - wraps a job with its audit row and failure handling.

This module provides:
- One sync_runs row per execution (running -> success/partial/failed)
- Rollback of the in-flight transaction on failure
- Partial counts attached to the raised error
- Conversion of unexpected exceptions into ETLException
"""

from typing import Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ingestion.base import SyncJob
from models.base import SyncStatus
from core.exceptions import ETLException

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    Sync job orchestrator.

    Responsibilities:
    - Record the run before any remote work
    - Execute the job
    - Finalize the run with counts, status and error details
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def run(self, job: SyncJob) -> Dict[str, Any]:
        """
        Run one sync job.

        Returns:
            Job response: ok, job, run_id, status, dry_run, counts, context

        Raises:
            ETLException: Any failure, with partial counts in its context
        """
        await job.start_run()

        try:
            await job.execute()

        except ETLException as e:
            logger.error(
                f"{job.job_name} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self.db.rollback()
            e.context.setdefault("job", job.job_name)
            e.context["counts"] = dict(job.counts)
            await self._fail(job, e.message, e.to_dict())
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in {job.job_name}")
            await self.db.rollback()
            wrapped = ETLException(
                "Unexpected error in sync job",
                context={"job": job.job_name, "counts": dict(job.counts)},
                original_exception=e
            )
            await self._fail(job, str(e), wrapped.to_dict())
            raise wrapped

        status = SyncStatus.PARTIAL if job.counts.get("failed") else SyncStatus.SUCCESS
        await job.complete_run(status)

        logger.info(
            f"{job.job_name} run {job.run_id} finished: {status.value} "
            f"counts={job.counts}"
        )
        return job.response(status)

    async def _fail(self, job: SyncJob, message: str, details: Dict[str, Any]) -> None:
        try:
            await job.complete_run(SyncStatus.FAILED, error_message=message, error_details=details)
        except Exception:
            # The original error is what the caller needs to see
            logger.exception(f"Could not record failure for {job.job_name} run {job.run_id}")
            await self.db.rollback()
