"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, SyncRunSummary, SyncStateInfo
from models.base import SyncStatus
from models.sync_run import SyncRun
from models.sync_state import SyncState
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Persisted cursor state per job
    - Latest run per job (a job whose latest run failed degrades health)
    """

    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    sync_states = []
    latest_runs = []

    if db_connected:
        try:
            states = await db.execute(select(SyncState).order_by(SyncState.key))
            sync_states = [SyncStateInfo.model_validate(s) for s in states.scalars().all()]

            latest = (
                select(SyncRun.job_name, func.max(SyncRun.id).label("last_id"))
                .where(SyncRun.dry_run.is_(False))
                .group_by(SyncRun.job_name)
                .subquery()
            )
            runs = await db.execute(
                select(SyncRun).join(latest, SyncRun.id == latest.c.last_id).order_by(SyncRun.job_name)
            )
            latest_runs = [SyncRunSummary.from_run(r) for r in runs.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch sync status: {str(e)}")

    failed_jobs = sum(1 for r in latest_runs if r.status == SyncStatus.FAILED.value)

    return HealthCheckResponse(
        database_connected=db_connected,
        sync_states=sync_states,
        latest_runs=latest_runs,
        total_jobs=len(latest_runs),
        failed_jobs=failed_jobs,
    )
