"""
Sync run history endpoint
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db, require_admin_secret
from schemas.api import RunsResponse, SyncRunSummary
from models.base import SyncStatus
from models.sync_run import SyncRun
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/admin/sync",
    tags=["Statistics"],
    dependencies=[Depends(require_admin_secret)],
)


@router.get("/runs", response_model=RunsResponse)
async def get_runs(
    request: Request,
    limit: int = Query(20, ge=1, le=200, description="Number of recent runs to return"),
    job: Optional[str] = Query(None, description="Only runs of this job"),
    db: AsyncSession = Depends(get_db)
):
    """
    Recent sync runs with summary figures.

    Returns:
    - Recent runs, newest first
    - Last success / failure time
    - Average duration of successful runs
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(f"[{request_id}] GET /admin/sync/runs job={job} limit={limit}")

    filters = [SyncRun.job_name == job] if job else []

    total_runs = (
        await db.execute(select(func.count()).select_from(SyncRun).where(*filters))
    ).scalar()

    last_success = (
        await db.execute(
            select(func.max(SyncRun.completed_at)).where(SyncRun.status == SyncStatus.SUCCESS, *filters)
        )
    ).scalar()

    last_failure = (
        await db.execute(
            select(func.max(SyncRun.completed_at)).where(SyncRun.status == SyncStatus.FAILED, *filters)
        )
    ).scalar()

    avg_duration = (
        await db.execute(
            select(func.avg(SyncRun.duration_seconds)).where(
                and_(
                    SyncRun.status == SyncStatus.SUCCESS,
                    SyncRun.duration_seconds.isnot(None),
                    *filters
                )
            )
        )
    ).scalar()

    recent = await db.execute(
        select(SyncRun)
        .where(*filters)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(limit)
    )
    runs = [SyncRunSummary.from_run(r) for r in recent.scalars().all()]

    return RunsResponse(
        runs=runs,
        total_runs=total_runs or 0,
        last_success=last_success,
        last_failure=last_failure,
        avg_duration_seconds=round(avg_duration, 2) if avg_duration else None,
        request_id=request_id
    )
