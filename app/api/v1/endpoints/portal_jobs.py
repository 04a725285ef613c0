from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.errors import PortalNotFoundError
from app.models.job import PortalJob
from app.portals.registry import supported_adapter_types
from app.schemas.job import DrainOut, DrainRequest, JobEnqueue, JobOut
from app.services.dispatcher import drain
from app.services.internal_admin import require_internal_admin
from app.services.job_queue import enqueue, queue_counts


router = APIRouter()


def _job_out(job: PortalJob) -> JobOut:
    return JobOut(
        id=job.id,
        portal_id=job.portal_id,
        listing_id=job.listing_id,
        action=job.action,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        next_run_at=job.next_run_at.isoformat(),
        last_error=job.last_error,
    )


@router.post("/portal-jobs", response_model=JobOut, status_code=202)
async def enqueue_job(
    body: JobEnqueue,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        job = await enqueue(db, portal_id=body.portal_id, listing_id=body.listing_id, action=body.action)
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")
    await db.commit()
    return _job_out(job)


@router.post("/portal-jobs/drain", response_model=DrainOut)
async def drain_jobs(
    body: DrainRequest,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    res = await drain(db, batch_size=body.batch_size)
    return DrainOut(
        claimed=res.claimed,
        reclaimed=res.reclaimed,
        succeeded=res.succeeded,
        failed=res.failed,
        retried=res.retried,
        errors=res.errors,
    )


@router.get("/portal-jobs/health")
async def portal_jobs_health(
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    return {
        "jobs": await queue_counts(db),
        "adapters": supported_adapter_types(),
    }
