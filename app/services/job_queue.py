from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.base import utcnow
from app.models.job import PortalJob
from app.models.publication import Publication
from app.services.portal_registry import get_portal


log = logging.getLogger(__name__)

JOB_ACTIONS = ("publish", "update", "pause", "remove")
JOB_STATUSES = ("queued", "processing", "completed", "failed")


async def get_publication(db: AsyncSession, *, portal_id: str, listing_id: str) -> Publication | None:
    return (await db.execute(
        select(Publication).where(
            Publication.portal_id == portal_id,
            Publication.listing_id == listing_id,
        )
    )).scalar_one_or_none()


async def ensure_publication(db: AsyncSession, *, portal_id: str, listing_id: str) -> Publication:
    """Get-or-create the ledger row. Safe against a concurrent insert of the same pair."""
    pub = await get_publication(db, portal_id=portal_id, listing_id=listing_id)
    if pub:
        return pub

    try:
        async with db.begin_nested():
            pub = Publication(portal_id=portal_id, listing_id=listing_id, status="not_published")
            db.add(pub)
            await db.flush()
        return pub
    except IntegrityError:
        # lost the race: someone inserted it first
        pub = await get_publication(db, portal_id=portal_id, listing_id=listing_id)
        if not pub:
            raise
        return pub


async def enqueue(
    db: AsyncSession,
    *,
    portal_id: str,
    listing_id: str,
    action: str,
    now: datetime | None = None,
    max_attempts: int | None = None,
) -> PortalJob:
    """
    Mark the publication pending and schedule a job for (portal, listing).

    A job already queued for the pair is reused (action replaced, attempts reset,
    due now) instead of adding a second one. The reuse is a conditional update so
    it never touches a job a drain has just claimed; in that case a new job is added
    and the payload snapshot check turns it into a no-op if nothing changed.
    """
    if action not in JOB_ACTIONS:
        raise ValueError(f"Unknown job action: {action}")

    now = now or utcnow()
    max_attempts = max_attempts or settings.job_max_attempts

    await get_portal(db, portal_id)

    pub = await ensure_publication(db, portal_id=portal_id, listing_id=listing_id)
    pub.status = "pending"
    pub.last_error = None

    existing_id = (await db.execute(
        select(PortalJob.id)
        .where(
            PortalJob.portal_id == portal_id,
            PortalJob.listing_id == listing_id,
            PortalJob.status == "queued",
        )
        .order_by(PortalJob.created_at.asc())
        .limit(1)
    )).scalar_one_or_none()

    if existing_id:
        res = await db.execute(
            update(PortalJob)
            .where(PortalJob.id == existing_id, PortalJob.status == "queued")
            .values(
                action=action,
                attempts=0,
                max_attempts=max_attempts,
                next_run_at=now,
                last_error=None,
                error_code=None,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if res.rowcount == 1:
            await db.flush()
            log.info("job_queue: refreshed job=%s action=%s", existing_id, action)
            return (await db.execute(
                select(PortalJob).where(PortalJob.id == existing_id).execution_options(populate_existing=True)
            )).scalar_one()

    job = PortalJob(
        portal_id=portal_id,
        listing_id=listing_id,
        action=action,
        status="queued",
        attempts=0,
        max_attempts=max_attempts,
        next_run_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.flush()
    log.info("job_queue: enqueued job=%s portal=%s listing=%s action=%s", job.id, portal_id, listing_id, action)
    return job


async def get_job(db: AsyncSession, job_id: str) -> PortalJob | None:
    return (await db.execute(select(PortalJob).where(PortalJob.id == job_id))).scalar_one_or_none()


async def queue_counts(db: AsyncSession) -> dict[str, int]:
    rows = (await db.execute(
        select(PortalJob.status, func.count()).group_by(PortalJob.status)
    )).all()
    counts = {status: 0 for status in JOB_STATUSES}
    counts.update({status: int(n) for status, n in rows})
    return counts


async def list_publications(db: AsyncSession, *, portal_id: str, status: str | None = None, limit: int = 100) -> list[Publication]:
    stmt = select(Publication).where(Publication.portal_id == portal_id)
    if status:
        stmt = stmt.where(Publication.status == status)
    stmt = stmt.order_by(Publication.updated_at.desc(), Publication.id.asc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())
