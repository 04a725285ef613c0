from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ExhaustedRetryError, TransientError, ValidationError
from app.core.telemetry import get_tracer
from app.models.base import utcnow
from app.models.job import PortalJob
from app.models.portal import Portal
from app.models.publication import Publication
from app.portals.base import AdapterResult, PortalAdapter, success, terminal, with_pending_refresh
from app.portals.registry import get_adapter
from app.services.catalog import ListingCatalog, SqlListingCatalog
from app.services.job_queue import ensure_publication
from app.services.listing_filter import to_export_record
from app.services.portal_registry import portal_credentials, store_credentials
from app.services.retry import compute_backoff_seconds
from app.services.sync_log import elapsed_ms, record_sync_log


log = logging.getLogger(__name__)

ACTOR = "dispatcher"
LEASE_EXPIRED = "LEASE_EXPIRED"


@dataclass
class DrainResult:
    claimed: int = 0
    reclaimed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class JobOutcome:
    result: AdapterResult
    action: str  # action actually performed after publish/update resolution
    payload: dict[str, Any] | None = None
    noop: bool = False


async def due_job_ids(db: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    stmt = (
        select(PortalJob.id)
        .where(PortalJob.status == "queued", PortalJob.next_run_at <= now)
        .order_by(PortalJob.next_run_at.asc(), PortalJob.created_at.asc())
        .limit(limit)
    )
    if db.get_bind().dialect.name == "postgresql":
        # lets overlapping drains skip each other's candidates; the claim below is still the guard
        stmt = stmt.with_for_update(skip_locked=True)
    return list((await db.execute(stmt)).scalars().all())


async def claim_job(db: AsyncSession, job_id: str, *, now: datetime) -> bool:
    """
    Compare-and-set queued -> processing. Exactly one caller wins per job,
    whatever the number of overlapping drains.
    """
    res = await db.execute(
        update(PortalJob)
        .where(PortalJob.id == job_id, PortalJob.status == "queued")
        .values(status="processing", claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def reclaim_expired(db: AsyncSession, *, now: datetime, lease_seconds: int | None = None) -> int:
    """
    Put back jobs left in processing past the claim lease (worker died mid-call,
    or the outcome write failed). The lost run counts as an attempt, so a job
    that keeps killing its worker still ends up failed.
    """
    lease_seconds = lease_seconds if lease_seconds is not None else settings.claim_lease_seconds
    cutoff = now - timedelta(seconds=lease_seconds)

    rows = (await db.execute(
        select(PortalJob.id, PortalJob.portal_id, PortalJob.listing_id, PortalJob.attempts, PortalJob.max_attempts)
        .where(PortalJob.status == "processing", PortalJob.claimed_at < cutoff)
    )).all()

    reclaimed = 0
    for row in rows:
        attempts = row.attempts + 1
        message = f"Claim lease expired after {lease_seconds}s without an outcome"
        if attempts < row.max_attempts:
            values = dict(status="queued", next_run_at=now, error_code=LEASE_EXPIRED, last_error=message)
        else:
            message = f"Gave up after {attempts} attempts: {message}"
            values = dict(status="failed", finished_at=now, error_code=ExhaustedRetryError.code, last_error=message)

        # conditional on the same expired claim, so a late outcome write or another drain wins cleanly
        res = await db.execute(
            update(PortalJob)
            .where(PortalJob.id == row.id, PortalJob.status == "processing", PortalJob.claimed_at < cutoff)
            .values(attempts=attempts, claimed_at=None, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            continue
        reclaimed += 1

        await db.execute(
            update(Publication)
            .where(Publication.portal_id == row.portal_id, Publication.listing_id == row.listing_id)
            .values(status="error", last_error=message, last_attempt_at=now, updated_by=ACTOR, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        log.warning("dispatcher: reclaimed job=%s status=%s attempts=%d", row.id, values["status"], attempts)

    return reclaimed


async def _call(coro, *, timeout: float, credentials: Any) -> AdapterResult:
    try:
        result = await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        result = AdapterResult(
            ok=False,
            retryable=True,
            error_code="TIMEOUT",
            error_message=f"Adapter call timed out after {timeout:g}s",
        )
    except TransientError as e:
        result = AdapterResult(ok=False, retryable=True, error_code=e.code, error_message=str(e))
    return with_pending_refresh(result, credentials)


def resolve_action(action: str, external_id: str | None) -> str:
    if action == "publish" and external_id:
        return "update"
    if action == "update" and not external_id:
        return "publish"
    return action


async def _run_job(
    job: PortalJob,
    portal: Portal | None,
    pub: Publication,
    *,
    catalog: ListingCatalog,
    timeout: float,
) -> JobOutcome:
    if portal is None:
        return JobOutcome(terminal("PORTAL_NOT_FOUND", f"Portal not found: {job.portal_id}"), job.action)
    if not portal.active:
        return JobOutcome(terminal("PORTAL_INACTIVE", f"Portal {portal.slug} is inactive"), job.action)

    try:
        adapter: PortalAdapter = get_adapter(portal.adapter_type)
        credentials = portal_credentials(portal)
    except KeyError as e:
        return JobOutcome(terminal("NO_ADAPTER", str(e)), job.action)
    except ValueError as e:
        return JobOutcome(terminal(ValidationError.code, f"Invalid credentials: {e}"), job.action)
    except ValidationError as e:
        return JobOutcome(terminal(ValidationError.code, str(e)), job.action)

    action = resolve_action(job.action, pub.external_id)

    if action in ("pause", "remove"):
        if not pub.external_id:
            return JobOutcome(success(detail={"mode": "nothing_to_take_down"}), action, noop=True)
        method = adapter.pause if action == "pause" else adapter.remove
        return JobOutcome(await _call(method(external_id=pub.external_id, credentials=credentials), timeout=timeout, credentials=credentials), action)

    listing = await catalog.get(job.listing_id)
    if listing is None:
        return JobOutcome(terminal("LISTING_NOT_FOUND", f"Listing not found: {job.listing_id}"), action)
    if not listing.sync_enabled:
        return JobOutcome(terminal("SYNC_DISABLED", "Listing has portal sync disabled"), action)

    try:
        payload = adapter.build_payload(to_export_record(listing, portal), credentials)
    except ValidationError as e:
        return JobOutcome(terminal(ValidationError.code, str(e)), action)

    if pub.payload_snapshot is not None and pub.payload_snapshot == payload:
        # same payload already accepted by the portal
        return JobOutcome(
            success(external_id=pub.external_id, detail={"mode": "unchanged_payload"}), action, payload, noop=True
        )

    if action == "publish":
        coro = adapter.publish(payload=payload, credentials=credentials)
    else:
        coro = adapter.update(external_id=pub.external_id, payload=payload, credentials=credentials)
    return JobOutcome(await _call(coro, timeout=timeout, credentials=credentials), action, payload)


def _apply_success(job: PortalJob, pub: Publication, outcome: JobOutcome, *, now: datetime) -> None:
    job.status = "completed"
    job.finished_at = now
    job.last_error = None
    job.error_code = None

    pub.last_error = None
    pub.last_attempt_at = now
    pub.updated_by = ACTOR

    if outcome.action in ("pause", "remove"):
        pub.status = "disabled"
        # next publish/update must send the full payload again
        pub.payload_snapshot = None
        if outcome.action == "remove":
            pub.external_id = None
        return

    pub.status = "published"
    if outcome.result.external_id:
        pub.external_id = outcome.result.external_id
    pub.payload_snapshot = outcome.payload


def _apply_failure(job: PortalJob, pub: Publication, result: AdapterResult, *, now: datetime) -> bool:
    """Returns True when the job goes back to the queue."""
    message = result.error_message or result.error_code or "unknown error"

    pub.status = "error"
    pub.last_error = message
    pub.last_attempt_at = now
    pub.updated_by = ACTOR

    job.error_code = result.error_code

    if result.retryable and job.attempts < job.max_attempts:
        job.status = "queued"
        delay = max(compute_backoff_seconds(job.attempts), result.retry_after_seconds or 0)
        job.next_run_at = now + timedelta(seconds=delay)
        job.last_error = message
        return True

    job.status = "failed"
    job.finished_at = now
    if result.retryable:
        job.error_code = ExhaustedRetryError.code
        job.last_error = f"Gave up after {job.attempts} attempts: {message}"
        pub.last_error = job.last_error
    else:
        job.last_error = message
    return False


async def process_job(
    db: AsyncSession,
    job_id: str,
    *,
    now: datetime,
    catalog: ListingCatalog,
    timeout: float,
) -> str:
    """
    Run one claimed job and write the ledger. Returns "succeeded", "retried" or "failed".
    Nothing in the ledger changes before the adapter call has returned.
    """
    started = time.monotonic()
    job = (await db.execute(
        select(PortalJob).where(PortalJob.id == job_id).execution_options(populate_existing=True)
    )).scalar_one()
    portal = (await db.execute(select(Portal).where(Portal.id == job.portal_id))).scalar_one_or_none()
    pub = await ensure_publication(db, portal_id=job.portal_id, listing_id=job.listing_id)

    try:
        outcome = await _run_job(job, portal, pub, catalog=catalog, timeout=timeout)
    except Exception as e:
        log.exception("dispatcher: job=%s crashed", job.id)
        outcome = JobOutcome(
            AdapterResult(ok=False, retryable=True, error_code="UNEXPECTED_ERROR", error_message=f"{type(e).__name__}: {e}"),
            job.action,
        )

    job.attempts += 1
    result = outcome.result

    if result.ok:
        _apply_success(job, pub, outcome, now=now)
        verdict = "succeeded"
    elif _apply_failure(job, pub, result, now=now):
        verdict = "retried"
    else:
        verdict = "failed"

    if portal is not None and result.refreshed_credentials:
        await store_credentials(db, portal, result.refreshed_credentials)

    if portal is not None:
        await record_sync_log(
            db,
            portal_id=portal.id,
            kind="job",
            status="success" if result.ok else "error",
            total_items=1,
            duration_ms=elapsed_ms(started),
            detail={
                "job_id": job.id,
                "action": job.action,
                "performed": outcome.action,
                "listing_id": job.listing_id,
                "attempt": job.attempts,
                "outcome": verdict,
                "noop": outcome.noop,
                "error_code": result.error_code,
                "error": result.error_message,
            },
        )

    log.info(
        "dispatcher: job=%s action=%s performed=%s outcome=%s attempts=%d/%d",
        job.id, job.action, outcome.action, verdict, job.attempts, job.max_attempts,
    )
    return verdict


async def drain(
    db: AsyncSession,
    *,
    batch_size: int | None = None,
    now: datetime | None = None,
    catalog: ListingCatalog | None = None,
    timeout_seconds: float | None = None,
    lease_seconds: int | None = None,
) -> DrainResult:
    """
    Claim up to batch_size due jobs and process them. Re-entrant: overlapping
    calls partition the queue through the conditional claim.

    Claims are committed before any adapter call; each job's outcome is
    committed on its own so one slow or broken job never holds the rest.
    """
    now = now or utcnow()
    batch_size = batch_size or settings.drain_batch_size
    timeout = timeout_seconds if timeout_seconds is not None else settings.adapter_timeout_seconds
    catalog = catalog or SqlListingCatalog(db)

    out = DrainResult()
    out.reclaimed = await reclaim_expired(db, now=now, lease_seconds=lease_seconds)

    candidates = await due_job_ids(db, now=now, limit=batch_size)
    claimed: list[str] = []
    for job_id in candidates:
        if await claim_job(db, job_id, now=now):
            claimed.append(job_id)
    await db.commit()

    out.claimed = len(claimed)
    if not claimed:
        return out

    tracer = get_tracer()
    for job_id in claimed:
        with tracer.start_as_current_span("portal_jobs.process") as span:
            span.set_attribute("portal_job.id", job_id)
            try:
                verdict = await process_job(db, job_id, now=now, catalog=catalog, timeout=timeout)
                await db.commit()
            except Exception as e:
                # ledger write failed; the job stays in processing until its claim lease expires
                await db.rollback()
                log.exception("dispatcher: failed to record outcome job=%s", job_id)
                out.failed += 1
                out.errors.append(f"{job_id}: {type(e).__name__}: {e}")
                continue
            span.set_attribute("portal_job.outcome", verdict)

        if verdict == "succeeded":
            out.succeeded += 1
        elif verdict == "retried":
            out.retried += 1
        else:
            out.failed += 1
            last_error = (await db.execute(select(PortalJob.last_error).where(PortalJob.id == job_id))).scalar_one()
            out.errors.append(f"{job_id}: {last_error}")

    log.info(
        "dispatcher: drained reclaimed=%d claimed=%d succeeded=%d retried=%d failed=%d",
        out.reclaimed, out.claimed, out.succeeded, out.retried, out.failed,
    )
    return out
