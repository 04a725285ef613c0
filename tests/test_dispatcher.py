import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.errors import TransientError
from app.models.base import utcnow
from app.models.job import PortalJob
from app.models.sync_log import SyncLogEntry
from app.portals.base import AdapterResult, success, terminal
from app.portals.registry import register_adapter
from app.services.dispatcher import claim_job, drain, resolve_action
from app.services.job_queue import enqueue, get_job, get_publication
from app.services.portal_registry import read_credentials
from app.services.retry import compute_backoff_seconds

from factories import build_listing, build_portal


class FakeAdapter:
    """Stands in for the manual adapter and records what the dispatcher asked for."""

    adapter_type = "manual"

    def __init__(self):
        self.calls = []
        self.results = []
        self.delay = 0.0
        self.error = None

    def build_payload(self, record, credentials):
        return {"id": record.id, "title": record.title, "price": record.price}

    async def _respond(self, action, external_id=None):
        self.calls.append(action)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return success(external_id=external_id or "remote-1")

    async def publish(self, *, payload, credentials):
        return await self._respond("publish")

    async def update(self, *, external_id, payload, credentials):
        return await self._respond("update", external_id)

    async def pause(self, *, external_id, credentials):
        return await self._respond("pause", external_id)

    async def remove(self, *, external_id, credentials):
        return await self._respond("remove", external_id)

    async def test_connection(self, *, credentials):
        return success()


@pytest.fixture
def fake_adapter():
    adapter = FakeAdapter()
    previous = register_adapter(adapter)
    yield adapter
    register_adapter(previous)


@pytest.fixture
async def api_portal(make_portal):
    return await make_portal(slug="portal-api", method="api", adapter_type="manual")


def _naive(dt):
    return dt.replace(tzinfo=None)


async def _publish(db_session, portal, listing, *, now, action="publish"):
    job = await enqueue(db_session, portal_id=portal.id, listing_id=listing.id, action=action, now=now)
    res = await drain(db_session, now=now)
    return job, res


def test_resolve_action():
    assert resolve_action("publish", None) == "publish"
    assert resolve_action("publish", "remote-1") == "update"
    assert resolve_action("update", None) == "publish"
    assert resolve_action("update", "remote-1") == "update"
    assert resolve_action("pause", None) == "pause"
    assert resolve_action("remove", "remote-1") == "remove"


def test_backoff_grows_until_cap():
    delays = [compute_backoff_seconds(a, base=30, cap=3600) for a in range(1, 10)]
    assert delays[:7] == [30, 60, 120, 240, 480, 960, 1920]
    assert delays[7:] == [3600, 3600]
    assert all(b > a for a, b in zip(delays[:8], delays[1:8]))


@pytest.mark.asyncio
async def test_manual_portal_publish_end_to_end(db_session, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()

    job, res = await _publish(db_session, api_portal, listing, now=now)

    assert (res.claimed, res.succeeded, res.failed, res.retried) == (1, 1, 0, 0)

    job = await get_job(db_session, job.id)
    assert job.status == "completed"
    assert job.attempts == 1

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert pub.status == "published"
    assert pub.last_error is None
    assert pub.payload_snapshot == {"id": "REF-1", "title": "Casa ampla no centro"}

    logs = (await db_session.execute(
        select(SyncLogEntry).where(SyncLogEntry.portal_id == api_portal.id, SyncLogEntry.kind == "job")
    )).scalars().all()
    assert len(logs) == 1
    assert logs[0].status == "success"
    assert logs[0].detail["outcome"] == "succeeded"


@pytest.mark.asyncio
async def test_timeouts_exhaust_retries(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.delay = 1.0
    listing = await make_listing()
    now = utcnow()

    job = await enqueue(
        db_session, portal_id=api_portal.id, listing_id=listing.id, action="publish", now=now, max_attempts=5
    )

    delays = []
    for round_no in range(1, 6):
        res = await drain(db_session, now=now, timeout_seconds=0.01)
        assert res.claimed == 1
        job = await get_job(db_session, job.id)
        assert job.attempts == round_no
        if round_no < 5:
            assert res.retried == 1
            assert job.status == "queued"
            assert job.error_code == "TIMEOUT"
            delays.append(_naive(job.next_run_at) - _naive(now))
        else:
            assert res.failed == 1
        now = now + timedelta(hours=2)

    assert all(b > a for a, b in zip(delays, delays[1:]))
    assert len(fake_adapter.calls) == 5

    assert job.status == "failed"
    assert job.error_code == "EXHAUSTED_RETRIES"
    assert job.last_error.startswith("Gave up after 5 attempts")

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert pub.status == "error"
    assert "timed out" in pub.last_error

    # failed jobs are never picked up again
    res = await drain(db_session, now=now + timedelta(days=1))
    assert res.claimed == 0


@pytest.mark.asyncio
async def test_retry_is_not_due_before_backoff(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.results = [AdapterResult(ok=False, retryable=True, error_code="HTTP_503", error_message="HTTP 503")]
    listing = await make_listing()
    now = utcnow()

    job, res = await _publish(db_session, api_portal, listing, now=now)
    assert res.retried == 1

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert pub.status == "error"
    assert pub.last_error == "HTTP 503"

    res = await drain(db_session, now=now)
    assert res.claimed == 0

    res = await drain(db_session, now=now + timedelta(seconds=compute_backoff_seconds(1)))
    assert res.succeeded == 1
    assert pub.status == "published"
    assert pub.last_error is None
    assert pub.external_id == "remote-1"


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.results = [terminal("PORTAL_REJECTED", "Import error 1: INVALID_ZIPCODE")]
    listing = await make_listing()

    job, res = await _publish(db_session, api_portal, listing, now=utcnow())

    assert res.failed == 1
    assert res.errors and "INVALID_ZIPCODE" in res.errors[0]
    job = await get_job(db_session, job.id)
    assert job.status == "failed"
    assert job.attempts == 1
    assert job.error_code == "PORTAL_REJECTED"


@pytest.mark.asyncio
async def test_unexpected_adapter_error_is_retried(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.error = RuntimeError("boom")
    listing = await make_listing()

    job, res = await _publish(db_session, api_portal, listing, now=utcnow())

    assert res.retried == 1
    job = await get_job(db_session, job.id)
    assert job.status == "queued"
    assert job.error_code == "UNEXPECTED_ERROR"
    assert "boom" in job.last_error


@pytest.mark.asyncio
async def test_transient_adapter_error_is_retried_with_its_code(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.error = TransientError("portal throttled the account")
    listing = await make_listing()

    job, res = await _publish(db_session, api_portal, listing, now=utcnow())

    assert res.retried == 1
    job = await get_job(db_session, job.id)
    assert job.status == "queued"
    assert job.error_code == "TRANSIENT_ERROR"
    assert job.last_error == "portal throttled the account"


@pytest.mark.asyncio
async def test_claim_is_exclusive(db_session, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()
    job = await enqueue(db_session, portal_id=api_portal.id, listing_id=listing.id, action="publish", now=now)
    await db_session.commit()

    assert await claim_job(db_session, job.id, now=now) is True
    assert await claim_job(db_session, job.id, now=now) is False
    await db_session.commit()

    await db_session.refresh(job)
    assert job.status == "processing"

    res = await drain(db_session, now=now)
    assert res.claimed == 0


@pytest.mark.asyncio
async def test_unchanged_payload_is_not_sent_twice(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()

    await _publish(db_session, api_portal, listing, now=now)
    assert fake_adapter.calls == ["publish"]

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert pub.external_id == "remote-1"

    _, res = await _publish(db_session, api_portal, listing, now=now)
    assert res.succeeded == 1
    assert fake_adapter.calls == ["publish"]
    assert pub.status == "published"

    listing.price = 480000.0
    await db_session.flush()

    _, res = await _publish(db_session, api_portal, listing, now=now, action="update")
    assert res.succeeded == 1
    assert fake_adapter.calls == ["publish", "update"]
    assert pub.payload_snapshot["price"] == 480000


@pytest.mark.asyncio
async def test_remove_disables_publication(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()

    await _publish(db_session, api_portal, listing, now=now)
    _, res = await _publish(db_session, api_portal, listing, now=now, action="remove")

    assert res.succeeded == 1
    assert fake_adapter.calls == ["publish", "remove"]

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert pub.status == "disabled"
    assert pub.external_id is None
    assert pub.payload_snapshot is None

    # next publish sends the full payload again
    await _publish(db_session, api_portal, listing, now=now)
    assert fake_adapter.calls == ["publish", "remove", "publish"]
    assert pub.status == "published"


@pytest.mark.asyncio
async def test_pause_keeps_external_id(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()

    await _publish(db_session, api_portal, listing, now=now)
    await _publish(db_session, api_portal, listing, now=now, action="pause")

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert fake_adapter.calls == ["publish", "pause"]
    assert pub.status == "disabled"
    assert pub.external_id == "remote-1"


@pytest.mark.asyncio
async def test_take_down_without_external_id_is_local(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()

    for action in ("pause", "remove"):
        _, res = await _publish(db_session, api_portal, listing, now=now, action=action)
        assert res.succeeded == 1

    assert fake_adapter.calls == []
    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    assert pub.status == "disabled"


@pytest.mark.asyncio
async def test_missing_listing_fails_without_retry(db_session, fake_adapter, api_portal):
    now = utcnow()
    job = await enqueue(db_session, portal_id=api_portal.id, listing_id="lst_gone", action="publish", now=now)

    res = await drain(db_session, now=now)

    assert res.failed == 1
    job = await get_job(db_session, job.id)
    assert job.status == "failed"
    assert job.error_code == "LISTING_NOT_FOUND"
    assert fake_adapter.calls == []

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id="lst_gone")
    assert pub.status == "error"


@pytest.mark.asyncio
async def test_sync_disabled_listing_fails_without_retry(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing(sync_enabled=False)

    job, res = await _publish(db_session, api_portal, listing, now=utcnow())

    assert res.failed == 1
    job = await get_job(db_session, job.id)
    assert job.error_code == "SYNC_DISABLED"
    assert fake_adapter.calls == []


@pytest.mark.asyncio
async def test_inactive_portal_fails_without_retry(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()
    job = await enqueue(db_session, portal_id=api_portal.id, listing_id=listing.id, action="publish", now=now)
    api_portal.active = False
    await db_session.flush()

    res = await drain(db_session, now=now)

    assert res.failed == 1
    job = await get_job(db_session, job.id)
    assert job.error_code == "PORTAL_INACTIVE"


@pytest.mark.asyncio
async def test_refreshed_credentials_are_stored(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.results = [
        success(external_id="remote-9", refreshed_credentials={"access_token": "fresh", "token_expires_at": 123}),
    ]
    listing = await make_listing()

    await _publish(db_session, api_portal, listing, now=utcnow())

    creds = read_credentials(api_portal)
    assert creds["access_token"] == "fresh"
    assert creds["token_expires_at"] == 123


@pytest.mark.asyncio
async def test_drain_respects_batch_size(db_session, api_portal, make_listing):
    now = utcnow()
    for i in range(3):
        listing = await make_listing(reference=f"REF-{i}")
        await enqueue(db_session, portal_id=api_portal.id, listing_id=listing.id, action="publish", now=now)

    first = await drain(db_session, now=now, batch_size=2)
    second = await drain(db_session, now=now, batch_size=2)

    assert (first.claimed, second.claimed) == (2, 1)
    assert first.succeeded + second.succeeded == 3


@pytest.mark.asyncio
async def test_retry_after_from_portal_extends_backoff(db_session, fake_adapter, api_portal, make_listing):
    fake_adapter.results = [
        AdapterResult(ok=False, retryable=True, error_code="HTTP_429", error_message="HTTP 429", retry_after_seconds=900),
    ]
    listing = await make_listing()
    now = utcnow()

    job, res = await _publish(db_session, api_portal, listing, now=now)
    assert res.retried == 1

    job = await get_job(db_session, job.id)
    assert _naive(job.next_run_at) - _naive(now) == timedelta(seconds=900)

    res = await drain(db_session, now=now + timedelta(seconds=compute_backoff_seconds(1)))
    assert res.claimed == 0


@pytest.mark.asyncio
async def test_abandoned_claim_is_reclaimed_after_lease(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()
    job = await enqueue(db_session, portal_id=api_portal.id, listing_id=listing.id, action="publish", now=now)
    await db_session.commit()

    # the claiming worker dies before writing an outcome
    assert await claim_job(db_session, job.id, now=now) is True
    await db_session.commit()

    res = await drain(db_session, now=now + timedelta(seconds=60), lease_seconds=600)
    assert (res.reclaimed, res.claimed) == (0, 0)

    res = await drain(db_session, now=now + timedelta(seconds=601), lease_seconds=600)
    assert (res.reclaimed, res.claimed, res.succeeded) == (1, 1, 1)
    assert fake_adapter.calls == ["publish"]

    await db_session.refresh(job)
    assert job.status == "completed"
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_abandoned_claim_on_last_attempt_fails(db_session, fake_adapter, api_portal, make_listing):
    listing = await make_listing()
    now = utcnow()
    job = await enqueue(
        db_session, portal_id=api_portal.id, listing_id=listing.id, action="publish", now=now, max_attempts=1
    )
    await db_session.commit()
    assert await claim_job(db_session, job.id, now=now) is True
    await db_session.commit()

    res = await drain(db_session, now=now + timedelta(hours=1), lease_seconds=600)
    assert (res.reclaimed, res.claimed) == (1, 0)
    assert fake_adapter.calls == []

    await db_session.refresh(job)
    assert job.status == "failed"
    assert job.error_code == "EXHAUSTED_RETRIES"
    assert job.last_error.startswith("Gave up after 1 attempts")

    pub = await get_publication(db_session, portal_id=api_portal.id, listing_id=listing.id)
    await db_session.refresh(pub)
    assert pub.status == "error"
    assert "lease expired" in pub.last_error


@pytest.mark.asyncio
async def test_overlapping_drains_process_each_job_once(concurrent_session_factory, fake_adapter):
    fake_adapter.delay = 0.05
    now = utcnow()

    async with concurrent_session_factory() as setup:
        portal = build_portal(slug="portal-api", method="api", adapter_type="manual")
        setup.add(portal)
        listings = [build_listing(reference=f"REF-{i}", slug=f"casa-{i}") for i in range(6)]
        setup.add_all(listings)
        await setup.flush()
        for listing in listings:
            await enqueue(setup, portal_id=portal.id, listing_id=listing.id, action="publish", now=now)
        await setup.commit()

    async def _drain():
        async with concurrent_session_factory() as db:
            return await drain(db, now=now, batch_size=3)

    results = await asyncio.gather(_drain(), _drain(), _drain())

    assert sum(r.claimed for r in results) == 6
    assert sum(r.succeeded for r in results) == 6
    assert len(fake_adapter.calls) == 6

    async with concurrent_session_factory() as check:
        jobs = (await check.execute(select(PortalJob))).scalars().all()
        assert len(jobs) == 6
        assert {j.status for j in jobs} == {"completed"}
        assert {j.attempts for j in jobs} == {1}
