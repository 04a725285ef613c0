import httpx
import pytest
from sqlalchemy import select

from app.core.errors import PortalNotFoundError
from app.models.sync_log import SyncLogEntry
from app.portals.registry import register_adapter
from app.portals.static_token import StaticTokenPortalAdapter
from app.services.connectivity import run_connectivity_test


STATIC_CREDENTIALS = {
    "api_base_url": "https://api.static.test/v1",
    "client_id": "cid",
    "client_token": "tok",
}


def _static_adapter(status_code, body):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status_code, json=body)

    return StaticTokenPortalAdapter(transport=httpx.MockTransport(handler)), requests


@pytest.fixture
def install_adapter():
    replaced = []

    def _install(adapter):
        replaced.append(register_adapter(adapter))
        return adapter

    yield _install
    for previous in reversed(replaced):
        register_adapter(previous)


@pytest.mark.asyncio
async def test_feed_portal_reports_items_preview_and_log(db_session, make_portal, make_listing):
    portal = await make_portal(slug="portal-a", feed_format="json")
    for i in range(4):
        await make_listing(reference=f"REF-{i}", order_index=i)
    await make_listing(reference="REF-off", active=False)

    report = await run_connectivity_test(db_session, portal.id)

    assert report.ok
    assert report.error is None
    assert report.account_info == {"mode": "feed", "format": "json"}
    assert report.total_items == 4
    assert [p["id"] for p in report.preview] == ["REF-0", "REF-1", "REF-2"]
    assert report.warnings == []

    logs = (await db_session.execute(
        select(SyncLogEntry).where(SyncLogEntry.portal_id == portal.id)
    )).scalars().all()
    assert [(x.kind, x.status, x.total_items) for x in logs] == [("test", "success", 4)]


@pytest.mark.asyncio
async def test_feed_portal_without_token_fails(db_session, make_portal):
    portal = await make_portal(slug="portal-a", feed_token=None)

    report = await run_connectivity_test(db_session, portal.id)

    assert not report.ok
    assert report.error == "Feed token not generated"


@pytest.mark.asyncio
async def test_data_quality_warnings(db_session, make_portal, make_listing):
    portal = await make_portal(slug="portal-oauth", method="api", adapter_type="oauth",
                               config={"credentials": {"access_token": None}})
    await make_listing(zipcode=None, photos=[], price=None, description="")

    report = await run_connectivity_test(db_session, portal.id)

    # no token stored yet, but the data report still runs
    assert not report.ok
    assert "authorize" in report.error
    assert report.total_items == 1
    assert "1 listing(s) without price" in report.warnings
    assert "1 listing(s) without photos" in report.warnings
    assert "1 listing(s) without description" in report.warnings
    assert "1 listing(s) without zipcode (required by this portal)" in report.warnings


@pytest.mark.asyncio
async def test_manual_portal_is_always_reachable(db_session, make_portal):
    portal = await make_portal(slug="portal-manual", method="manual")

    report = await run_connectivity_test(db_session, portal.id)

    assert report.ok
    assert report.account_info == {"mode": "manual"}


@pytest.mark.asyncio
async def test_static_token_portal_reads_account(db_session, make_portal, install_adapter):
    adapter, requests = _static_adapter(200, {"account": "Imobiliaria X"})
    install_adapter(adapter)
    portal = await make_portal(
        slug="portal-static", method="api", adapter_type="static_token",
        config={"credentials": STATIC_CREDENTIALS},
    )

    report = await run_connectivity_test(db_session, portal.id)

    assert report.ok
    assert report.account_info == {"account": "Imobiliaria X"}
    assert [(r.method, r.url.path) for r in requests] == [("GET", "/v1/account")]


@pytest.mark.asyncio
async def test_static_token_portal_rejected(db_session, make_portal, install_adapter):
    adapter, _ = _static_adapter(401, {"error": "bad token"})
    install_adapter(adapter)
    portal = await make_portal(
        slug="portal-static", method="api", adapter_type="static_token",
        config={"credentials": STATIC_CREDENTIALS},
    )

    report = await run_connectivity_test(db_session, portal.id)

    assert not report.ok
    assert report.error == "HTTP 401"

    log = (await db_session.execute(
        select(SyncLogEntry).where(SyncLogEntry.portal_id == portal.id)
    )).scalar_one()
    assert log.status == "error"
    assert log.detail["error"] == "HTTP 401"


@pytest.mark.asyncio
async def test_unknown_portal(db_session):
    with pytest.raises(PortalNotFoundError):
        await run_connectivity_test(db_session, "prt_missing")


@pytest.mark.asyncio
async def test_connectivity_endpoint(client, admin_headers, make_portal, make_listing, db_session):
    portal = await make_portal(slug="portal-a")
    await make_listing()
    await db_session.commit()

    r = await client.post(f"/v1/portals/{portal.id}/test", headers=admin_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["ok"] is True
    assert body["total_items"] == 1
    assert len(body["preview"]) == 1

    r = await client.get(f"/v1/portals/{portal.id}/sync-logs", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert [x["kind"] for x in r.json()] == ["test"]

    r = await client.post("/v1/portals/prt_missing/test", headers=admin_headers)
    assert r.status_code == 404
