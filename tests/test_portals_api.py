import json

import pytest
from cryptography.fernet import Fernet
from pydantic import SecretStr
from sqlalchemy import select

from factories import build_portal

from app.core.config import settings
from app.core.crypto import _fernet
from app.core.errors import ValidationError
from app.models.portal import Portal
from app.services.portal_registry import read_credentials
from app.services.redaction import REDACTED, merge_secrets, redact_payload


STATIC_CONFIG = {
    "filters": {"sale_only": True},
    "credentials": {
        "api_base_url": "https://api.static.test/v1",
        "client_id": "cid",
        "client_token": "super-secret",
    },
}


async def _create(client, admin_headers, **body):
    r = await client.post("/v1/portals", headers=admin_headers, json=body)
    assert r.status_code == 201, r.text
    return r.json()


@pytest.mark.asyncio
async def test_create_feed_portal_issues_feed_url(client, admin_headers):
    portal = await _create(client, admin_headers, slug="portal-a", name="Portal A", feed_format="csv")

    assert portal["method"] == "feed"
    assert portal["active"] is False
    assert portal["feed_url"].startswith("http://feeds.test/v1/feed?portal=portal-a&token=")
    assert "feed_token" not in portal


@pytest.mark.asyncio
async def test_create_api_portal_redacts_secrets(client, admin_headers):
    portal = await _create(
        client, admin_headers,
        slug="portal-static", name="Static", method="api", adapter_type="static_token", config=STATIC_CONFIG,
    )

    creds = portal["config"]["credentials"]
    assert creds["client_token"] == REDACTED
    assert creds["client_id"] == "cid"
    assert portal["config"]["filters"]["sale_only"] is True
    assert portal["feed_url"] is None


@pytest.mark.asyncio
async def test_create_rejects_duplicate_slug_and_bad_input(client, admin_headers):
    await _create(client, admin_headers, slug="portal-a", name="Portal A")

    r = await client.post("/v1/portals", headers=admin_headers, json={"slug": "portal-a", "name": "Again"})
    assert r.status_code == 422
    assert "already exists" in r.json()["detail"]

    r = await client.post("/v1/portals", headers=admin_headers, json={"slug": "Portal A", "name": "Bad slug"})
    assert r.status_code == 422

    r = await client.post(
        "/v1/portals",
        headers=admin_headers,
        json={
            "slug": "portal-b",
            "name": "Bad creds",
            "adapter_type": "static_token",
            "config": {"credentials": {"show_address": "maybe"}},
        },
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_list_and_get(client, admin_headers):
    await _create(client, admin_headers, slug="zeta", name="Zeta")
    created = await _create(client, admin_headers, slug="alpha", name="Alpha")

    r = await client.get("/v1/portals", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert [p["slug"] for p in r.json()] == ["alpha", "zeta"]

    r = await client.get(f"/v1/portals/{created['id']}", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["name"] == "Alpha"

    r = await client.get("/v1/portals/prt_missing", headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_patch_keeps_secrets_echoed_back_redacted(client, admin_headers, db_session):
    created = await _create(
        client, admin_headers,
        slug="portal-static", name="Static", method="api", adapter_type="static_token", config=STATIC_CONFIG,
    )

    echoed = created["config"]
    echoed["credentials"]["client_id"] = "cid-2"
    r = await client.patch(
        f"/v1/portals/{created['id']}",
        headers=admin_headers,
        json={"active": True, "config": echoed},
    )
    assert r.status_code == 200, r.text
    assert r.json()["active"] is True

    portal = (await db_session.execute(select(Portal).where(Portal.id == created["id"]))).scalar_one()
    creds = read_credentials(portal)
    assert creds["client_token"] == "super-secret"
    assert creds["client_id"] == "cid-2"
    # nothing readable at rest
    assert "credentials" not in portal.config
    assert "super-secret" not in json.dumps(portal.config)
    assert portal.updated_by == "internal"


@pytest.mark.asyncio
async def test_patch_to_feed_generates_token(client, admin_headers):
    created = await _create(client, admin_headers, slug="portal-m", name="Manual", method="manual")
    assert created["feed_url"] is None

    r = await client.patch(f"/v1/portals/{created['id']}", headers=admin_headers, json={"method": "feed"})
    assert r.status_code == 200, r.text
    assert r.json()["feed_url"] is not None


@pytest.mark.asyncio
async def test_feed_url_endpoint(client, admin_headers):
    feed = await _create(client, admin_headers, slug="portal-a", name="Feed")
    api = await _create(client, admin_headers, slug="portal-b", name="Api", method="api")

    r = await client.get(f"/v1/portals/{feed['id']}/feed-url", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["feed_url"] == feed["feed_url"]

    r = await client.get(f"/v1/portals/{api['id']}/feed-url", headers=admin_headers)
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_oauth_authorize_endpoint(client, admin_headers):
    created = await _create(
        client, admin_headers,
        slug="portal-oauth", name="OAuth", method="api", adapter_type="oauth",
        config={"credentials": {"client_id": "cid", "client_secret": "s3cret"}},
    )
    assert created["config"]["credentials"]["client_secret"] == REDACTED

    r = await client.post(
        f"/v1/portals/{created['id']}/oauth/authorize",
        headers=admin_headers,
        json={"redirect_uri": "https://hub.test/cb"},
    )
    assert r.status_code == 200, r.text
    url = r.json()["authorize_url"]
    assert "client_id=cid" in url
    assert "state=" in url

    r = await client.post(
        f"/v1/portals/{created['id']}/oauth/callback",
        headers=admin_headers,
        json={"code": "abc", "state": "bm90LXRoaXMtcG9ydGFs"},
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_admin_endpoints_require_key(client):
    r = await client.get("/v1/portals")
    assert r.status_code == 403

    r = await client.post("/v1/portals", headers={"X-Internal-Admin-Key": "nope"}, json={"slug": "x", "name": "x"})
    assert r.status_code == 403


def test_redaction_keeps_empty_secrets_visible():
    out = redact_payload({"credentials": {"client_token": "abc", "refresh_token": None}, "items": [{"password": "x"}]})
    assert out == {"credentials": {"client_token": REDACTED, "refresh_token": None}, "items": [{"password": REDACTED}]}


def test_merge_secrets_ignores_redacted_echo():
    stored = {"client_id": "c1", "client_token": "real"}
    assert merge_secrets(stored, {"client_token": REDACTED, "client_id": "c2"}) == {"client_id": "c2", "client_token": "real"}
    assert merge_secrets(stored, {"client_token": None})["client_token"] == "real"


def test_credentials_sealed_under_another_key_are_refused(monkeypatch):
    portal = build_portal(config={"credentials": {"client_token": "abc"}})
    assert read_credentials(portal) == {"client_token": "abc"}
    assert "abc" not in json.dumps(portal.config)

    monkeypatch.setattr(settings, "credentials_encryption_key", SecretStr(Fernet.generate_key().decode()))
    _fernet.cache_clear()
    try:
        with pytest.raises(ValidationError):
            read_credentials(portal)
    finally:
        monkeypatch.undo()
        _fernet.cache_clear()
