from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from app.core.config import settings
from app.core.errors import ValidationError
from app.portals.base import AdapterResult, from_http, success, terminal
from app.schemas.export import ExportRecord
from app.schemas.portal import StaticTokenCredentials
from app.services.http_client import PortalHttpClient


log = logging.getLogger(__name__)

TITLE_MIN = 10
DESCRIPTION_MIN = 50
PHOTOS_MIN = 3


def validate_record(record: ExportRecord) -> list[str]:
    errors: list[str] = []
    addr = record.address
    if not addr.zipcode:
        errors.append("zipcode is required")
    if not addr.city:
        errors.append("city is required")
    if not addr.state:
        errors.append("state is required")
    if len(record.title or "") < TITLE_MIN:
        errors.append(f"title must have at least {TITLE_MIN} characters")
    if len(record.description or "") < DESCRIPTION_MIN:
        errors.append(f"description must have at least {DESCRIPTION_MIN} characters")
    if len(record.photos) < PHOTOS_MIN:
        errors.append(f"at least {PHOTOS_MIN} photos are required")
    # a sentinel string means price on request, which is allowed
    if record.price is None or (not isinstance(record.price, str) and record.price <= 0):
        errors.append("price is required")
    if not record.area or record.area <= 0:
        errors.append("area is required")
    return errors


class StaticTokenPortalAdapter:
    """REST portal authenticated by a long-lived client id + token pair."""

    adapter_type = "static_token"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @asynccontextmanager
    async def _http(self, creds: StaticTokenCredentials) -> AsyncIterator[PortalHttpClient]:
        client = PortalHttpClient(
            timeout_seconds=settings.adapter_timeout_seconds,
            default_headers={
                "Authorization": f"Bearer {creds.client_token}",
                "X-Client-Id": creds.client_id or "",
            },
            transport=self._transport,
        )
        try:
            yield client
        finally:
            await client.aclose()

    @staticmethod
    def _missing_credentials(creds: StaticTokenCredentials) -> AdapterResult | None:
        if not (creds.api_base_url and creds.client_id and creds.client_token):
            return terminal("AUTH_FAILED", "api_base_url, client_id and client_token are required")
        return None

    def build_payload(self, record: ExportRecord, credentials: StaticTokenCredentials) -> dict[str, Any]:
        errors = validate_record(record)
        if errors:
            raise ValidationError("; ".join(errors))

        addr = record.address
        return {
            "external_reference": record.id,
            "title": record.title,
            "description": record.description,
            "listing_type": record.type_key,
            "business_type": "RENTAL" if record.purpose_key == "rent" else "SALE",
            "price": record.price,
            "condo_fee": record.condo_fee,
            "iptu": record.iptu,
            "bedrooms": record.bedrooms,
            "suites": record.suites,
            "bathrooms": record.bathrooms,
            "parking_spaces": record.garages,
            "usable_area": record.area,
            "total_area": record.built_area,
            "features": record.features + record.amenities,
            "address": {
                "street": addr.street if credentials.show_address else None,
                "number": addr.number if credentials.show_address and credentials.show_number else None,
                "neighborhood": addr.neighborhood,
                "city": addr.city,
                "state": addr.state,
                "zipcode": addr.zipcode,
                "lat": addr.lat if credentials.show_address else None,
                "lng": addr.lng if credentials.show_address else None,
            },
            "images": [{"url": p.url, "caption": p.alt} for p in record.photos],
            "url": record.url,
        }

    def _url(self, creds: StaticTokenCredentials, path: str) -> str:
        return f"{(creds.api_base_url or '').rstrip('/')}{path}"

    async def publish(self, *, payload: dict[str, Any], credentials: StaticTokenCredentials) -> AdapterResult:
        if (missing := self._missing_credentials(credentials)) is not None:
            return missing
        async with self._http(credentials) as http:
            res = await http.post_json(url=self._url(credentials, "/listings"), json_body=payload)
        if not res.ok:
            return from_http(res)
        remote_id = res.detail.get("id") or res.detail.get("listing_id")
        return success(external_id=str(remote_id) if remote_id else None, detail={"status_code": res.status_code})

    async def update(self, *, external_id: str, payload: dict[str, Any], credentials: StaticTokenCredentials) -> AdapterResult:
        if (missing := self._missing_credentials(credentials)) is not None:
            return missing
        async with self._http(credentials) as http:
            res = await http.put_json(url=self._url(credentials, f"/listings/{external_id}"), json_body=payload)
        if not res.ok:
            return from_http(res)
        return success(external_id=external_id, detail={"status_code": res.status_code})

    async def pause(self, *, external_id: str, credentials: StaticTokenCredentials) -> AdapterResult:
        if (missing := self._missing_credentials(credentials)) is not None:
            return missing
        async with self._http(credentials) as http:
            res = await http.patch_json(
                url=self._url(credentials, f"/listings/{external_id}"),
                json_body={"status": "PAUSED"},
            )
        if not res.ok:
            return from_http(res)
        return success(external_id=external_id, detail={"status_code": res.status_code})

    async def remove(self, *, external_id: str, credentials: StaticTokenCredentials) -> AdapterResult:
        if (missing := self._missing_credentials(credentials)) is not None:
            return missing
        async with self._http(credentials) as http:
            res = await http.delete(url=self._url(credentials, f"/listings/{external_id}"))
        # already gone counts as removed
        if not res.ok and res.status_code != 404:
            return from_http(res)
        return success(external_id=external_id, detail={"status_code": res.status_code})

    async def test_connection(self, *, credentials: StaticTokenCredentials) -> AdapterResult:
        if (missing := self._missing_credentials(credentials)) is not None:
            return missing
        async with self._http(credentials) as http:
            res = await http.get_json(url=self._url(credentials, "/account"))
        if not res.ok:
            log.info("static_token: connection test failed status=%s", res.status_code)
            return from_http(res)
        return success(detail=res.detail)
