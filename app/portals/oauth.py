from __future__ import annotations

import base64
import json
import logging
import re
import time
import unicodedata
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urlencode

import httpx

from app.core.config import settings
from app.core.errors import ValidationError
from app.portals.base import AdapterResult, from_http, success, terminal
from app.schemas.export import ExportRecord
from app.schemas.portal import OAuthCredentials
from app.services.http_client import HttpResult, PortalHttpClient


log = logging.getLogger(__name__)

AD_ID_MAX = 19
SUBJECT_MAX = 90
BODY_MAX = 6000
SPEC_MAX = 5
PHOTO_MAX = 20

CATEGORY_APARTMENT = 1020
CATEGORY_HOUSE = 1040
CATEGORY_LAND = 1100
CATEGORY_COMMERCIAL = 1120

CATEGORIES = {
    "apartamento": CATEGORY_APARTMENT,
    "cobertura": CATEGORY_APARTMENT,
    "flat": CATEGORY_APARTMENT,
    "loft": CATEGORY_APARTMENT,
    "casa": CATEGORY_HOUSE,
    "terreno": CATEGORY_LAND,
    "rural": CATEGORY_LAND,
    "comercial": CATEGORY_COMMERCIAL,
    "galpao": CATEGORY_COMMERCIAL,
}

APARTMENT_SUBTYPES = {"cobertura": "2", "flat": "4", "loft": "5"}
COMMERCIAL_SUBTYPES = {"galpao": "2", "comercial": "6"}

FEATURE_CODES = {
    "ar condicionado": "1",
    "ar-condicionado": "1",
    "academia": "2",
    "armarios": "3",
    "varanda": "4",
    "area de servico": "5",
    "churrasqueira": "6",
    "quarto de servico": "7",
    "piscina": "8",
    "armarios cozinha": "11",
    "mobiliado": "12",
}

COMPLEX_FEATURE_CODES = {
    "condominio fechado": "1",
    "elevador": "2",
    "seguranca 24h": "3",
    "portaria": "4",
    "pet friendly": "5",
    "animais": "5",
    "academia": "6",
    "piscina": "7",
    "salao de festas": "8",
}


def ad_id(listing_id: str) -> str:
    return listing_id[:AD_ID_MAX]


def _fold(text: str) -> str:
    normalized = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")


def map_codes(values: list[str], table: dict[str, str]) -> list[str]:
    out: list[str] = []
    for value in values:
        key = _fold(value)
        for pattern, code in table.items():
            if pattern in key:
                if code not in out:
                    out.append(code)
                break
    return out


def category_for(type_key: str) -> int:
    return CATEGORIES.get(type_key, CATEGORY_HOUSE)


def subtype_for(type_key: str, category: int) -> str:
    if category == CATEGORY_APARTMENT:
        return APARTMENT_SUBTYPES.get(type_key, "1")
    if category == CATEGORY_COMMERCIAL:
        return COMMERCIAL_SUBTYPES.get(type_key, "7")
    return "1"


def _capped(value: int) -> str:
    return str(min(value, SPEC_MAX))


def _digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def _state_param(portal_id: str) -> str:
    raw = json.dumps({"portal_id": portal_id, "ts": int(time.time() * 1000)})
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def portal_id_from_state(state: str) -> str:
    try:
        data = json.loads(base64.urlsafe_b64decode(state.encode("ascii")).decode("utf-8"))
        return str(data["portal_id"])
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError("Invalid OAuth state parameter") from e


class OAuthPortalAdapter:
    """
    Classified-ads portal with an OAuth2 authorization-code flow and a single
    bulk import endpoint. The access token travels in the JSON body.

    On an auth failure the adapter refreshes the access token once with the
    stored refresh token and replays the call; the new bundle is returned in
    AdapterResult.refreshed_credentials.
    """

    adapter_type = "oauth"

    def __init__(
        self,
        *,
        api_base: str | None = None,
        auth_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_base = (api_base or settings.oauth_api_base).rstrip("/")
        self.auth_base = (auth_base or settings.oauth_auth_base).rstrip("/")
        self._transport = transport

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[PortalHttpClient]:
        client = PortalHttpClient(timeout_seconds=settings.adapter_timeout_seconds, transport=self._transport)
        try:
            yield client
        finally:
            await client.aclose()

    # payload

    def build_payload(self, record: ExportRecord, credentials: OAuthCredentials) -> dict[str, Any]:
        problems: list[str] = []
        zipcode = _digits(record.address.zipcode)
        if not zipcode:
            problems.append("zipcode is required")
        if not record.photos:
            problems.append("at least 1 photo is required")
        if problems:
            raise ValidationError("; ".join(problems))

        category = category_for(record.type_key)
        params: dict[str, Any] = {"rooms": _capped(record.bedrooms)}
        if record.bathrooms > 0:
            params["bathrooms"] = _capped(record.bathrooms)
        if record.garages >= 0:
            params["garage_spaces"] = _capped(record.garages)
        if record.area and record.area > 0:
            params["size"] = str(record.area)
        if record.iptu:
            params["iptu"] = str(record.iptu)
        if isinstance(record.condo_fee, (int, float)) and record.condo_fee > 0:
            params["condominio"] = str(record.condo_fee)

        if category == CATEGORY_APARTMENT:
            params["apartment_type"] = subtype_for(record.type_key, category)
            features = map_codes(record.features, FEATURE_CODES)
            if features:
                params["apartment_features"] = features
            complex_features = map_codes(record.amenities, COMPLEX_FEATURE_CODES)
            if complex_features:
                params["apartment_complex_features"] = complex_features
        elif category == CATEGORY_HOUSE:
            params["home_type"] = subtype_for(record.type_key, category)
            features = map_codes(record.features, FEATURE_CODES)
            if features:
                params["home_features"] = features
        elif category == CATEGORY_COMMERCIAL:
            params["commercial_type"] = subtype_for(record.type_key, category)
            features = map_codes(record.amenities, FEATURE_CODES)
            if features:
                params["commercial_features"] = features

        # sentinel prices are sent as 0; the portal shows "price on request"
        price = int(record.price) if isinstance(record.price, (int, float)) else 0
        phone = _digits(credentials.phone)

        return {
            "id": ad_id(record.listing_id),
            "operation": "insert",
            "category": category,
            "subject": record.title[:SUBJECT_MAX],
            "body": (record.description or record.title)[:BODY_MAX],
            "phone": int(phone) if phone else None,
            "type": "u" if record.purpose_key == "rent" else "s",
            "price": price,
            "zipcode": zipcode,
            "params": params,
            "images": [p.url for p in record.photos[:PHOTO_MAX]],
        }

    # token handling

    async def _refresh(self, http: PortalHttpClient, creds: OAuthCredentials) -> dict[str, Any] | None:
        if not (creds.refresh_token and creds.client_id and creds.client_secret):
            return None
        res = await http.post_form(
            url=f"{self.auth_base}/token",
            form_body={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
            },
        )
        if not res.ok or not res.detail.get("access_token"):
            log.warning("oauth: token refresh failed status=%s", res.status_code)
            return None
        return _token_bundle(res.detail, fallback_refresh=creds.refresh_token)

    async def _call_with_refresh(
        self,
        creds: OAuthCredentials,
        call: Callable[[PortalHttpClient, str], Awaitable[HttpResult]],
    ) -> tuple[HttpResult, dict[str, Any] | None]:
        """
        Runs call(http, access_token). On 401/403 refreshes once and replays.
        Returns the final HttpResult and the refreshed bundle, if any.
        A failed refresh returns a bundle with the tokens cleared.
        """
        async with self._http() as http:
            res = await call(http, creds.access_token or "")
            if not res.auth_failed:
                return res, None

            bundle = await self._refresh(http, creds)
            if bundle is None:
                cleared = {"access_token": None, "refresh_token": None, "token_expires_at": None}
                return res, cleared if creds.refresh_token else None

            creds.record_refresh(bundle)
            log.info("oauth: access token refreshed, replaying call")
            return await call(http, bundle["access_token"]), bundle

    async def _import(self, creds: OAuthCredentials, ad: dict[str, Any]) -> AdapterResult:
        if not creds.access_token and not creds.refresh_token:
            return terminal("AUTH_FAILED", "Missing access_token; authorize the portal first")

        async def call(http: PortalHttpClient, token: str) -> HttpResult:
            return await http.put_json(
                url=f"{self.api_base}/autoupload/import",
                json_body={"access_token": token, "ad_list": [ad]},
            )

        res, bundle = await self._call_with_refresh(creds, call)
        if not res.ok:
            if res.auth_failed:
                return terminal(
                    "AUTH_FAILED",
                    "Access token invalid or expired; re-authorize the portal",
                    detail={"status_code": res.status_code},
                    refreshed_credentials=bundle,
                )
            return from_http(res, refreshed_credentials=bundle)

        status_code = res.detail.get("statusCode")
        if status_code == 0:
            return success(
                external_id=ad["id"],
                detail={"import_token": res.detail.get("token"), "message": res.detail.get("statusMessage")},
                refreshed_credentials=bundle,
            )

        errors = res.detail.get("errors") or []
        messages = [
            m.get("category")
            for err in errors if isinstance(err, dict)
            for m in (err.get("messages") or []) if isinstance(m, dict)
        ]
        text = ", ".join(str(m) for m in messages if m) or str(res.detail.get("statusMessage") or "import rejected")
        # per-ad errors mean the ad itself is wrong; anything else is the portal's side
        return AdapterResult(
            ok=False,
            retryable=not errors,
            error_code="PORTAL_REJECTED" if errors else "PORTAL_ERROR",
            error_message=f"Import error {status_code}: {text}",
            detail={"statusCode": status_code, "errors": errors},
            refreshed_credentials=bundle,
        )

    # actions

    async def publish(self, *, payload: dict[str, Any], credentials: OAuthCredentials) -> AdapterResult:
        return await self._import(credentials, payload)

    async def update(self, *, external_id: str, payload: dict[str, Any], credentials: OAuthCredentials) -> AdapterResult:
        # insert on an existing id replaces the ad
        return await self._import(credentials, {**payload, "id": ad_id(external_id)})

    async def pause(self, *, external_id: str, credentials: OAuthCredentials) -> AdapterResult:
        return terminal("UNSUPPORTED", "Pausing ads is not supported by this portal; use remove")

    async def remove(self, *, external_id: str, credentials: OAuthCredentials) -> AdapterResult:
        return await self._import(credentials, {"id": ad_id(external_id), "operation": "delete"})

    async def test_connection(self, *, credentials: OAuthCredentials) -> AdapterResult:
        if not credentials.access_token and not credentials.refresh_token:
            return terminal("AUTH_FAILED", "Missing access_token; authorize the portal first")

        async def call(http: PortalHttpClient, token: str) -> HttpResult:
            return await http.post_json(
                url=f"{self.api_base}/autoupload/published_ads",
                json_body={"access_token": token, "fetch_size": 1},
            )

        res, bundle = await self._call_with_refresh(credentials, call)
        if not res.ok:
            if res.auth_failed:
                return terminal(
                    "AUTH_FAILED",
                    "Access token invalid or expired; re-authorize the portal",
                    detail={"status_code": res.status_code},
                    refreshed_credentials=bundle,
                )
            return from_http(res, refreshed_credentials=bundle)

        ads = res.detail.get("ads") or []
        return success(detail={"ads_count": len(ads)}, refreshed_credentials=bundle)

    # onboarding

    def authorize_url(self, *, portal_id: str, credentials: OAuthCredentials, redirect_uri: str | None = None) -> str:
        if not credentials.client_id:
            raise ValidationError("client_id is required to authorize")
        query = urlencode({
            "client_id": credentials.client_id,
            "redirect_uri": redirect_uri or settings.oauth_redirect_uri,
            "response_type": "code",
            "scope": "autoupload basic_user_info",
            "state": _state_param(portal_id),
        })
        return f"{self.auth_base}/authorize?{query}"

    async def exchange_code(
        self, *, code: str, credentials: OAuthCredentials, redirect_uri: str | None = None
    ) -> AdapterResult:
        if not (credentials.client_id and credentials.client_secret):
            return terminal("VALIDATION_ERROR", "client_id and client_secret are required")

        async with self._http() as http:
            res = await http.post_form(
                url=f"{self.auth_base}/token",
                form_body={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": credentials.client_id,
                    "client_secret": credentials.client_secret,
                    "redirect_uri": redirect_uri or settings.oauth_redirect_uri,
                },
            )
        if not res.ok or not res.detail.get("access_token"):
            return terminal(
                "TOKEN_EXCHANGE_FAILED",
                f"Token exchange failed: HTTP {res.status_code}",
                detail={"status_code": res.status_code},
            )
        bundle = _token_bundle(res.detail, fallback_refresh=None)
        return success(detail={"expires_in": res.detail.get("expires_in")}, refreshed_credentials=bundle)


def _token_bundle(body: dict[str, Any], *, fallback_refresh: str | None) -> dict[str, Any]:
    expires_in = body.get("expires_in")
    expires_at = int(time.time() * 1000) + int(expires_in) * 1000 if expires_in else None
    return {
        "access_token": body["access_token"],
        # some servers keep the old refresh token
        "refresh_token": body.get("refresh_token") or fallback_refresh,
        "token_expires_at": expires_at,
    }
