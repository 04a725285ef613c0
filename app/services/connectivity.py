from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.listing import Listing
from app.models.portal import Portal
from app.portals.registry import get_adapter
from app.services.catalog import ListingCatalog, SqlListingCatalog
from app.services.listing_filter import eligible, portal_config, to_export_record
from app.services.portal_registry import get_portal, portal_credentials, store_credentials
from app.services.sync_log import elapsed_ms, record_sync_log


log = logging.getLogger(__name__)

PREVIEW_SIZE = 3


@dataclass
class ConnectivityReport:
    ok: bool
    error: str | None = None
    account_info: dict[str, Any] | None = None
    total_items: int = 0
    warnings: list[str] = field(default_factory=list)
    preview: list[dict[str, Any]] = field(default_factory=list)


def data_quality_warnings(listings: list[Listing], portal: Portal) -> list[str]:
    cfg = portal_config(portal)
    counts = {
        "price": sum(1 for x in listings if not x.price and not cfg.price_on_request),
        "photos": sum(1 for x in listings if not x.photos),
        "description": sum(1 for x in listings if not (x.description or "").strip()),
        "address": sum(1 for x in listings if not (x.city and x.state)),
        "zipcode": sum(1 for x in listings if not (x.zipcode or "").strip()),
    }
    warnings = []
    if counts["price"]:
        warnings.append(f"{counts['price']} listing(s) without price")
    if counts["photos"]:
        warnings.append(f"{counts['photos']} listing(s) without photos")
    if counts["description"]:
        warnings.append(f"{counts['description']} listing(s) without description")
    if counts["address"]:
        warnings.append(f"{counts['address']} listing(s) without city/state")
    if counts["zipcode"]:
        if portal.adapter_type == "oauth" and portal.method == "api":
            warnings.append(f"{counts['zipcode']} listing(s) without zipcode (required by this portal)")
        else:
            warnings.append(f"{counts['zipcode']} listing(s) without zipcode")
    return warnings


async def _check_setup(portal: Portal) -> tuple[bool, str | None, dict[str, Any] | None, dict[str, Any] | None]:
    """Returns (ok, error, account_info, refreshed_credentials)."""
    if portal.method == "feed":
        if not portal.feed_token:
            return False, "Feed token not generated", None, None
        return True, None, {"mode": "feed", "format": portal.feed_format}, None

    if portal.method == "manual":
        return True, None, {"mode": "manual"}, None

    try:
        adapter = get_adapter(portal.adapter_type)
        credentials = portal_credentials(portal)
    except KeyError as e:
        return False, str(e), None, None
    except ValueError as e:
        return False, f"Invalid credentials: {e}", None, None
    except ValidationError as e:
        return False, str(e), None, None

    try:
        res = await asyncio.wait_for(
            adapter.test_connection(credentials=credentials), timeout=settings.adapter_timeout_seconds
        )
    except asyncio.TimeoutError:
        timed_out = f"Connection test timed out after {settings.adapter_timeout_seconds:g}s"
        return False, timed_out, None, getattr(credentials, "refreshed", None)

    if not res.ok:
        return False, res.error_message or res.error_code, res.detail, res.refreshed_credentials
    return True, None, res.detail or {}, res.refreshed_credentials


async def run_connectivity_test(
    db: AsyncSession,
    portal_id: str,
    *,
    catalog: ListingCatalog | None = None,
) -> ConnectivityReport:
    """
    Validate a portal's setup without touching any remote listing.
    Writes one sync log row; the caller commits.
    """
    started = time.monotonic()
    portal = await get_portal(db, portal_id)
    catalog = catalog or SqlListingCatalog(db)

    ok, error, account_info, refreshed = await _check_setup(portal)
    if refreshed:
        await store_credentials(db, portal, refreshed)

    listings = [x for x in await catalog.list_all() if eligible(x, portal)]
    report = ConnectivityReport(
        ok=ok,
        error=error,
        account_info=account_info,
        total_items=len(listings),
        warnings=data_quality_warnings(listings, portal),
        preview=[to_export_record(x, portal).model_dump() for x in listings[:PREVIEW_SIZE]],
    )

    await record_sync_log(
        db,
        portal_id=portal.id,
        kind="test",
        status="success" if ok else "error",
        total_items=report.total_items,
        duration_ms=elapsed_ms(started),
        detail={"error": error, "warnings": report.warnings, "method": portal.method},
    )
    log.info("connectivity: portal=%s ok=%s items=%d", portal.slug, ok, report.total_items)
    return report
