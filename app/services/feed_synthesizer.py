from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthError
from app.core.security import tokens_match
from app.core.telemetry import get_tracer
from app.models.listing import Listing
from app.models.portal import Portal
from app.services.catalog import ListingCatalog, SqlListingCatalog
from app.services.feed_urls import build_feed_url
from app.services.feeds.csv_feed import build_csv_feed
from app.services.feeds.json_feed import build_json_feed
from app.services.feeds.xml_feed import build_xml_feed
from app.services.listing_filter import eligible, to_export_record
from app.services.portal_registry import find_portal_by_slug
from app.services.sync_log import elapsed_ms, record_sync_log


log = logging.getLogger(__name__)

# One message for every denial so callers cannot enumerate slugs or tokens.
FEED_DENIED = "Invalid portal or token"


@dataclass(frozen=True)
class FeedFormatSpec:
    content_type: str
    build: Callable[..., tuple[bytes, int]]
    # builder takes a generated_at stamp
    stamped: bool = True


FEED_FORMATS: dict[str, FeedFormatSpec] = {
    "xml": FeedFormatSpec("application/xml; charset=utf-8", build_xml_feed),
    "json": FeedFormatSpec("application/json; charset=utf-8", build_json_feed),
    "csv": FeedFormatSpec("text/csv; charset=utf-8", build_csv_feed, stamped=False),
}


@dataclass(frozen=True)
class RenderedFeed:
    body: bytes
    content_type: str
    content_hash: str
    total_items: int


async def render_feed(
    db: AsyncSession,
    *,
    slug: str,
    token: str,
    catalog: ListingCatalog | None = None,
) -> RenderedFeed:
    """
    Build the feed for a pull-style portal.

    Read-only apart from the sync log row written on every call; the caller commits.
    Raises AuthError (opaque) for unknown slug, inactive portal, non-feed portal or bad token.
    """
    portal = await authenticate_feed(db, slug=slug, token=token)
    return await build_feed(db, portal, catalog=catalog)


async def authenticate_feed(db: AsyncSession, *, slug: str, token: str) -> Portal:
    """Resolve the portal behind a feed request. Denials are logged; the caller commits."""
    started = time.monotonic()
    portal = await find_portal_by_slug(db, slug)

    if portal is None:
        log.warning("feed: denied unknown slug=%r", slug)
        raise AuthError(FEED_DENIED)

    if not portal.active or portal.method != "feed" or not tokens_match(portal.feed_token, token):
        await record_sync_log(
            db,
            portal_id=portal.id,
            kind="feed",
            status="error",
            duration_ms=elapsed_ms(started),
            detail={"error": "auth_denied"},
        )
        log.warning("feed: denied portal=%s", portal.slug)
        raise AuthError(FEED_DENIED)

    return portal


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def content_timestamp(portal: Portal, listings: list[Listing]) -> datetime | None:
    # the feed stamp follows the data, so unchanged content hashes the same
    stamps = [_as_utc(x.updated_at) for x in listings if x.updated_at is not None]
    if portal.updated_at is not None:
        stamps.append(_as_utc(portal.updated_at))
    return max(stamps, default=None)


async def build_feed(db: AsyncSession, portal: Portal, *, catalog: ListingCatalog | None = None) -> RenderedFeed:
    with get_tracer().start_as_current_span("feeds.render") as span:
        span.set_attribute("portal.slug", portal.slug)
        feed = await _render(db, portal, catalog=catalog)
        span.set_attribute("feed.total_items", feed.total_items)
        return feed


async def _render(db: AsyncSession, portal: Portal, *, catalog: ListingCatalog | None) -> RenderedFeed:
    started = time.monotonic()
    fmt = FEED_FORMATS.get(portal.feed_format, FEED_FORMATS["xml"])
    feed_url = build_feed_url(public_base_url=settings.public_base_url, slug=portal.slug, token=portal.feed_token)
    catalog = catalog or SqlListingCatalog(db)

    try:
        listings = await catalog.list_all()
        included = [listing for listing in listings if eligible(listing, portal)]
        records = [to_export_record(listing, portal) for listing in included]
        if fmt.stamped:
            body, count = fmt.build(records, generated_at=content_timestamp(portal, included))
        else:
            body, count = fmt.build(records)
    except Exception as e:
        await record_sync_log(
            db,
            portal_id=portal.id,
            kind="feed",
            status="error",
            duration_ms=elapsed_ms(started),
            detail={"error": f"{type(e).__name__}: {e}", "format": portal.feed_format},
            feed_url=feed_url,
        )
        log.exception("feed: build failed portal=%s", portal.slug)
        raise

    await record_sync_log(
        db,
        portal_id=portal.id,
        kind="feed",
        status="success",
        total_items=count,
        duration_ms=elapsed_ms(started),
        detail={"format": portal.feed_format, "candidates": len(listings), "excluded": len(listings) - count},
        feed_url=feed_url,
    )
    log.info("feed: generated portal=%s items=%d", portal.slug, count)

    return RenderedFeed(
        body=body,
        content_type=fmt.content_type,
        content_hash=hashlib.sha256(body).hexdigest(),
        total_items=count,
    )
