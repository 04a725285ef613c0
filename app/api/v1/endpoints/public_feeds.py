from __future__ import annotations
import logging

from fastapi import APIRouter, HTTPException, Query, Depends, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db
from app.core.errors import AuthError
from app.models.portal import Portal
from app.services.feed_synthesizer import FEED_DENIED, RenderedFeed, authenticate_feed, build_feed
from app.services.rate_limit import FeedRateLimiter


log = logging.getLogger(__name__)

router = APIRouter()

# Create once (reuse Redis pool)
limiter = FeedRateLimiter(settings.redis_url)


def _etag_value(content_hash: str) -> str:
    # Strong ETag
    return f"\"{content_hash}\""


def _if_none_match_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    # Can be: *, "abc", W/"abc", or multiple comma-separated values
    parts = [p.strip() for p in if_none_match.split(",")]
    for p in parts:
        if p == "*":
            return True
        if p.startswith("W/"):
            p = p[2:].strip()
        if p == etag:
            return True
    return False


async def _rate_limit_or_429(*, slug: str, token: str) -> dict[str, str]:
    rl = await limiter.check(slug=slug, token=token, limit=settings.feed_rate_limit_per_minute)
    if not rl.allowed:
        log.info("feed: rate limited portal=%s", slug)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(rl.reset_seconds)},
        )
    return rl.headers()


async def _authenticate_or_401(db: AsyncSession, *, portal: str, token: str) -> Portal:
    try:
        return await authenticate_feed(db, slug=portal, token=token)
    except AuthError:
        # keep the denial in the sync log
        await db.commit()
        raise HTTPException(status_code=401, detail=FEED_DENIED)


async def _build_or_500(db: AsyncSession, portal: Portal) -> RenderedFeed:
    try:
        feed = await build_feed(db, portal)
    except Exception:
        await db.commit()
        raise HTTPException(status_code=500, detail="Feed generation failed")

    await db.commit()
    return feed


async def _serve(db: AsyncSession, *, portal: str, token: str) -> tuple[RenderedFeed, dict[str, str]]:
    # a bad token is a 401 before the limit is touched; nothing is rendered past the limit
    target = await _authenticate_or_401(db, portal=portal, token=token)
    rl_headers = await _rate_limit_or_429(slug=portal, token=token)
    feed = await _build_or_500(db, target)
    headers = _headers(feed)
    headers.update(rl_headers)
    return feed, headers


def _headers(feed: RenderedFeed) -> dict[str, str]:
    return {
        "ETag": _etag_value(feed.content_hash),
        "Cache-Control": f"public, max-age={settings.feed_cache_max_age_seconds}",
        "X-Total-Items": str(feed.total_items),
    }


@router.get("/feed")
async def get_feed(
    request: Request,
    portal: str = Query(..., min_length=1),
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    feed, headers = await _serve(db, portal=portal, token=token)

    if _if_none_match_matches(request.headers.get("if-none-match"), headers["ETag"]):
        return Response(status_code=304, headers=headers)

    return Response(content=feed.body, media_type=feed.content_type, headers=headers)


@router.head("/feed")
async def head_feed(
    request: Request,
    portal: str = Query(..., min_length=1),
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    feed, headers = await _serve(db, portal=portal, token=token)
    headers["Content-Type"] = feed.content_type

    if _if_none_match_matches(request.headers.get("if-none-match"), headers["ETag"]):
        return Response(status_code=304, headers=headers)

    return Response(status_code=200, headers=headers)
