from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db
from app.core.errors import AuthError, PortalNotFoundError, ValidationError
from app.models.portal import Portal
from app.schemas.portal import (
    ConnectivityOut,
    FeedUrlOut,
    OAuthAuthorizeRequest,
    OAuthCallbackRequest,
    PortalCreate,
    PortalOut,
    PortalPatch,
)
from app.schemas.publication import PublicationOut
from app.schemas.sync_log import SyncLogOut
from app.services.connectivity import run_connectivity_test
from app.services.feed_urls import build_feed_url
from app.services.internal_admin import require_internal_admin
from app.services.job_queue import list_publications
from app.services.oauth_onboarding import complete_authorization, start_authorization
from app.services.portal_registry import (
    create_portal,
    ensure_feed_token,
    get_portal,
    list_portals,
    plain_config,
    rotate_token,
    update_portal,
)
from app.services.redaction import redact_portal_config
from app.services.sync_log import list_sync_logs


router = APIRouter()


def _feed_url(portal: Portal) -> str | None:
    if portal.method != "feed" or not portal.feed_token:
        return None
    return build_feed_url(public_base_url=settings.public_base_url, slug=portal.slug, token=portal.feed_token)


def _out(portal: Portal) -> PortalOut:
    return PortalOut(
        id=portal.id,
        slug=portal.slug,
        name=portal.name,
        active=portal.active,
        method=portal.method,
        feed_format=portal.feed_format,
        adapter_type=portal.adapter_type,
        config=redact_portal_config(plain_config(portal)),
        feed_url=_feed_url(portal),
    )


async def _portal_or_404(db: AsyncSession, portal_id: str) -> Portal:
    try:
        return await get_portal(db, portal_id)
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")


@router.get("/portals", response_model=list[PortalOut])
async def list_portals_endpoint(
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    return [_out(p) for p in await list_portals(db)]


@router.post("/portals", response_model=PortalOut, status_code=201)
async def create_portal_endpoint(
    body: PortalCreate,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        portal = await create_portal(db, body, actor=actor)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return _out(portal)


@router.get("/portals/{portal_id}", response_model=PortalOut)
async def get_portal_endpoint(
    portal_id: str,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    return _out(await _portal_or_404(db, portal_id))


@router.patch("/portals/{portal_id}", response_model=PortalOut)
async def patch_portal_endpoint(
    portal_id: str,
    body: PortalPatch,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        portal = await update_portal(db, portal_id, body, actor=actor)
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")
    except ValidationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return _out(portal)


@router.post("/portals/{portal_id}/feed-token:rotate", response_model=FeedUrlOut)
async def rotate_feed_token_endpoint(
    portal_id: str,
    actor: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        token = await rotate_token(db, portal_id, actor=actor)
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")
    await db.commit()

    portal = await get_portal(db, portal_id)
    return FeedUrlOut(
        portal_id=portal.id,
        feed_url=build_feed_url(public_base_url=settings.public_base_url, slug=portal.slug, token=token),
    )


@router.get("/portals/{portal_id}/feed-url", response_model=FeedUrlOut)
async def get_feed_url_endpoint(
    portal_id: str,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    portal = await _portal_or_404(db, portal_id)
    if portal.method != "feed":
        raise HTTPException(status_code=409, detail="Portal is not feed-based")

    token = await ensure_feed_token(db, portal)
    await db.commit()
    return FeedUrlOut(
        portal_id=portal.id,
        feed_url=build_feed_url(public_base_url=settings.public_base_url, slug=portal.slug, token=token),
    )


@router.post("/portals/{portal_id}/test", response_model=ConnectivityOut)
async def test_portal_endpoint(
    portal_id: str,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        report = await run_connectivity_test(db, portal_id)
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")
    await db.commit()
    return ConnectivityOut(
        ok=report.ok,
        error=report.error,
        account_info=report.account_info,
        total_items=report.total_items,
        warnings=report.warnings,
        preview=report.preview,
    )


@router.get("/portals/{portal_id}/publications", response_model=list[PublicationOut])
async def list_publications_endpoint(
    portal_id: str,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    await _portal_or_404(db, portal_id)
    rows = await list_publications(db, portal_id=portal_id, status=status, limit=limit)
    return [
        PublicationOut(
            portal_id=r.portal_id,
            listing_id=r.listing_id,
            status=r.status,
            external_id=r.external_id,
            last_error=r.last_error,
            last_attempt_at=r.last_attempt_at.isoformat() if r.last_attempt_at else None,
        )
        for r in rows
    ]


@router.get("/portals/{portal_id}/sync-logs", response_model=list[SyncLogOut])
async def list_sync_logs_endpoint(
    portal_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    await _portal_or_404(db, portal_id)
    rows = await list_sync_logs(db, portal_id=portal_id, limit=limit)
    return [
        SyncLogOut(
            id=r.id,
            portal_id=r.portal_id,
            kind=r.kind,
            status=r.status,
            total_items=r.total_items,
            duration_ms=r.duration_ms,
            detail=r.detail or {},
            feed_url=r.feed_url,
            created_at=r.created_at.isoformat() if r.created_at else "",
        )
        for r in rows
    ]


@router.post("/portals/{portal_id}/oauth/authorize")
async def oauth_authorize_endpoint(
    portal_id: str,
    body: OAuthAuthorizeRequest,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        url = await start_authorization(db, portal_id, redirect_uri=body.redirect_uri)
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"portal_id": portal_id, "authorize_url": url}


@router.post("/portals/{portal_id}/oauth/callback")
async def oauth_callback_endpoint(
    portal_id: str,
    body: OAuthCallbackRequest,
    _: str = Depends(require_internal_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        expires_in = await complete_authorization(
            db, portal_id, code=body.code, state=body.state, redirect_uri=body.redirect_uri
        )
    except PortalNotFoundError:
        raise HTTPException(status_code=404, detail="Portal not found")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.commit()
    return {"portal_id": portal_id, "authorized": True, "expires_in": expires_in}
