from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthError, ValidationError
from app.models.portal import Portal
from app.portals.oauth import OAuthPortalAdapter, portal_id_from_state
from app.portals.registry import get_adapter
from app.schemas.portal import OAuthCredentials
from app.services.portal_registry import get_portal, portal_credentials, store_credentials


log = logging.getLogger(__name__)


def _oauth_adapter(portal: Portal) -> tuple[OAuthPortalAdapter, OAuthCredentials]:
    if portal.adapter_type != "oauth":
        raise ValidationError(f"Portal {portal.slug} does not use OAuth (adapter_type={portal.adapter_type})")
    adapter = get_adapter("oauth")
    if not isinstance(adapter, OAuthPortalAdapter):
        raise ValidationError("Registered oauth adapter does not support authorization")
    creds = portal_credentials(portal)
    return adapter, creds


async def start_authorization(db: AsyncSession, portal_id: str, *, redirect_uri: str | None = None) -> str:
    portal = await get_portal(db, portal_id)
    adapter, creds = _oauth_adapter(portal)
    return adapter.authorize_url(portal_id=portal.id, credentials=creds, redirect_uri=redirect_uri)


async def complete_authorization(
    db: AsyncSession,
    portal_id: str,
    *,
    code: str,
    state: str,
    redirect_uri: str | None = None,
) -> int | None:
    """
    Swap the authorization code for tokens and store them on the portal.
    Returns the token lifetime in seconds when the server reports one. Caller commits.
    """
    if portal_id_from_state(state) != portal_id:
        raise ValidationError("OAuth state does not belong to this portal")

    portal = await get_portal(db, portal_id)
    adapter, creds = _oauth_adapter(portal)

    res = await adapter.exchange_code(code=code, credentials=creds, redirect_uri=redirect_uri)
    if not res.ok or not res.refreshed_credentials:
        log.warning("oauth: code exchange failed portal=%s code=%s", portal.slug, res.error_code)
        raise AuthError(res.error_message or "Token exchange failed")

    await store_credentials(db, portal, res.refreshed_credentials)
    log.info("oauth: portal=%s authorized", portal.slug)
    return (res.detail or {}).get("expires_in")
