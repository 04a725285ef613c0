from __future__ import annotations

import logging
from typing import Any

from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.crypto import decrypt_json, encrypt_json
from app.core.errors import PortalNotFoundError, ValidationError
from app.core.security import generate_feed_token
from app.models.portal import Portal
from app.schemas.portal import PortalCreate, PortalCredentials, PortalPatch, parse_credentials
from app.services.redaction import merge_secrets


log = logging.getLogger(__name__)


async def get_portal(db: AsyncSession, portal_id: str) -> Portal:
    portal = (await db.execute(select(Portal).where(Portal.id == portal_id))).scalar_one_or_none()
    if not portal:
        raise PortalNotFoundError(f"Portal not found: {portal_id}")
    return portal


async def find_portal_by_slug(db: AsyncSession, slug: str) -> Portal | None:
    key = (slug or "").lower().strip()
    return (await db.execute(select(Portal).where(Portal.slug == key))).scalar_one_or_none()


async def list_portals(db: AsyncSession) -> list[Portal]:
    return list((await db.execute(select(Portal).order_by(Portal.slug.asc()))).scalars().all())


# the credentials sub-document never reaches the database in clear text
CIPHERTEXT_KEY = "credentials_ciphertext"


def seal_config(config: dict[str, Any] | None) -> dict[str, Any]:
    """Replace config["credentials"] with its encrypted form."""
    cfg = dict(config or {})
    creds = cfg.pop("credentials", None) or {}
    cfg[CIPHERTEXT_KEY] = encrypt_json(creds)
    return cfg


def read_credentials(portal: Portal) -> dict[str, Any]:
    token = (portal.config or {}).get(CIPHERTEXT_KEY)
    if not token:
        return {}
    try:
        return decrypt_json(token)
    except InvalidToken as e:
        raise ValidationError(
            f"Credentials of portal {portal.slug} cannot be decrypted; check CREDENTIALS_ENCRYPTION_KEY"
        ) from e


def portal_credentials(portal: Portal) -> PortalCredentials:
    """Decrypted credentials parsed into the bundle for the portal's adapter_type."""
    return parse_credentials(portal.adapter_type, read_credentials(portal))


def plain_config(portal: Portal) -> dict[str, Any]:
    # decrypted view for admin responses; redact before returning it
    cfg = {k: v for k, v in (portal.config or {}).items() if k != CIPHERTEXT_KEY}
    cfg["credentials"] = read_credentials(portal)
    return cfg


def _check_credentials(adapter_type: str, credentials: dict[str, Any] | None) -> None:
    # credentials must fit the adapter type
    try:
        parse_credentials(adapter_type, credentials)
    except (KeyError, ValueError) as e:
        raise ValidationError(f"Invalid credentials for adapter_type={adapter_type}: {e}") from e


async def create_portal(db: AsyncSession, body: PortalCreate, *, actor: str = "internal") -> Portal:
    config = body.config.model_dump()
    _check_credentials(body.adapter_type, config.get("credentials"))

    portal = Portal(
        slug=body.slug,
        name=body.name,
        active=body.active,
        method=body.method,
        feed_format=body.feed_format,
        adapter_type=body.adapter_type,
        config=seal_config(config),
        feed_token=generate_feed_token() if body.method == "feed" else None,
        created_by=actor,
        updated_by=actor,
    )
    try:
        async with db.begin_nested():
            db.add(portal)
            await db.flush()
    except IntegrityError as e:
        raise ValidationError(f"Portal slug already exists: {body.slug}") from e

    log.info("portal_registry: created portal=%s method=%s adapter=%s", portal.slug, portal.method, portal.adapter_type)
    return portal


async def update_portal(db: AsyncSession, portal_id: str, patch: PortalPatch, *, actor: str = "internal") -> Portal:
    portal = await get_portal(db, portal_id)

    if patch.name is not None:
        portal.name = patch.name
    if patch.active is not None:
        portal.active = patch.active
    if patch.method is not None:
        portal.method = patch.method
    if patch.feed_format is not None:
        portal.feed_format = patch.feed_format
    if patch.adapter_type is not None:
        portal.adapter_type = patch.adapter_type

    creds = read_credentials(portal)
    if patch.config is not None:
        cfg = patch.config.model_dump()
        creds = merge_secrets(creds, cfg.pop("credentials") or {})
        _check_credentials(portal.adapter_type, creds)
        cfg["credentials"] = creds
        portal.config = seal_config(cfg)
    else:
        _check_credentials(portal.adapter_type, creds)

    if portal.method == "feed" and not portal.feed_token:
        portal.feed_token = generate_feed_token()

    portal.updated_by = actor
    await db.flush()
    return portal


async def rotate_token(db: AsyncSession, portal_id: str, *, actor: str = "internal") -> str:
    """
    Replace the feed token. The old token stops working as soon as this commits.
    Redistributing the new feed URL is the caller's job.
    """
    portal = await get_portal(db, portal_id)
    token = generate_feed_token()
    portal.feed_token = token
    portal.updated_by = actor
    await db.flush()
    log.info("portal_registry: rotated feed token portal=%s", portal.slug)
    return token


async def ensure_feed_token(db: AsyncSession, portal: Portal) -> str:
    if portal.feed_token:
        return portal.feed_token
    portal.feed_token = generate_feed_token()
    await db.flush()
    return portal.feed_token


async def store_credentials(db: AsyncSession, portal: Portal, updates: dict[str, Any]) -> None:
    creds = read_credentials(portal)
    creds.update(updates)
    cfg = dict(portal.config or {})
    cfg[CIPHERTEXT_KEY] = encrypt_json(creds)
    # reassign so the JSON column is flagged dirty
    portal.config = cfg
    await db.flush()


