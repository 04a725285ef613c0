from __future__ import annotations

import re
from typing import Any

from bs4 import BeautifulSoup

from app.core.config import settings
from app.models.listing import Listing
from app.models.portal import Portal
from app.schemas.export import CONDO_EXEMPT, PRICE_ON_REQUEST, ExportAddress, ExportPhoto, ExportRecord
from app.schemas.portal import FilterRules, PortalConfig


TYPE_LABELS = {
    "casa": "Casa",
    "apartamento": "Apartamento",
    "terreno": "Terreno",
    "comercial": "Comercial",
    "rural": "Rural",
    "cobertura": "Cobertura",
    "flat": "Flat",
    "galpao": "Galpão",
}

PROFILE_LABELS = {
    "residencial": "Residencial",
    "comercial": "Comercial",
    "industrial": "Industrial",
    "misto": "Misto",
}

PURPOSE_LABELS = {
    "sale": "Venda",
    "rent": "Aluguel",
}


def portal_config(portal: Portal) -> PortalConfig:
    return PortalConfig.model_validate(portal.config or {})


def _has_address(listing: Listing) -> bool:
    return bool((listing.city or "").strip()) and bool((listing.state or "").strip())


def eligible_for_filters(listing: Listing, rules: FilterRules) -> bool:
    if rules.active_only and not listing.active:
        return False

    if rules.sale_only and listing.purpose != "sale":
        return False
    if rules.rent_only and listing.purpose != "rent":
        return False

    if rules.featured_only and not listing.featured:
        return False

    if rules.categories and listing.category_id not in rules.categories:
        return False

    if rules.exclude_no_photos and not listing.photos:
        return False

    if rules.exclude_no_address and not _has_address(listing):
        return False

    return True


def eligible(listing: Listing, portal: Portal) -> bool:
    """Pure: same listing + same portal config always gives the same answer."""
    return eligible_for_filters(listing, portal_config(portal).filters)


def strip_html(html: str) -> str:
    if not html:
        return ""
    html = re.sub(r"<br\s*/?>", "\n", html, flags=re.IGNORECASE)
    html = re.sub(r"</p>", "\n", html, flags=re.IGNORECASE)
    text = BeautifulSoup(html, "html.parser").get_text()
    text = text.replace("\xa0", " ")
    return text.strip()


def _number(value: float | int | None) -> float | int | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _label(value: str, defaults: dict[str, str], overrides: dict[str, str] | None) -> str:
    key = (value or "").lower().strip()
    if overrides and key in overrides:
        return overrides[key]
    return defaults.get(key, value)


def _price(listing: Listing, cfg: PortalConfig) -> float | int | str | None:
    if listing.price is not None and listing.price > 0:
        return _number(listing.price)
    if cfg.price_on_request:
        return PRICE_ON_REQUEST
    return None


def _condo_fee(listing: Listing) -> float | int | str | None:
    if listing.condo_exempt:
        return CONDO_EXEMPT
    return _number(listing.condo_fee)


def _photo_order(photo: dict[str, Any], position: int) -> int:
    # null or missing order falls back to the catalog position
    order = photo.get("order")
    return order if order is not None else position


def _photos(listing: Listing, limit: int) -> list[ExportPhoto]:
    raw: list[dict[str, Any]] = [p for p in (listing.photos or []) if isinstance(p, dict) and p.get("url")]
    indexed = list(enumerate(raw))
    # declared order first, then original position for ties
    indexed.sort(key=lambda pair: (_photo_order(pair[1], pair[0]), pair[0]))
    return [ExportPhoto(url=str(p["url"]), alt=p.get("alt")) for _, p in indexed[:limit]]


def to_export_record(listing: Listing, portal: Portal) -> ExportRecord:
    cfg = portal_config(portal)
    mapping = cfg.field_mapping

    description = listing.description or ""
    if cfg.strip_html:
        description = strip_html(description)

    base_url = (cfg.site_url or settings.public_site_url).rstrip("/")

    return ExportRecord(
        id=listing.reference or listing.id,
        listing_id=listing.id,
        title=listing.title,
        description=description,
        type=_label(listing.type, TYPE_LABELS, mapping.get("type")),
        type_key=(listing.type or "").lower().strip(),
        profile=_label(listing.profile, PROFILE_LABELS, mapping.get("profile")),
        purpose=_label(listing.purpose, PURPOSE_LABELS, mapping.get("purpose")),
        purpose_key=listing.purpose,
        category_id=listing.category_id,
        price=_price(listing, cfg),
        condo_fee=_condo_fee(listing),
        iptu=_number(listing.iptu),
        bedrooms=listing.bedrooms or 0,
        suites=listing.suites or 0,
        bathrooms=listing.bathrooms or 0,
        garages=listing.garages or 0,
        area=_number(listing.area) or 0,
        built_area=_number(listing.built_area),
        features=list(listing.features or []),
        amenities=list(listing.amenities or []),
        featured=bool(listing.featured),
        url=f"{base_url}/imovel/{listing.slug}",
        address=ExportAddress(
            street=listing.street,
            number=listing.number,
            neighborhood=listing.neighborhood,
            city=listing.city,
            state=listing.state,
            zipcode=listing.zipcode,
            lat=listing.lat,
            lng=listing.lng,
        ),
        photos=_photos(listing, cfg.photo_limit),
    )
