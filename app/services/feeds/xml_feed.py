from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable
from xml.etree.ElementTree import Element, SubElement, tostring

from app.schemas.export import ExportRecord


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _field(parent: Element, tag: str, value: Any) -> None:
    # None means missing: no element. 0 and "" are written as-is.
    if value is None:
        return
    SubElement(parent, tag).text = _text(value)


def build_xml_feed(records: Iterable[ExportRecord], *, generated_at: datetime | None = None) -> tuple[bytes, int]:
    generated_at = generated_at or datetime.now(timezone.utc)
    root = Element("listings", {"generated_at": generated_at.isoformat()})

    count = 0
    for r in records:
        item = SubElement(root, "listing")
        _field(item, "id", r.id)
        _field(item, "title", r.title)
        _field(item, "type", r.type)
        _field(item, "profile", r.profile)
        _field(item, "purpose", r.purpose)
        _field(item, "price", r.price)
        _field(item, "condo_fee", r.condo_fee)
        _field(item, "iptu", r.iptu)
        _field(item, "description", r.description)
        _field(item, "bedrooms", r.bedrooms)
        _field(item, "suites", r.suites)
        _field(item, "bathrooms", r.bathrooms)
        _field(item, "garages", r.garages)
        _field(item, "area", r.area)
        _field(item, "built_area", r.built_area if r.built_area is not None else r.area)
        _field(item, "featured", r.featured)
        _field(item, "url", r.url)

        addr = SubElement(item, "address")
        for tag in ("street", "number", "neighborhood", "city", "state", "zipcode"):
            SubElement(addr, tag).text = getattr(r.address, tag) or ""

        photos = SubElement(item, "photos")
        for i, photo in enumerate(r.photos, start=1):
            SubElement(photos, "photo", {"order": str(i)}).text = photo.url

        count += 1

    return tostring(root, encoding="utf-8", xml_declaration=True), count
