from __future__ import annotations

import csv
from io import StringIO
from typing import Any, Iterable

from app.schemas.export import ExportRecord


# Column order is part of the feed contract; append only.
CSV_COLUMNS = [
    "id", "title", "type", "purpose", "price", "condo_fee", "iptu", "description",
    "bedrooms", "suites", "bathrooms", "garages", "area", "built_area",
    "street", "neighborhood", "city", "state", "zipcode", "featured", "url", "photos",
]

UTF8_BOM = "\ufeff"


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Sim" if value else "Nao"
    return value


def _row(r: ExportRecord) -> list[Any]:
    values = {
        "id": r.id,
        "title": r.title,
        "type": r.type,
        "purpose": r.purpose,
        "price": r.price,
        "condo_fee": r.condo_fee,
        "iptu": r.iptu,
        "description": r.description,
        "bedrooms": r.bedrooms,
        "suites": r.suites,
        "bathrooms": r.bathrooms,
        "garages": r.garages,
        "area": r.area,
        "built_area": r.built_area,
        "street": r.address.street,
        "neighborhood": r.address.neighborhood,
        "city": r.address.city,
        "state": r.address.state,
        "zipcode": r.address.zipcode,
        "featured": r.featured,
        "url": r.url,
        "photos": "|".join(p.url for p in r.photos),
    }
    return [_cell(values[c]) for c in CSV_COLUMNS]


def build_csv_feed(records: Iterable[ExportRecord]) -> tuple[bytes, int]:
    buf = StringIO()
    # csv defaults: QUOTE_MINIMAL, doubled quotes, CRLF (RFC 4180)
    w = csv.writer(buf)
    w.writerow(CSV_COLUMNS)

    count = 0
    for r in records:
        w.writerow(_row(r))
        count += 1

    return (UTF8_BOM + buf.getvalue()).encode("utf-8"), count
