from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Iterable

from app.schemas.export import ExportRecord


def build_json_feed(records: Iterable[ExportRecord], *, generated_at: datetime | None = None) -> tuple[bytes, int]:
    generated_at = generated_at or datetime.now(timezone.utc)
    items = [r.model_dump(mode="json", exclude={"type_key", "purpose_key"}) for r in records]
    body = {
        "total": len(items),
        "updated_at": generated_at.isoformat(),
        "properties": items,
    }
    return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8"), len(items)
