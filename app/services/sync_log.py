from __future__ import annotations

import time
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.sync_log import SyncLogEntry


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def record_sync_log(
    db: AsyncSession,
    *,
    portal_id: str,
    kind: str,
    status: str,
    total_items: int = 0,
    duration_ms: int = 0,
    detail: dict[str, Any] | None = None,
    feed_url: str | None = None,
) -> SyncLogEntry:
    entry = SyncLogEntry(
        portal_id=portal_id,
        kind=kind,
        status=status,
        total_items=total_items,
        duration_ms=duration_ms,
        detail=detail or {},
        feed_url=feed_url,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_sync_logs(db: AsyncSession, *, portal_id: str, limit: int = 50) -> list[SyncLogEntry]:
    rows = await db.execute(
        select(SyncLogEntry)
        .where(SyncLogEntry.portal_id == portal_id)
        .order_by(desc(SyncLogEntry.created_at), desc(SyncLogEntry.id))
        .limit(limit)
    )
    return list(rows.scalars().all())
