from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.core import ids
from app.models.base import Base, JSONDocument, utcnow


class SyncLogEntry(Base):
    """
    Append-only audit of feed renders, job runs and connectivity tests. Never updated.
    """
    __tablename__ = "portal_sync_logs"
    __table_args__ = (
        Index("ix_portal_sync_logs_portal_created", "portal_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.id_default(ids.SYNC_LOG))
    portal_id: Mapped[str] = mapped_column(String, ForeignKey("portals.id"), nullable=False)

    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="feed")  # feed/job/test
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # success/error
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    detail: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    feed_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
