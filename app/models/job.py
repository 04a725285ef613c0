from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.core import ids
from app.models.base import Base, utcnow


class PortalJob(Base):
    __tablename__ = "portal_jobs"
    __table_args__ = (
        Index("ix_portal_jobs_status_next_run", "status", "next_run_at"),
        Index("ix_portal_jobs_portal_listing", "portal_id", "listing_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.id_default(ids.JOB))
    portal_id: Mapped[str] = mapped_column(String, ForeignKey("portals.id"), nullable=False)
    listing_id: Mapped[str] = mapped_column(String, nullable=False)  # catalog id

    action: Mapped[str] = mapped_column(String(20), nullable=False)  # publish/update/pause/remove
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued/processing/completed/failed

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(80), nullable=True)

    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
