from datetime import datetime

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from app.core import ids
from app.models.base import Base, AuditMixin, JSONDocument


class Publication(AuditMixin, Base):
    __tablename__ = "portal_publications"
    __table_args__ = (
        UniqueConstraint("portal_id", "listing_id", name="uq_publication_portal_listing"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.id_default(ids.PUBLICATION))
    portal_id: Mapped[str] = mapped_column(String, ForeignKey("portals.id"), nullable=False)
    listing_id: Mapped[str] = mapped_column(String, nullable=False)  # catalog id

    # not_published/pending/published/error/disabled
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="not_published")

    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # last payload sent to the remote API; equal payload => no-op update
    payload_snapshot: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
