from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core import ids
from app.models.base import Base, AuditMixin, JSONDocument


class Portal(AuditMixin, Base):
    """
    One row per external marketplace.

    `method` says how listings reach the portal (feed | api | manual).
    `adapter_type` picks the push adapter and the shape of config["credentials"].
    """
    __tablename__ = "portals"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_portal_slug"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.id_default(ids.PORTAL))
    slug: Mapped[str] = mapped_column(String(80), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False, default="feed")  # feed/api/manual
    feed_format: Mapped[str] = mapped_column(String(10), nullable=False, default="xml")  # xml/json/csv
    feed_token: Mapped[str | None] = mapped_column(String(200), nullable=True)

    adapter_type: Mapped[str] = mapped_column(String(40), nullable=False, default="manual")  # oauth/static_token/manual

    # filters, field mapping, photo limit, price policy, credentials
    config: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
