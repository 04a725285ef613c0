from datetime import datetime

from sqlalchemy import Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.core import ids
from app.models.base import Base, JSONDocument, utcnow


class Listing(Base):
    """
    Catalog listing. Owned by the catalog service; this service only reads it.
    """
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.id_default(ids.LISTING))
    reference: Mapped[str | None] = mapped_column(String(80), nullable=True)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    purpose: Mapped[str] = mapped_column(String(10), nullable=False, default="sale")  # sale/rent
    type: Mapped[str] = mapped_column(String(40), nullable=False, default="casa")
    profile: Mapped[str] = mapped_column(String(40), nullable=False, default="residencial")
    category_id: Mapped[str | None] = mapped_column(String, nullable=True)

    bedrooms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suites: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bathrooms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    garages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    area: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    built_area: Mapped[float | None] = mapped_column(Float, nullable=True)

    # 0 is a real value (no fee); None means unknown
    condo_fee: Mapped[float | None] = mapped_column(Float, nullable=True)
    condo_exempt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    iptu: Mapped[float | None] = mapped_column(Float, nullable=True)

    street: Mapped[str | None] = mapped_column(String(200), nullable=True)
    number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    neighborhood: Mapped[str | None] = mapped_column(String(120), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    zipcode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    features: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    amenities: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    # [{"url": ..., "alt": ..., "order": 0}, ...]
    photos: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
