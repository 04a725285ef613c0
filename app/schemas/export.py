from __future__ import annotations

from pydantic import BaseModel, Field


PRICE_ON_REQUEST = "Consulte"
CONDO_EXEMPT = "Isento"


class ExportAddress(BaseModel):
    street: str | None = None
    number: str | None = None
    neighborhood: str | None = None
    city: str | None = None
    state: str | None = None
    zipcode: str | None = None
    lat: float | None = None
    lng: float | None = None


class ExportPhoto(BaseModel):
    url: str
    alt: str | None = None


class ExportRecord(BaseModel):
    """
    Portal-neutral listing snapshot produced by the mapper.

    price / condo_fee may hold a sentinel string instead of a number.
    None always means "missing"; 0 is a real value.
    """
    id: str
    listing_id: str
    title: str
    description: str
    type: str
    type_key: str
    profile: str
    purpose: str
    purpose_key: str
    category_id: str | None = None

    price: int | float | str | None = None
    condo_fee: int | float | str | None = None
    iptu: int | float | None = None

    bedrooms: int = 0
    suites: int = 0
    bathrooms: int = 0
    garages: int = 0
    area: int | float = 0
    built_area: int | float | None = None

    features: list[str] = Field(default_factory=list)
    amenities: list[str] = Field(default_factory=list)

    featured: bool = False
    url: str
    address: ExportAddress = Field(default_factory=ExportAddress)
    photos: list[ExportPhoto] = Field(default_factory=list)
