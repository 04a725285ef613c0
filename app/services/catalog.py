from __future__ import annotations

from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.listing import Listing


class ListingCatalog(Protocol):
    """Read-only view of the listing catalog."""

    async def get(self, listing_id: str) -> Listing | None:
        ...

    async def list_all(self) -> Sequence[Listing]:
        ...


class SqlListingCatalog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, listing_id: str) -> Listing | None:
        return (await self.db.execute(select(Listing).where(Listing.id == listing_id))).scalar_one_or_none()

    async def list_all(self) -> Sequence[Listing]:
        rows = await self.db.execute(select(Listing).order_by(Listing.order_index.asc(), Listing.id.asc()))
        return rows.scalars().all()
