from pydantic import BaseModel


class PublicationOut(BaseModel):
    portal_id: str
    listing_id: str
    status: str
    external_id: str | None
    last_error: str | None
    last_attempt_at: str | None
