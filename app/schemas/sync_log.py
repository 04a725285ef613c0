from pydantic import BaseModel


class SyncLogOut(BaseModel):
    id: str
    portal_id: str
    kind: str
    status: str
    total_items: int
    duration_ms: int
    detail: dict
    feed_url: str | None
    created_at: str
