from typing import Literal

from pydantic import BaseModel, Field


JobAction = Literal["publish", "update", "pause", "remove"]


class JobEnqueue(BaseModel):
    portal_id: str = Field(min_length=1)
    listing_id: str = Field(min_length=1)
    action: JobAction


class JobOut(BaseModel):
    id: str
    portal_id: str
    listing_id: str
    action: str
    status: str
    attempts: int
    max_attempts: int
    next_run_at: str
    last_error: str | None


class DrainRequest(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=500)


class DrainOut(BaseModel):
    claimed: int
    reclaimed: int = 0
    succeeded: int
    failed: int
    retried: int = 0
    errors: list[str]
