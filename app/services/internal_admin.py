from fastapi import Header, HTTPException

from app.core.config import settings
from app.core.security import tokens_match


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> str:
    if not tokens_match(settings.internal_admin_key, x_internal_admin_key):
        raise HTTPException(status_code=403, detail="Internal admin key required")
    # actor recorded in updated_by
    return "internal"
