from fastapi import APIRouter

from app.core.config import settings


router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok", "service": settings.service_name, "env": settings.env}
