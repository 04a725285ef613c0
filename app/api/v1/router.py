from fastapi import APIRouter

from app.api.v1.endpoints.health import router as health_router
from app.api.v1.endpoints.public_feeds import router as public_feeds_router
from app.api.v1.endpoints.portals import router as portals_router
from app.api.v1.endpoints.portal_jobs import router as portal_jobs_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(public_feeds_router, tags=["feed"])
router.include_router(portals_router, tags=["portals"])
router.include_router(portal_jobs_router, tags=["portal-jobs"])
