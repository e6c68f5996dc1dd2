"""API v1 router."""

from fastapi import APIRouter

from pitcrew.api.v1.profiles import router as profiles_router
from pitcrew.api.v1.sessions import router as sessions_router

router = APIRouter()

# Include sub-routers
router.include_router(sessions_router, prefix="/sessions", tags=["sessions"])
router.include_router(profiles_router, prefix="/profiles", tags=["profiles"])
