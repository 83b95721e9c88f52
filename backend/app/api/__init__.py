from fastapi import APIRouter

from .activity import router as activity_router
from .health import router as health_router

api_router = APIRouter()
api_router.include_router(health_router, prefix="/health", tags=["health"])
api_router.include_router(activity_router, prefix="/activity", tags=["activity"])

__all__ = ["api_router"]
