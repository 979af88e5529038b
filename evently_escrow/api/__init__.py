"""API endpoints for the escrow service."""

from fastapi import APIRouter
from .events import router as events_router
from .participants import router as participants_router
from .registrations import router as registrations_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include all routers
api_router.include_router(events_router)
api_router.include_router(participants_router)
api_router.include_router(registrations_router)

__all__ = ["api_router"]
