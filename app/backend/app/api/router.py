"""Top-level API router."""

from fastapi import APIRouter

from app.api.routes.allocations import router as allocations_router
from app.api.routes.health import router as health_router
from app.api.routes.jobs import router as jobs_router
from app.api.routes.me import router as me_router
from app.api.routes.reallocations import router as reallocations_router
from app.api.routes.weekly import router as weekly_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(me_router)
api_router.include_router(allocations_router)
api_router.include_router(weekly_router)
api_router.include_router(reallocations_router)
api_router.include_router(jobs_router)
