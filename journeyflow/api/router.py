"""
API router: aggregates all route modules.
"""
from fastapi import APIRouter
from journeyflow.api.journeys import router as journeys_router
from journeyflow.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(journeys_router)
api_router.include_router(health_router)
