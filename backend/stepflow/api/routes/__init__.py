"""API Routes module"""
from fastapi import APIRouter

from .templates import router as templates_router
from .instances import router as instances_router
from .assignments import router as assignments_router

# Main API router
api_router = APIRouter()

api_router.include_router(templates_router, prefix="/templates", tags=["Templates"])
api_router.include_router(instances_router, prefix="/instances", tags=["Instances"])
api_router.include_router(assignments_router, prefix="/assignments", tags=["Assignments"])

__all__ = ["api_router"]
