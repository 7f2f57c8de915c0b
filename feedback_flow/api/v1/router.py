"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from feedback_flow.api.v1.health import router as health_router
from feedback_flow.api.v1.projects import router as projects_router
from feedback_flow.api.v1.sources import router as sources_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(projects_router, tags=["projects"])
v1_router.include_router(sources_router, tags=["sources"])
