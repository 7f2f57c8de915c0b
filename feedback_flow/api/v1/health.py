"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from feedback_flow.api.v1 import sources
from feedback_flow.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health, tracker load, and system info."""
    service = sources._service
    return {
        "status": "healthy" if service is not None else "starting",
        "record_store": settings.record_store_mode,
        "submission_mode": settings.submission_mode,
        "tracked_jobs": len(service.tracker.active_jobs()) if service is not None else 0,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
