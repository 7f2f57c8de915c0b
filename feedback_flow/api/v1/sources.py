"""Feedback source API: create jobs, list them, follow their status, fetch results."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel, Field

from feedback_flow.jobs.errors import JobNotReady, RecordNotFound, SubmissionError, ValidationError
from feedback_flow.remote.analysis_client import RemoteServiceError

router = APIRouter()

# Set by main.py during lifespan
_service = None


def set_service(service):
    global _service
    _service = service


def _require_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Job service not initialized")
    return _service


class SourceCreateRequest(BaseModel):
    name: str
    source_url: str
    source_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[str] = None


@router.post("/sources", status_code=201)
async def create_source(request: SourceCreateRequest):
    """Register a feedback source and submit it to the analysis pipeline."""
    service = _require_service()
    try:
        record = await service.submit(
            name=request.name,
            source_url=request.source_url,
            source_type=request.source_type,
            metadata=request.metadata,
            project_id=request.project_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": e.message})
    except SubmissionError as e:
        detail = {"message": e.message}
        if e.record is not None:
            detail["source"] = e.record.to_api()
        raise HTTPException(status_code=502, detail=detail)
    return record.to_api()


@router.get("/sources")
async def list_sources(project_id: Optional[str] = None, limit: int = 50):
    service = _require_service()
    records = await service.list_jobs(project_id=project_id, limit=limit)
    return {"items": [r.to_api() for r in records]}


@router.get("/sources/{source_id}")
async def get_source(source_id: str):
    service = _require_service()
    try:
        record = await service.get_job(source_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    response = record.to_api()
    response["tracking"] = service.tracker.is_tracking(record.id)
    return response


@router.delete("/sources/{source_id}", status_code=204)
async def delete_source(source_id: str):
    service = _require_service()
    try:
        await service.delete_job(source_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    return Response(status_code=204)


@router.post("/sources/{source_id}/refresh")
async def refresh_source(source_id: str):
    """Resume status tracking for an unfinished source."""
    service = _require_service()
    try:
        started = await service.refresh_job(source_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    return {"source_id": source_id, "tracking": started or service.tracker.is_tracking(source_id)}


@router.get("/sources/{source_id}/dashboard")
async def get_dashboard(source_id: str):
    service = _require_service()
    try:
        return await service.get_dashboard(source_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    except JobNotReady as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RemoteServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/sources/{source_id}/report")
async def get_report(source_id: str):
    service = _require_service()
    try:
        return await service.get_report(source_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    except JobNotReady as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RemoteServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
