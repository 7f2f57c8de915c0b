"""Project API: group feedback sources and read them back together."""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from feedback_flow.jobs.errors import ProjectNotFound, ValidationError

router = APIRouter()

# Set by main.py during lifespan
_service = None


def set_service(service):
    global _service
    _service = service


def _require_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Project service not initialized")
    return _service


class ProjectCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None


@router.post("/projects", status_code=201)
async def create_project(request: ProjectCreateRequest):
    service = _require_service()
    try:
        project = await service.create_project(request.name, request.description)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": e.message})
    return project.to_api(sources=[])


@router.get("/projects")
async def list_projects():
    service = _require_service()
    projects = await service.list_projects()
    return {"items": [project.to_api(sources) for project, sources in projects]}


@router.get("/projects/{project_id}")
async def get_project(project_id: str):
    service = _require_service()
    try:
        project, sources = await service.get_project(project_id)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="Project not found")
    return project.to_api(sources)
