"""Projects group feedback sources; listing a project embeds its sources."""

import logging
from typing import List, Optional, Tuple

from feedback_flow.jobs.errors import ProjectNotFound, ValidationError
from feedback_flow.jobs.models import JobRecord, ProjectRecord
from feedback_flow.jobs.validation import MIN_NAME_LENGTH
from feedback_flow.storage.record_store import RecordStore

logger = logging.getLogger(__name__)

ProjectWithSources = Tuple[ProjectRecord, List[JobRecord]]


class ProjectService:
    def __init__(self, projects: RecordStore, sources: RecordStore):
        self._projects = projects
        self._sources = sources

    async def create_project(self, name: str, description: Optional[str] = None) -> ProjectRecord:
        if not name or len(name.strip()) < MIN_NAME_LENGTH:
            raise ValidationError("name", f"Name must be at least {MIN_NAME_LENGTH} characters.")
        row = await self._projects.insert({
            "name": name.strip(),
            "description": (description or "").strip() or None,
        })
        project = ProjectRecord.from_row(row)
        logger.info("Created project %s (%s)", project.id, project.name)
        return project

    async def _sources_for(self, project_id: str) -> List[JobRecord]:
        rows = await self._sources.select(
            filters={"project_id": project_id}, order_by="created_at", descending=True,
        )
        return [JobRecord.from_row(r) for r in rows]

    async def list_projects(self) -> List[ProjectWithSources]:
        """All projects, newest first, each with its sources."""
        rows = await self._projects.select(order_by="created_at", descending=True)
        projects = [ProjectRecord.from_row(r) for r in rows]
        return [(p, await self._sources_for(p.id)) for p in projects]

    async def get_project(self, project_id: str) -> ProjectWithSources:
        row = await self._projects.get(project_id)
        if row is None:
            raise ProjectNotFound(project_id)
        project = ProjectRecord.from_row(row)
        return project, await self._sources_for(project.id)
