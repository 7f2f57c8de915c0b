"""Job record and remote task status data models."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobStatus(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


# Forward order of the pipeline; ERROR sits outside it.
STAGE_ORDER = [
    JobStatus.PENDING,
    JobStatus.COLLECTING,
    JobStatus.PROCESSING,
    JobStatus.ANALYZING,
    JobStatus.COMPLETED,
]


class SourceType(str, Enum):
    FORUM = "forum"
    SOCIAL = "social"
    REVIEWS = "reviews"
    SURVEY = "survey"
    WEBSITE = "website"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_metadata(raw: Any) -> Dict[str, Any]:
    """Normalize a stored metadata blob into a dict.

    Rows written by older clients may hold the metadata as a JSON string.
    Anything that does not decode to an object is treated as empty.
    """
    if raw is None:
        return {}
    if isinstance(raw, BaseModel):
        return raw.model_dump(exclude_none=True)
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class JobMetadata(BaseModel):
    """Accumulated pipeline metadata for a job record.

    Known keys are typed; anything else the remote service reports is kept
    in the model's extra fields.
    """
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    task_id: Optional[str] = None
    collection_task_id: Optional[str] = None
    processing_task_id: Optional[str] = None
    analysis_task_id: Optional[str] = None
    dashboard_task_id: Optional[str] = None
    dashboard_url: Optional[str] = None
    current_stage: Optional[str] = None
    project_id: Optional[str] = None
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    error_time: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _parse_serialized(cls, data: Any) -> Any:
        return coerce_metadata(data)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JobRecord(BaseModel):
    """One user-initiated feedback collection job (a `data_sources` row)."""
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    name: str
    source_url: str = Field(alias="url")
    source_type: SourceType = Field(alias="type")
    status: JobStatus = JobStatus.PENDING
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    project_id: Optional[str] = None
    last_updated: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        return cls.model_validate(row)

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source_url": self.source_url,
            "source_type": self.source_type.value,
            "status": self.status.value,
            "metadata": self.metadata.as_dict(),
            "project_id": self.project_id,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TaskStatusResponse(BaseModel):
    """Remote view of a pipeline task, as returned by GET /task/{task_id}.

    Sub-task ids (`collection_task_id`, ...) show up progressively and are
    kept as extra fields when the service adds new ones.
    """
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    task_id: Optional[str] = None
    status: Optional[str] = None
    current_stage: Optional[str] = None
    collection_task_id: Optional[str] = None
    processing_task_id: Optional[str] = None
    analysis_task_id: Optional[str] = None
    dashboard_task_id: Optional[str] = None
    dashboard_url: Optional[str] = None
    message: Optional[str] = None

    def local_status(self) -> Optional[JobStatus]:
        """Map the remote status onto the local vocabulary.

        Both sides share the same stage names; `failed` is the remote's
        alias for `error`. Unknown values carry no status information.
        """
        if not self.status:
            return None
        value = self.status.lower()
        if value == "failed":
            return JobStatus.ERROR
        try:
            return JobStatus(value)
        except ValueError:
            return None


class SubmitResult(BaseModel):
    """Outcome of a successful remote submission."""
    task_id: str
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProjectRecord(BaseModel):
    """A named group of feedback sources (a `projects` row)."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProjectRecord":
        return cls.model_validate(row)

    def to_api(self, sources: Optional[List[JobRecord]] = None) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if sources is not None:
            data["sources"] = [s.to_api() for s in sources]
        return data
