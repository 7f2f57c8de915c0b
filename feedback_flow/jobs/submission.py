"""Submission strategies: how a job is started remotely and how its status is read.

The remote service can be driven two ways. The unified pipeline takes one
call and reports every stage under a single task id. The chained variant
starts collection only, and each following stage has to be kicked off by
the client once the previous one completes. Both look the same to the
tracker: `submit()` once, then `check()` every tick.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from feedback_flow.jobs.errors import PollError, SubmissionError
from feedback_flow.jobs.models import JobRecord, JobStatus, SourceType, SubmitResult, TaskStatusResponse
from feedback_flow.remote.analysis_client import AnalysisClient, RemoteServiceError

# Keys the tracker owns; they are not forwarded to the collector config.
_TRACKING_KEYS = frozenset({
    "task_id",
    "collection_task_id",
    "processing_task_id",
    "analysis_task_id",
    "dashboard_task_id",
    "dashboard_url",
    "current_stage",
    "submitted_at",
    "completed_at",
    "error_message",
    "error_time",
})


def build_payload(record: JobRecord) -> Dict[str, Any]:
    """Request body for /pipeline and /collect."""
    extra = {
        k: v for k, v in record.metadata.as_dict().items()
        if k not in _TRACKING_KEYS and not k.endswith("_started_at")
    }
    return {
        "source_id": record.id,
        "config": {
            record.source_type.value: {**extra, "url": record.source_url},
        },
    }


class SubmissionStrategy(ABC):
    """Abstract interface for starting and checking a remote pipeline."""

    def __init__(self, client: AnalysisClient):
        self._client = client

    @abstractmethod
    async def submit(self, record: JobRecord) -> SubmitResult:
        """Start remote work for a record. Raises SubmissionError. Never retried."""
        ...

    @abstractmethod
    async def check(self, record: JobRecord) -> TaskStatusResponse:
        """Report the pipeline's current status. Raises PollError on transient failures."""
        ...


class PipelineSubmission(SubmissionStrategy):
    """One POST /pipeline call; the remote side chains the stages itself."""

    async def submit(self, record: JobRecord) -> SubmitResult:
        try:
            data = await self._client.run_pipeline(build_payload(record))
        except RemoteServiceError as e:
            raise SubmissionError(str(e)) from e

        task_id = data.get("task_id")
        if not task_id:
            raise SubmissionError("No task ID returned from pipeline")

        extra = {"dashboard_url": data["dashboard_url"]} if data.get("dashboard_url") else {}
        return SubmitResult(task_id=str(task_id), status=data.get("status"), metadata=extra)

    async def check(self, record: JobRecord) -> TaskStatusResponse:
        task_id = record.metadata.task_id
        if not task_id:
            raise PollError(f"Job {record.id} has no pipeline task id")
        try:
            return await self._client.get_task(task_id)
        except RemoteServiceError as e:
            raise PollError(str(e)) from e


# (metadata key of the stage task, local status while it runs,
#  name of the stage, key of the next stage task)
_CHAIN: List[Tuple[str, JobStatus, str, Optional[str]]] = [
    ("collection_task_id", JobStatus.COLLECTING, "collection", "processing_task_id"),
    ("processing_task_id", JobStatus.PROCESSING, "processing", "analysis_task_id"),
    ("analysis_task_id", JobStatus.ANALYZING, "analysis", "dashboard_task_id"),
    ("dashboard_task_id", JobStatus.ANALYZING, "dashboard", None),
]


class ChainedStageSubmission(SubmissionStrategy):
    """POST /collect, then /process, /analyze and /dashboard as each stage finishes.

    Progress is derived entirely from the sub-task ids already stored in the
    record's metadata, so a resumed tracker picks up where it left off.
    """

    async def submit(self, record: JobRecord) -> SubmitResult:
        # survey exports uploaded alongside the form go to the file collector
        with_files = (
            record.source_type == SourceType.SURVEY
            and bool(record.metadata.as_dict().get("files_dir"))
        )
        try:
            data = await self._client.collect(build_payload(record), with_files=with_files)
        except RemoteServiceError as e:
            raise SubmissionError(str(e)) from e

        task_id = data.get("task_id")
        if not task_id:
            raise SubmissionError("No task ID returned from collector")
        return SubmitResult(
            task_id=str(task_id),
            status=data.get("status"),
            metadata={"collection_task_id": str(task_id)},
        )

    def _next_call(self, key: str) -> Callable[[str], Awaitable[Dict[str, Any]]]:
        return {
            "collection_task_id": self._client.process,
            "processing_task_id": self._client.analyze,
            "analysis_task_id": self._client.generate_dashboard,
        }[key]

    async def check(self, record: JobRecord) -> TaskStatusResponse:
        meta = record.metadata.as_dict()
        top_level = meta.get("task_id")
        if not top_level:
            raise PollError(f"Job {record.id} has no collection task id")
        meta.setdefault("collection_task_id", top_level)

        # The furthest stage that has been started is the one to watch.
        key, running, stage, next_key = next(
            entry for entry in reversed(_CHAIN) if meta.get(entry[0])
        )
        stage_task_id = meta[key]

        try:
            current = await self._client.get_task(stage_task_id)
            current_status = current.local_status()

            if current_status == JobStatus.ERROR:
                return TaskStatusResponse(
                    task_id=top_level,
                    status="failed",
                    current_stage=stage,
                    message=current.message or f"{stage.capitalize()} stage failed",
                )

            if current_status != JobStatus.COMPLETED:
                return TaskStatusResponse(task_id=top_level, status=running.value, current_stage=stage)

            if next_key is None:
                return TaskStatusResponse(
                    task_id=top_level,
                    status=JobStatus.COMPLETED.value,
                    current_stage=stage,
                    dashboard_url=current.dashboard_url,
                )

            started = await self._next_call(key)(stage_task_id)
        except RemoteServiceError as e:
            raise PollError(str(e)) from e

        next_task_id = started.get("task_id")
        if not next_task_id:
            raise PollError(f"No task ID returned when starting the stage after {stage}")

        next_entry = next(entry for entry in _CHAIN if entry[0] == next_key)
        fields = {
            "task_id": top_level,
            "status": next_entry[1].value,
            "current_stage": next_entry[2],
            next_key: str(next_task_id),
        }
        # Dashboard generation may finish synchronously.
        if next_key == "dashboard_task_id":
            if started.get("dashboard_url"):
                fields["dashboard_url"] = started["dashboard_url"]
            if str(started.get("status", "")).lower() == JobStatus.COMPLETED.value:
                fields["status"] = JobStatus.COMPLETED.value
        try:
            return TaskStatusResponse.model_validate(fields)
        except ValueError as e:
            raise PollError(f"Unexpected reply when starting the stage after {stage}: {e}") from e


def make_strategy(mode: str, client: AnalysisClient) -> SubmissionStrategy:
    strategies = {
        "pipeline": PipelineSubmission,
        "chained": ChainedStageSubmission,
    }
    try:
        return strategies[mode](client)
    except KeyError:
        raise ValueError(f"Unknown submission mode '{mode}'. Expected one of: {', '.join(strategies)}")
