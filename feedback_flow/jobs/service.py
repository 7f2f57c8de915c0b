"""Job lifecycle: create, submit, track, resume, delete, and read results."""

import logging
from typing import Any, Dict, List, Optional

from feedback_flow.jobs.errors import JobNotReady, RecordNotFound, SubmissionError
from feedback_flow.jobs.models import JobRecord, JobStatus, coerce_metadata, utcnow
from feedback_flow.jobs.reconcile import reconcile_metadata, stamp_transition
from feedback_flow.jobs.submission import SubmissionStrategy
from feedback_flow.jobs.tracker import PipelineTracker
from feedback_flow.jobs.validation import validate_submission
from feedback_flow.remote.analysis_client import AnalysisClient, RemoteServiceError
from feedback_flow.storage.record_store import ChangeEvent, RecordStore

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = [s for s in JobStatus if not s.is_terminal]

DASHBOARD_PLACEHOLDER = "The analysis completed but no dashboard was produced."


class JobService:
    def __init__(
        self,
        store: RecordStore,
        strategy: SubmissionStrategy,
        tracker: PipelineTracker,
        client: AnalysisClient,
    ):
        self._store = store
        self._strategy = strategy
        self._tracker = tracker
        self._client = client
        self._subscription = None

    @property
    def tracker(self) -> PipelineTracker:
        return self._tracker

    async def start(self) -> int:
        """Listen for store changes and resume tracking unfinished jobs."""
        self._subscription = await self._store.subscribe(self._on_change)
        return await self.resume_active()

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._store.unsubscribe(self._subscription)
            self._subscription = None
        await self._tracker.stop()

    async def _on_change(self, change: ChangeEvent) -> None:
        # Deletions can come from any client; stop polling for rows that are gone.
        if change.event == "DELETE" and change.record_id:
            if self._tracker.cancel(change.record_id):
                logger.info("Job %s was deleted; tracking cancelled", change.record_id)

    async def submit(
        self,
        name: str,
        source_url: str,
        source_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
    ) -> JobRecord:
        """Validate, persist and submit a new feedback collection job.

        Raises ValidationError before anything is written. If the remote
        submission fails the record stays in the store marked as error and
        SubmissionError is raised carrying it.
        """
        kind = validate_submission(name, source_url, source_type)

        meta = coerce_metadata(metadata)
        project_id = project_id or meta.get("project_id")
        if project_id:
            meta["project_id"] = project_id

        now = utcnow().isoformat()
        row = await self._store.insert({
            "name": name.strip(),
            "url": source_url.strip(),
            "type": kind.value,
            "status": JobStatus.PENDING.value,
            "metadata": meta,
            "project_id": project_id,
            "last_updated": now,
        })
        record = JobRecord.from_row(row)
        logger.info("Created job %s (%s %s)", record.id, kind.value, record.source_url)

        try:
            result = await self._strategy.submit(record)
        except SubmissionError as e:
            failed_at = utcnow().isoformat()
            error_meta = stamp_transition(
                record.metadata.as_dict(), JobStatus.ERROR, failed_at, message=e.message,
            )
            row = await self._store.update(record.id, {
                "status": JobStatus.ERROR.value,
                "metadata": error_meta,
                "last_updated": failed_at,
            })
            failed = JobRecord.from_row(row) if row else record
            logger.warning("Submission failed for job %s: %s", record.id, e.message)
            raise SubmissionError(e.message, record=failed) from e

        submitted_at = utcnow().isoformat()
        new_meta = reconcile_metadata(
            record.metadata.as_dict(),
            {**result.metadata, "task_id": result.task_id, "submitted_at": submitted_at},
        )
        new_meta = stamp_transition(new_meta, JobStatus.COLLECTING, submitted_at)
        row = await self._store.update(record.id, {
            "status": JobStatus.COLLECTING.value,
            "metadata": new_meta,
            "last_updated": submitted_at,
        })
        if row is None:
            raise RecordNotFound(record.id)
        record = JobRecord.from_row(row)
        logger.info("Job %s submitted as task %s", record.id, result.task_id)

        self._tracker.start(record)
        return record

    async def list_jobs(self, project_id: Optional[str] = None, limit: int = 50) -> List[JobRecord]:
        filters = {"project_id": project_id} if project_id else None
        rows = await self._store.select(filters=filters, order_by="created_at", descending=True, limit=limit)
        return [JobRecord.from_row(r) for r in rows]

    async def get_job(self, job_id: str) -> JobRecord:
        row = await self._store.get(job_id)
        if row is None:
            raise RecordNotFound(job_id)
        return JobRecord.from_row(row)

    async def delete_job(self, job_id: str) -> None:
        self._tracker.cancel(job_id)
        if not await self._store.delete(job_id):
            raise RecordNotFound(job_id)
        logger.info("Deleted job %s", job_id)

    async def refresh_job(self, job_id: str) -> bool:
        """Restart tracking for an unfinished job. Returns True if a loop was started."""
        record = await self.get_job(job_id)
        if record.status.is_terminal or not record.metadata.task_id:
            return False
        return self._tracker.start(record)

    async def resume_active(self) -> int:
        """Restart tracking for every unfinished job that has a remote task id."""
        started = 0
        for status in _ACTIVE_STATUSES:
            rows = await self._store.select(filters={"status": status.value})
            for row in rows:
                record = JobRecord.from_row(row)
                if record.metadata.task_id and self._tracker.start(record):
                    started += 1
        if started:
            logger.info("Resumed tracking for %d job(s)", started)
        return started

    def _artifact_task_id(self, record: JobRecord) -> Optional[str]:
        if record.status != JobStatus.COMPLETED:
            raise JobNotReady(record.id, record.status.value)
        return record.metadata.dashboard_task_id or record.metadata.task_id

    async def get_dashboard(self, job_id: str) -> Dict[str, Any]:
        """Embeddable dashboard for a completed job, or a placeholder if none was produced."""
        record = await self.get_job(job_id)
        task_id = self._artifact_task_id(record)
        response = {
            "job_id": record.id,
            "dashboard_url": record.metadata.dashboard_url,
            "content": None,
            "placeholder": None,
        }
        if task_id:
            try:
                response["content"] = await self._client.get_dashboard_html(task_id)
                return response
            except RemoteServiceError as e:
                if e.status_code != 404:
                    raise
        response["placeholder"] = DASHBOARD_PLACEHOLDER
        return response

    async def get_report(self, job_id: str) -> Dict[str, Any]:
        record = await self.get_job(job_id)
        task_id = self._artifact_task_id(record)
        if not task_id:
            return {"job_id": record.id, "kpis": []}
        report = await self._client.get_report(task_id)
        return {"job_id": record.id, **report}
