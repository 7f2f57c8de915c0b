"""Pipeline status tracker.

Runs one asyncio task per tracked job. Each tick waits for the poll
interval, asks the submission strategy for the remote status, folds it into
the job record and writes the record back only when something changed. A
loop ends on the first of: remote completion, remote failure, the attempt
ceiling, or cancellation.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from feedback_flow.jobs.errors import PollError, RemoteFailure, TrackingTimeoutError
from feedback_flow.jobs.models import STAGE_ORDER, JobRecord, JobStatus, TaskStatusResponse, utcnow
from feedback_flow.jobs.reconcile import reconcile_metadata, stamp_transition
from feedback_flow.jobs.submission import SubmissionStrategy
from feedback_flow.storage.record_store import RecordStore

TIMEOUT_MESSAGE = "Pipeline tracking timed out"
TIMEOUT_WRITE_ATTEMPTS = 3


@dataclass
class TrackerEvent:
    """Something observable happened to a tracked job."""
    job_id: str
    kind: str  # started|transition|completed|failed|timed_out|poll_error|cancelled
    status: Optional[JobStatus] = None
    dashboard_url: Optional[str] = None
    error: Optional[Exception] = None


TrackerObserver = Callable[[TrackerEvent], None]


@dataclass
class _PollHandle:
    task: asyncio.Task
    cancelled: asyncio.Event


def _rank(status: JobStatus) -> int:
    return STAGE_ORDER.index(status) if status in STAGE_ORDER else len(STAGE_ORDER)


class PipelineTracker:
    """Polls remote pipeline status for job records and persists it.

    At most one loop runs per job id; a second start() for an id that is
    already being tracked is refused.
    """

    def __init__(
        self,
        store: RecordStore,
        strategy: SubmissionStrategy,
        interval: float = 5.0,
        timeout: float = 600.0,
        max_attempts: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
        observer: Optional[TrackerObserver] = None,
    ):
        if interval < 0:
            raise ValueError("Poll interval must not be negative")
        if max_attempts is None:
            if interval <= 0:
                raise ValueError("max_attempts is required when the poll interval is zero")
            max_attempts = math.ceil(timeout / interval)
        if max_attempts < 1:
            raise ValueError("Poll ceiling must allow at least one attempt")

        self._store = store
        self._strategy = strategy
        self._interval = interval
        self._max_attempts = max_attempts
        self._log = logger or logging.getLogger(__name__)
        self._observer = observer
        self._active: Dict[str, _PollHandle] = {}

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def is_tracking(self, job_id: str) -> bool:
        handle = self._active.get(job_id)
        return handle is not None and not handle.task.done()

    def active_jobs(self) -> list:
        return [job_id for job_id in self._active if self.is_tracking(job_id)]

    def start(self, record: JobRecord) -> bool:
        """Begin polling for a record. Returns False if it is terminal or already tracked."""
        if record.status.is_terminal:
            self._log.info("Job %s is already %s; not tracking", record.id, record.status.value)
            return False
        if self.is_tracking(record.id):
            self._log.info("Job %s is already being tracked", record.id)
            return False

        cancelled = asyncio.Event()
        task = asyncio.create_task(self._poll_loop(record, cancelled), name=f"track-{record.id}")
        self._active[record.id] = _PollHandle(task=task, cancelled=cancelled)
        task.add_done_callback(lambda t, job_id=record.id: self._forget(job_id, t))

        self._log.info("Tracking job %s (task %s)", record.id, record.metadata.task_id)
        self._emit(TrackerEvent(job_id=record.id, kind="started", status=record.status))
        return True

    def cancel(self, job_id: str) -> bool:
        """Ask a job's loop to stop before its next tick."""
        handle = self._active.get(job_id)
        if handle is None or handle.task.done():
            return False
        handle.cancelled.set()
        return True

    async def wait(self, job_id: str) -> None:
        """Wait until a job's loop has finished."""
        handle = self._active.get(job_id)
        if handle is not None:
            await asyncio.shield(handle.task)

    async def stop(self) -> None:
        """Cancel every loop and wait for them to unwind."""
        handles = list(self._active.values())
        for handle in handles:
            handle.cancelled.set()
            handle.task.cancel()
        for handle in handles:
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
        self._active.clear()

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        handle = self._active.get(job_id)
        if handle is not None and handle.task is task:
            del self._active[job_id]
        if not task.cancelled() and task.exception() is not None:
            self._log.error("Tracking loop for job %s crashed", job_id, exc_info=task.exception())

    def _emit(self, event: TrackerEvent) -> None:
        if self._observer is None:
            return
        try:
            self._observer(event)
        except Exception:
            self._log.exception("Tracker observer failed on %s event for job %s", event.kind, event.job_id)

    async def _wait_tick(self, cancelled: asyncio.Event) -> bool:
        """Sleep one interval. Returns True if cancellation was requested."""
        if cancelled.is_set():
            return True
        try:
            await asyncio.wait_for(cancelled.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass
        return cancelled.is_set()

    async def _poll_loop(self, record: JobRecord, cancelled: asyncio.Event) -> None:
        attempts = 0
        # a reply that could not be written yet; replayed instead of polling again
        # so a stage the strategy already started remotely is not started twice
        unsaved: Optional[TaskStatusResponse] = None
        while True:
            if await self._wait_tick(cancelled):
                self._log.info("Stopped tracking job %s", record.id)
                self._emit(TrackerEvent(job_id=record.id, kind="cancelled", status=record.status))
                return

            attempts += 1
            response = unsaved
            if response is None:
                try:
                    response = await self._strategy.check(record)
                except PollError as e:
                    self._log.warning("Poll %d for job %s failed: %s", attempts, record.id, e)
                    self._emit(TrackerEvent(job_id=record.id, kind="poll_error", status=record.status, error=e))
                except Exception as e:
                    self._log.exception("Poll %d for job %s raised unexpectedly", attempts, record.id)
                    self._emit(TrackerEvent(job_id=record.id, kind="poll_error", status=record.status, error=e))

            if cancelled.is_set():
                # reply arrived after cancellation; drop it
                self._log.debug("Discarding late status for cancelled job %s", record.id)
                self._emit(TrackerEvent(job_id=record.id, kind="cancelled", status=record.status))
                return

            if response is not None:
                try:
                    updated = await self._apply(record, response)
                except Exception:
                    self._log.exception("Could not persist status for job %s; retrying next tick", record.id)
                    unsaved = response
                    updated = record
                else:
                    unsaved = None
                if updated is None:
                    self._log.info("Job %s no longer exists; stopped tracking", record.id)
                    return
                record = updated
                if record.status.is_terminal:
                    return

            if attempts >= self._max_attempts:
                await self._time_out(record, attempts, cancelled)
                return

    async def _apply(self, record: JobRecord, response: TaskStatusResponse) -> Optional[JobRecord]:
        """Fold one status response into the record. Returns None if the record is gone."""
        current = record.status
        status = current
        remote = response.local_status()
        if remote is not None and remote != current:
            if remote == JobStatus.ERROR or _rank(remote) > _rank(current):
                status = remote
            else:
                self._log.debug(
                    "Ignoring stage regression %s -> %s for job %s", current.value, remote.value, record.id
                )

        previous = record.metadata.as_dict()
        metadata = reconcile_metadata(previous, response)
        now = utcnow().isoformat()
        message = response.message if status == JobStatus.ERROR else None
        if status != current:
            metadata = stamp_transition(metadata, status, now, message=message)

        if status == current and metadata == previous:
            return record

        fields = {"status": status.value, "metadata": metadata}
        if status != current:
            fields["last_updated"] = now
        row = await self._store.update(record.id, fields)
        if row is None:
            return None
        updated = JobRecord.from_row(row)

        if status == current:
            return updated

        self._log.info("Job %s: %s -> %s", record.id, current.value, status.value)
        self._emit(TrackerEvent(job_id=record.id, kind="transition", status=status))
        if status == JobStatus.COMPLETED:
            dashboard_url = updated.metadata.dashboard_url
            if dashboard_url:
                self._log.info("Job %s completed; dashboard at %s", record.id, dashboard_url)
            else:
                self._log.info("Job %s completed without a dashboard", record.id)
            self._emit(TrackerEvent(
                job_id=record.id, kind="completed", status=status, dashboard_url=dashboard_url,
            ))
        elif status == JobStatus.ERROR:
            failure = RemoteFailure(updated.metadata.error_message or "Unknown error")
            self._log.warning("Job %s failed remotely: %s", record.id, failure)
            self._emit(TrackerEvent(job_id=record.id, kind="failed", status=status, error=failure))
        return updated

    async def _time_out(self, record: JobRecord, attempts: int, cancelled: asyncio.Event) -> None:
        error = TrackingTimeoutError(f"{TIMEOUT_MESSAGE} after {attempts} attempts")
        self._log.warning("Job %s: %s", record.id, error)
        for write in range(1, TIMEOUT_WRITE_ATTEMPTS + 1):
            now = utcnow().isoformat()
            metadata = stamp_transition(record.metadata.as_dict(), JobStatus.ERROR, now, message=TIMEOUT_MESSAGE)
            try:
                row = await self._store.update(
                    record.id,
                    {"status": JobStatus.ERROR.value, "metadata": metadata, "last_updated": now},
                )
            except Exception:
                self._log.exception(
                    "Could not persist timeout for job %s (write %d of %d)", record.id, write, TIMEOUT_WRITE_ATTEMPTS,
                )
                if write == TIMEOUT_WRITE_ATTEMPTS or await self._wait_tick(cancelled):
                    return
                continue
            if row is not None:
                self._emit(TrackerEvent(job_id=record.id, kind="timed_out", status=JobStatus.ERROR, error=error))
            return
