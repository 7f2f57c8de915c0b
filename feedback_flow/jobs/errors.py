"""Error taxonomy for submission and pipeline tracking."""

from typing import Any, Optional


class FeedbackFlowError(Exception):
    """Base class for all service errors."""


class ValidationError(FeedbackFlowError):
    """Submission input was malformed or disallowed. Nothing was persisted."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class SubmissionError(FeedbackFlowError):
    """The remote service rejected or never received the initial job request.

    `record` is the already-persisted job record, now marked as error.
    """

    def __init__(self, message: str, record: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.record = record


class PollError(FeedbackFlowError):
    """A single poll tick could not reach the remote service or parse its reply."""


class RemoteFailure(FeedbackFlowError):
    """The remote service reported a failed/error status for the pipeline."""


class TrackingTimeoutError(FeedbackFlowError, TimeoutError):
    """The poll ceiling was reached before the pipeline reached a terminal state."""


class RecordNotFound(FeedbackFlowError):
    def __init__(self, job_id: str):
        super().__init__(f"Job record {job_id} not found")
        self.job_id = job_id


class JobNotReady(FeedbackFlowError):
    """Artifacts were requested for a job that has not completed."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is {status}; results are available once it completes")
        self.job_id = job_id
        self.status = status


class ProjectNotFound(FeedbackFlowError):
    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id
