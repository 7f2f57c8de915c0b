"""Metadata reconciliation between stored job metadata and remote task status.

`reconcile_metadata` is pure: same inputs, same output, no clock reads.
Timestamps for stage transitions are added separately by `stamp_transition`,
which the tracker only calls when the status actually changes.
"""

from typing import Any, Dict, Mapping, Optional, Union

from feedback_flow.jobs.models import JobStatus, TaskStatusResponse, coerce_metadata

# status lives on the record, message only matters on failure,
# timestamp changes on every poll.
_SKIP_KEYS = frozenset({"status", "message", "timestamp"})


def _deep_merge(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def reconcile_metadata(
    old: Any,
    response: Union[TaskStatusResponse, Mapping[str, Any]],
) -> Dict[str, Any]:
    """Fold a task status response into the previous metadata blob.

    Every non-null field of the response overwrites or adds its key; all
    other stored keys are kept as they were.
    """
    base = coerce_metadata(old)
    if isinstance(response, TaskStatusResponse):
        fields = response.model_dump(exclude_none=True)
    else:
        fields = dict(response)
    fields = {k: v for k, v in fields.items() if k not in _SKIP_KEYS}
    return _deep_merge(base, fields)


def stamp_transition(
    metadata: Dict[str, Any],
    status: JobStatus,
    at: str,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """Record when a status was first entered. Existing stamps are never moved."""
    stamped = dict(metadata)
    if status == JobStatus.COMPLETED:
        stamped.setdefault("completed_at", at)
    elif status == JobStatus.ERROR:
        stamped["error_message"] = message or "Unknown error"
        stamped["error_time"] = at
    else:
        stamped.setdefault(f"{status.value}_started_at", at)
    return stamped
