import asyncio

import pytest

from feedback_flow.jobs.errors import PollError, RemoteFailure, TrackingTimeoutError
from feedback_flow.jobs.models import JobRecord, JobStatus
from feedback_flow.jobs.submission import ChainedStageSubmission
from feedback_flow.jobs.tracker import TIMEOUT_MESSAGE, PipelineTracker

from conftest import ScriptedStrategy

pytestmark = pytest.mark.anyio


async def _run(tracker, record):
    assert tracker.start(record) is True
    await tracker.wait(record.id)


async def _load(store, job_id) -> JobRecord:
    return JobRecord.from_row(await store.get(job_id))


async def test_stages_are_followed_to_completion(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([
        {"task_id": "t1", "status": "processing", "current_stage": "processing", "processing_task_id": "p1"},
        {"task_id": "t1", "status": "analyzing", "current_stage": "analysis", "analysis_task_id": "a1"},
        {"task_id": "t1", "status": "completed", "dashboard_url": "https://x/dash/t1"},
    ])
    record = await insert_job()

    await _run(make_tracker(strategy), record)

    final = await _load(store, record.id)
    assert final.status == JobStatus.COMPLETED
    assert final.metadata.task_id == "t1"
    assert final.metadata.processing_task_id == "p1"
    assert final.metadata.analysis_task_id == "a1"
    assert final.metadata.dashboard_url == "https://x/dash/t1"
    assert final.metadata.completed_at is not None
    assert final.last_updated is not None
    assert events.transitions() == ["processing", "analyzing", "completed"]
    completed = [e for e in events.events if e.kind == "completed"]
    assert completed[0].dashboard_url == "https://x/dash/t1"


async def test_repeated_status_is_applied_once(store, make_tracker, insert_job, events, updates):
    processing = {"task_id": "t1", "status": "processing", "processing_task_id": "p1"}
    strategy = ScriptedStrategy([processing, processing, processing, {"task_id": "t1", "status": "completed"}])
    record = await insert_job()

    await _run(make_tracker(strategy), record)

    assert strategy.check_calls == 4
    # one write for entering processing, one for completion
    assert len(updates.updates) == 2
    assert events.transitions() == ["processing", "completed"]
    assert updates.updates[0]["metadata"]["processing_started_at"] == \
        updates.updates[1]["metadata"]["processing_started_at"]


async def test_completion_stops_the_loop_before_a_later_error(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([
        {"task_id": "t1", "status": "completed"},
        {"task_id": "t1", "status": "error", "message": "too late"},
    ])
    record = await insert_job()

    await _run(make_tracker(strategy), record)
    await asyncio.sleep(0.01)

    final = await _load(store, record.id)
    assert final.status == JobStatus.COMPLETED
    assert final.metadata.error_message is None
    assert strategy.check_calls == 1
    assert "failed" not in events.kinds()


async def test_remote_failure_copies_message(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([
        {"task_id": "t1", "status": "processing"},
        {"task_id": "t1", "status": "failed", "message": "Collector quota exceeded"},
        {"task_id": "t1", "status": "completed"},
    ])
    record = await insert_job()

    await _run(make_tracker(strategy), record)

    final = await _load(store, record.id)
    assert final.status == JobStatus.ERROR
    assert final.metadata.error_message == "Collector quota exceeded"
    assert final.metadata.error_time is not None
    assert strategy.check_calls == 2
    failed = [e for e in events.events if e.kind == "failed"]
    assert isinstance(failed[0].error, RemoteFailure)


async def test_timeout_fires_after_exact_ceiling(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "collecting"}])
    record = await insert_job()

    await _run(make_tracker(strategy, max_attempts=4), record)

    final = await _load(store, record.id)
    assert strategy.check_calls == 4
    assert final.status == JobStatus.ERROR
    assert final.metadata.error_message == TIMEOUT_MESSAGE
    assert events.kinds()[-1] == "timed_out"
    assert isinstance(events.events[-1].error, TrackingTimeoutError)


async def test_poll_errors_do_not_fail_the_job(store, make_tracker, insert_job, events, poll_error):
    strategy = ScriptedStrategy([
        poll_error,
        poll_error,
        {"task_id": "t1", "status": "completed"},
    ])
    record = await insert_job()

    await _run(make_tracker(strategy), record)

    final = await _load(store, record.id)
    assert final.status == JobStatus.COMPLETED
    assert events.kinds().count("poll_error") == 2


async def test_poll_errors_still_count_towards_ceiling(store, make_tracker, insert_job):
    strategy = ScriptedStrategy([PollError("dns failure")])
    record = await insert_job()

    await _run(make_tracker(strategy, max_attempts=3), record)

    final = await _load(store, record.id)
    assert strategy.check_calls == 3
    assert final.status == JobStatus.ERROR
    assert final.metadata.error_message == TIMEOUT_MESSAGE


async def test_stage_regression_is_not_applied(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([
        {"task_id": "t1", "status": "analyzing"},
        {"task_id": "t1", "status": "pending", "dashboard_task_id": "d1"},
        {"task_id": "t1", "status": "completed"},
    ])
    record = await insert_job()

    await _run(make_tracker(strategy), record)

    final = await _load(store, record.id)
    assert events.transitions() == ["analyzing", "completed"]
    assert final.metadata.dashboard_task_id == "d1"


async def test_unknown_status_keeps_current_stage(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([
        {"task_id": "t1", "status": "running", "collection_task_id": "c1"},
        {"task_id": "t1", "status": "completed"},
    ])
    record = await insert_job()

    await _run(make_tracker(strategy), record)

    final = await _load(store, record.id)
    assert events.transitions() == ["completed"]
    assert final.metadata.collection_task_id == "c1"


async def test_second_start_for_same_job_is_refused(make_tracker, insert_job):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "collecting"}])
    tracker = make_tracker(strategy, interval=10.0)
    record = await insert_job()

    assert tracker.start(record) is True
    assert tracker.start(record) is False
    assert tracker.active_jobs() == [record.id]

    await tracker.stop()
    assert not tracker.is_tracking(record.id)


async def test_terminal_record_is_not_tracked(make_tracker, insert_job):
    tracker = make_tracker(ScriptedStrategy([{"status": "completed"}]))
    record = await insert_job(status="completed")

    assert tracker.start(record) is False
    assert not tracker.is_tracking(record.id)


async def test_cancel_stops_before_next_tick(make_tracker, insert_job, events):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "collecting"}])
    tracker = make_tracker(strategy, interval=30.0)
    record = await insert_job()

    tracker.start(record)
    await asyncio.sleep(0)
    assert tracker.cancel(record.id) is True
    await asyncio.wait_for(tracker.wait(record.id), timeout=1.0)

    assert strategy.check_calls == 0
    assert events.kinds() == ["started", "cancelled"]
    assert tracker.cancel(record.id) is False


async def test_response_after_cancel_is_discarded(store, make_tracker, insert_job, updates):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "completed"}])
    strategy.gate = asyncio.Event()
    tracker = make_tracker(strategy)
    record = await insert_job()

    tracker.start(record)
    await asyncio.wait_for(strategy.entered.wait(), timeout=1.0)
    tracker.cancel(record.id)
    strategy.gate.set()
    await tracker.wait(record.id)

    final = await _load(store, record.id)
    assert final.status == JobStatus.COLLECTING
    assert updates.updates == []


async def test_deleted_record_ends_loop_quietly(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "processing"}])
    tracker = make_tracker(strategy)
    record = await insert_job()
    await store.delete(record.id)

    await _run(tracker, record)

    assert strategy.check_calls == 1
    assert "timed_out" not in events.kinds()
    assert not tracker.is_tracking(record.id)


async def test_observer_failure_does_not_break_tracking(store, insert_job):
    def broken_observer(event):
        raise RuntimeError("observer down")

    strategy = ScriptedStrategy([{"task_id": "t1", "status": "completed"}])
    tracker = PipelineTracker(store, strategy, interval=0.001, max_attempts=5, observer=broken_observer)
    record = await insert_job()

    await _run(tracker, record)

    assert (await _load(store, record.id)).status == JobStatus.COMPLETED


def test_ceiling_is_derived_from_timeout_and_interval(store):
    tracker = PipelineTracker(store, ScriptedStrategy(), interval=5.0, timeout=600.0)
    assert tracker.max_attempts == 120

    tracker = PipelineTracker(store, ScriptedStrategy(), interval=10.0, timeout=600.0, max_attempts=30)
    assert tracker.max_attempts == 30


def test_zero_interval_needs_explicit_attempts(store):
    with pytest.raises(ValueError):
        PipelineTracker(store, ScriptedStrategy(), interval=0, timeout=600.0)


def _fail_updates(monkeypatch, store, times, when=lambda fields: True):
    real_update = store.update
    left = {"n": times}

    async def update(record_id, fields):
        if left["n"] and when(fields):
            left["n"] -= 1
            raise ConnectionError("store unavailable")
        return await real_update(record_id, fields)

    monkeypatch.setattr(store, "update", update)


async def test_unexpected_check_error_counts_towards_ceiling(store, make_tracker, insert_job, events):
    strategy = ScriptedStrategy([RuntimeError("bad payload")])
    record = await insert_job()

    await _run(make_tracker(strategy, max_attempts=3), record)

    final = await _load(store, record.id)
    assert strategy.check_calls == 3
    assert final.status == JobStatus.ERROR
    assert final.metadata.error_message == TIMEOUT_MESSAGE
    assert events.kinds().count("poll_error") == 3
    assert events.kinds()[-1] == "timed_out"


async def test_malformed_stage_start_reply_ends_in_timeout(
    store, make_tracker, insert_job, remote, analysis_client,
):
    remote.add("GET", "/task/a1", {"task_id": "a1", "status": "completed"})
    remote.add("POST", "/dashboard/a1", {"task_id": "d1", "dashboard_url": {"href": "https://x/d1"}})
    record = await insert_job(status="analyzing", metadata={"task_id": "c1", "analysis_task_id": "a1"})
    tracker = make_tracker(ChainedStageSubmission(analysis_client), max_attempts=3)

    await _run(tracker, record)

    final = await _load(store, record.id)
    assert final.status == JobStatus.ERROR
    assert final.metadata.error_message == TIMEOUT_MESSAGE
    assert not tracker.is_tracking(record.id)


async def test_unsaved_reply_is_replayed_not_polled_again(store, make_tracker, insert_job, monkeypatch):
    strategy = ScriptedStrategy([
        {"task_id": "t1", "status": "processing", "processing_task_id": "p1"},
        {"task_id": "t1", "status": "completed"},
    ])
    record = await insert_job()
    _fail_updates(monkeypatch, store, 1)

    await _run(make_tracker(strategy), record)

    final = await _load(store, record.id)
    assert strategy.check_calls == 2
    assert final.status == JobStatus.COMPLETED
    assert final.metadata.processing_task_id == "p1"


async def test_timeout_write_is_retried(store, make_tracker, insert_job, events, monkeypatch):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "collecting"}])
    record = await insert_job()
    _fail_updates(monkeypatch, store, 2, when=lambda fields: fields.get("status") == "error")

    await _run(make_tracker(strategy, max_attempts=2), record)

    final = await _load(store, record.id)
    assert strategy.check_calls == 2
    assert final.status == JobStatus.ERROR
    assert final.metadata.error_message == TIMEOUT_MESSAGE
    assert events.kinds()[-1] == "timed_out"


async def test_timeout_write_gives_up_after_retries(store, make_tracker, insert_job, events, monkeypatch):
    strategy = ScriptedStrategy([{"task_id": "t1", "status": "collecting"}])
    tracker = make_tracker(strategy, max_attempts=1)
    record = await insert_job()
    _fail_updates(monkeypatch, store, 10, when=lambda fields: fields.get("status") == "error")

    await _run(tracker, record)

    assert (await _load(store, record.id)).status == JobStatus.COLLECTING
    assert "timed_out" not in events.kinds()
    assert not tracker.is_tracking(record.id)
