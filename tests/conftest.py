import asyncio
import json
from typing import Any, Dict, List, Optional, Union

import httpx
import pytest

from feedback_flow.jobs.errors import PollError, SubmissionError
from feedback_flow.jobs.models import JobRecord, SubmitResult, TaskStatusResponse
from feedback_flow.jobs.submission import SubmissionStrategy
from feedback_flow.jobs.tracker import PipelineTracker, TrackerEvent
from feedback_flow.remote.analysis_client import AnalysisClient
from feedback_flow.storage.memory_store import InMemoryRecordStore


@pytest.fixture
def anyio_backend():
    # the tracker is built on asyncio primitives
    return "asyncio"


Scripted = Union[TaskStatusResponse, Dict[str, Any], Exception]


class ScriptedStrategy(SubmissionStrategy):
    """Strategy double: returns canned submit results and status responses in order.

    Once the script runs out the last entry is repeated.
    """

    def __init__(
        self,
        responses: Optional[List[Scripted]] = None,
        task_id: str = "t1",
        submit_error: Optional[str] = None,
    ):
        super().__init__(client=None)
        self.responses = list(responses or [])
        self.task_id = task_id
        self.submit_error = submit_error
        self.submit_calls = 0
        self.check_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    async def submit(self, record: JobRecord) -> SubmitResult:
        self.submit_calls += 1
        if self.submit_error:
            raise SubmissionError(self.submit_error)
        return SubmitResult(task_id=self.task_id, status="pending")

    async def check(self, record: JobRecord) -> TaskStatusResponse:
        self.check_calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        index = min(self.check_calls - 1, len(self.responses) - 1)
        item = self.responses[index]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, dict):
            return TaskStatusResponse.model_validate(item)
        return item


class EventLog:
    def __init__(self):
        self.events: List[TrackerEvent] = []

    def __call__(self, event: TrackerEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]

    def transitions(self) -> List[str]:
        return [e.status.value for e in self.events if e.kind == "transition"]


class UpdateCounter:
    def __init__(self):
        self.updates: List[Dict[str, Any]] = []

    def __call__(self, change) -> None:
        if change.event == "UPDATE":
            self.updates.append(change.row)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
async def updates(store):
    counter = UpdateCounter()
    await store.subscribe(counter)
    return counter


@pytest.fixture
def make_tracker(store, events):
    def _make(strategy, interval: float = 0.001, max_attempts: int = 50, **kwargs):
        return PipelineTracker(
            store,
            strategy,
            interval=interval,
            max_attempts=max_attempts,
            observer=events,
            **kwargs,
        )

    return _make


@pytest.fixture
def insert_job(store):
    async def _insert(status: str = "collecting", metadata: Any = None, **extra) -> JobRecord:
        row = await store.insert({
            "name": "Launch Feedback",
            "url": "https://forum.example.com/t/123",
            "type": "forum",
            "status": status,
            "metadata": {"task_id": "t1"} if metadata is None else metadata,
            **extra,
        })
        return JobRecord.from_row(row)

    return _insert


class FakeAnalysisService:
    """Routes httpx requests to canned responses and records every call."""

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, path: str, response: Any) -> None:
        self.routes[f"{method} {path}"] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path.removeprefix("/api/v1")
        route = self.routes.get(f"{request.method} {path}")
        if route is None:
            return httpx.Response(404, json={"detail": "not found"})
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def paths(self) -> List[str]:
        return [f"{r.method} {r.url.path.removeprefix('/api/v1')}" for r in self.calls]

    def body(self, index: int) -> Dict[str, Any]:
        return json.loads(self.calls[index].content)


@pytest.fixture
def remote():
    return FakeAnalysisService()


@pytest.fixture
async def analysis_client(remote):
    client = AnalysisClient(
        "http://analysis.test/api/v1",
        timeout=5.0,
        transport=httpx.MockTransport(remote.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def poll_error():
    return PollError("connection reset")
