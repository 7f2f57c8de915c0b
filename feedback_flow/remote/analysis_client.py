"""HTTP client for the remote feedback analysis service.

The service runs collect/process/analyze/dashboard stages asynchronously and
exposes per-task status. Every method returns decoded JSON (or HTML text for
the dashboard fragment) and raises RemoteServiceError on any transport,
status-code or decoding problem.
"""

import logging
from typing import Any, Dict, Optional, Union

import httpx

from feedback_flow.jobs.errors import FeedbackFlowError
from feedback_flow.jobs.models import TaskStatusResponse

logger = logging.getLogger(__name__)


class RemoteServiceError(FeedbackFlowError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AnalysisClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        logger.debug("%s %s", method, path)
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"{method} {path} failed: {e}") from e
        if response.is_error:
            raise RemoteServiceError(
                f"{method} {path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    async def _json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteServiceError(f"{method} {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise RemoteServiceError(f"{method} {path} returned {type(data).__name__}, expected object")
        return data

    # -- submission ---------------------------------------------------------

    async def run_pipeline(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Start the whole collect → dashboard pipeline in one call."""
        return await self._json("POST", "/pipeline", json=payload)

    async def collect(self, payload: Dict[str, Any], with_files: bool = False) -> Dict[str, Any]:
        endpoint = "/collect/survey-files" if with_files else "/collect"
        return await self._json("POST", endpoint, json=payload)

    async def process(self, collection_task_id: str) -> Dict[str, Any]:
        return await self._json("POST", f"/process/{collection_task_id}")

    async def analyze(self, processing_task_id: str) -> Dict[str, Any]:
        return await self._json("POST", f"/analyze/{processing_task_id}")

    async def generate_dashboard(
        self,
        analysis_task_id: str,
        include_alerts: bool = True,
        include_report: bool = True,
    ) -> Dict[str, Any]:
        params = {
            "include_alerts": str(include_alerts).lower(),
            "include_report": str(include_report).lower(),
        }
        return await self._json("POST", f"/dashboard/{analysis_task_id}", params=params)

    # -- status and artifacts -----------------------------------------------

    async def get_task(self, task_id: str) -> TaskStatusResponse:
        data = await self._json("GET", f"/task/{task_id}")
        try:
            return TaskStatusResponse.model_validate(data)
        except ValueError as e:
            raise RemoteServiceError(f"Unexpected task status payload for {task_id}") from e

    async def get_dashboard_html(self, task_id: str) -> Union[str, Dict[str, Any]]:
        """Fetch the embeddable dashboard.

        Depending on server configuration this is either a text/html body or
        a JSON document; JSON with an `html` key is unwrapped to the string.
        """
        response = await self._request("GET", f"/dashboard/{task_id}/html")
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data = response.json()
            except ValueError as e:
                raise RemoteServiceError(f"Dashboard for {task_id} returned invalid JSON") from e
            if isinstance(data, dict) and isinstance(data.get("html"), str):
                return data["html"]
            return data
        return response.text

    async def get_report(self, task_id: str) -> Dict[str, Any]:
        return await self._json("GET", f"/report/{task_id}")
