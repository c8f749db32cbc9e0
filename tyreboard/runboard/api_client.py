"""HTTP client the run board uses to talk to the tyreboard server.

All methods are async (httpx.AsyncClient), return parsed JSON and raise
RunBoardAPIError on HTTP errors. Transport failures use status code 0.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

LOGGER = logging.getLogger("tyreboard.client")


class RunBoardAPIError(Exception):
    """Raised when the server answers with an error or cannot be reached."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Run board API error {status_code}: {detail}")


@dataclass
class ServerEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)


class SSEDecoder:
    """Assemble `event:`/`data:` lines into named events."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[ServerEvent]:
        line = line.rstrip("\r")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value.strip()
        elif name == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Optional[ServerEvent]:
        if not self._data and self._event is None:
            return None
        event = self._event or "message"
        raw = "\n".join(self._data)
        self._event = None
        self._data = []
        try:
            payload = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            LOGGER.debug("Ignoring malformed %s event payload: %r", event, raw)
            return None
        if not isinstance(payload, dict):
            payload = {"value": payload}
        return ServerEvent(event=event, data=payload)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)


class RunBoardClient:
    """HTTP client for the tyreboard REST API and its event stream."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 30.0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self._transport,
                )
            return self._client

    async def close(self) -> None:
        async with self._lock:
            if self._client:
                await self._client.aclose()
                self._client = None

    async def _request(self, method: str, path: str, **kwargs) -> Union[Dict[str, Any], List[Any]]:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise RunBoardAPIError(0, f"Request failed: {exc}") from exc
        if response.is_error:
            raise RunBoardAPIError(response.status_code, _error_detail(response))
        if response.status_code == 204:
            return {}
        return response.json()

    async def get_config(self) -> Dict[str, Any]:
        """GET /api/config"""
        return await self._request("GET", "/api/config")

    # -- Projects and tables ------------------------------------------------------
    async def get_project(self, project_id: str) -> Dict[str, Any]:
        """GET /api/projects/{id}"""
        data = await self._request("GET", f"/api/projects/{project_id}")
        return data.get("project") or {}

    async def list_protocol_rows(self, protocol: str) -> List[Dict[str, Any]]:
        """GET /api/protocols/{protocol}/rows"""
        return await self._request("GET", f"/api/protocols/{protocol}/rows")

    async def get_row_data(self, protocol: str, run_number: str) -> Dict[str, Any]:
        """GET /api/get-row-data"""
        data = await self._request(
            "GET",
            "/api/get-row-data",
            params={"protocol": protocol, "runNumber": str(run_number)},
        )
        return data.get("data") or {}

    # -- Execution ----------------------------------------------------------------
    async def resolve_and_execute(self, project_name: str, protocol: str, run_number: str) -> Dict[str, Any]:
        """POST /api/resolve-job-dependencies"""
        payload = {"projectName": project_name, "protocol": protocol, "runNumber": str(run_number)}
        # Solver jobs outlive the default request timeout.
        return await self._request("POST", "/api/resolve-job-dependencies", json=payload, timeout=None)

    async def generate_tydex(self, protocol_label: str, project_name: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """POST /api/generate-tydex"""
        payload = {"protocol": protocol_label, "projectName": project_name, "rowData": row}
        return await self._request("POST", "/api/generate-tydex", json=payload)

    async def terminate_all(self) -> Dict[str, Any]:
        """POST /api/stop-all"""
        return await self._request("POST", "/api/stop-all")

    # -- Run times ----------------------------------------------------------------
    async def record_run_time(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST /api/record-run-time"""
        return await self._request("POST", "/api/record-run-time", json=payload)

    async def get_run_times(self, project_id: str, protocol: str) -> List[Dict[str, Any]]:
        """GET /api/get-run-times"""
        return await self._request(
            "GET",
            "/api/get-run-times",
            params={"projectId": project_id, "protocol": protocol},
        )

    # -- Live events --------------------------------------------------------------
    async def stream_events(self) -> AsyncIterator[ServerEvent]:
        """Yield server-sent events from GET /events until the stream ends."""
        client = await self._get_client()
        decoder = SSEDecoder()
        try:
            async with client.stream(
                "GET",
                "/events",
                headers={"Accept": "text/event-stream"},
                timeout=None,
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise RunBoardAPIError(response.status_code, _error_detail(response))
                async for line in response.aiter_lines():
                    event = decoder.feed(line)
                    if event is not None:
                        yield event
                tail = decoder.feed("")
                if tail is not None:
                    yield tail
        except httpx.RequestError as exc:
            raise RunBoardAPIError(0, f"Event stream failed: {exc}") from exc
