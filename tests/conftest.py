from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from tyreboard.runboard.api_client import RunBoardAPIError, ServerEvent
from tyreboard.runboard.orchestrator import RunBoardSettings
from tyreboard.runboard.session import RunBoard


def make_rows(*run_numbers: str, **overrides: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows = []
    for index, run in enumerate(run_numbers, start=1):
        row = {
            "number_of_runs": run,
            "job": f"job_{run}",
            "old_job": "-",
            "template_tydex": "",
            "tydex_name": "",
            "p": str(index),
            "l": "100",
        }
        row.update(overrides.get(run, {}))
        rows.append(row)
    return rows


class FakeRunBoardClient:
    """In-memory stand-in for RunBoardClient used by the engine tests."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.rows = rows or []
        self.project: Dict[str, Any] = {"id": "p-1", "project_name": "Alpha", "protocol": "MF6pt2"}
        self.config: Optional[Dict[str, Any]] = None
        self.run_times: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.active: set = set()
        self.max_active = 0
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, RunBoardAPIError] = {}
        self.rejections: Dict[str, str] = {}
        self.lookup_gate: Optional[asyncio.Event] = None
        self.row_lookup_error: Optional[RunBoardAPIError] = None
        self.recorded: List[Dict[str, Any]] = []
        self.record_error: Optional[RunBoardAPIError] = None
        self.tydex_requests: List[Dict[str, Any]] = []
        self.tydex_reply: Dict[str, Any] = {"success": True}
        self.terminated = 0
        self.stream: List[ServerEvent] = []
        self.stream_error: Optional[RunBoardAPIError] = None

    def gate(self, run: str) -> asyncio.Event:
        return self.gates.setdefault(run, asyncio.Event())

    async def get_project(self, project_id: str) -> Dict[str, Any]:
        return dict(self.project)

    async def get_config(self) -> Dict[str, Any]:
        if self.config is None:
            raise RunBoardAPIError(0, "offline")
        return dict(self.config)

    async def list_protocol_rows(self, protocol: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.rows]

    async def get_row_data(self, protocol: str, run_number: str) -> Dict[str, Any]:
        if self.lookup_gate is not None:
            await self.lookup_gate.wait()
        if self.row_lookup_error is not None:
            raise self.row_lookup_error
        for row in self.rows:
            if str(row["number_of_runs"]) == str(run_number):
                return dict(row)
        raise RunBoardAPIError(404, f"Run {run_number} not found")

    async def resolve_and_execute(self, project_name: str, protocol: str, run_number: str) -> Dict[str, Any]:
        self.calls.append(run_number)
        self.active.add(run_number)
        self.max_active = max(self.max_active, len(self.active))
        try:
            gate = self.gates.get(run_number)
            if gate is not None:
                await gate.wait()
            if run_number in self.failures:
                raise self.failures[run_number]
            if run_number in self.rejections:
                return {"success": False, "message": self.rejections[run_number]}
            return {"success": True, "message": "ok", "jobs": [f"job_{run_number}"]}
        finally:
            self.active.discard(run_number)

    async def generate_tydex(self, protocol_label: str, project_name: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self.tydex_requests.append({"protocol": protocol_label, "projectName": project_name, "rowData": row})
        return dict(self.tydex_reply)

    async def terminate_all(self) -> Dict[str, Any]:
        self.terminated += 1
        return {"success": True, "terminated": len(self.active)}

    async def record_run_time(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.record_error is not None:
            raise self.record_error
        self.recorded.append(payload)
        return payload

    async def get_run_times(self, project_id: str, protocol: str) -> List[Dict[str, Any]]:
        return list(self.run_times)

    async def stream_events(self):
        for event in self.stream:
            yield event
        if self.stream_error is not None:
            raise self.stream_error


@pytest.fixture
def fast_settings() -> RunBoardSettings:
    return RunBoardSettings(
        inter_run_delay_seconds=0,
        run_finish_timeout_seconds=2.0,
        artifact_grace_seconds=0,
        default_run_estimate_seconds=30,
        pause_poll_seconds=0.01,
    )


@pytest.fixture
def make_board(fast_settings: RunBoardSettings) -> Callable[..., RunBoard]:
    def _factory(client: FakeRunBoardClient, settings: Optional[RunBoardSettings] = None) -> RunBoard:
        board = RunBoard(
            client,
            project_id="p-1",
            project_name="Alpha",
            protocol_key="mf62",
            settings=settings or fast_settings,
        )
        run_ids = board.registry.load(client.rows)
        board.badges.reset(run_ids)
        return board

    return _factory


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait
