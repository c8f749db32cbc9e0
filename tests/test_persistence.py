from __future__ import annotations

import pytest

from conftest import FakeRunBoardClient, make_rows
from tyreboard.runboard.api_client import RunBoardAPIError
from tyreboard.runboard.badges import BadgeStore
from tyreboard.runboard.persistence import PersistenceBridge
from tyreboard.runboard.rows import RowRegistry
from tyreboard.schemas import RunState


def _bridge(client, protocol_key=None):
    registry = RowRegistry(client.rows)
    badges = BadgeStore(registry.run_ids)
    bridge = PersistenceBridge(
        client,
        badges,
        registry,
        project_id="p-1",
        project_name="Alpha",
        protocol_key=protocol_key,
    )
    return bridge, badges


@pytest.mark.unit
@pytest.mark.asyncio
async def test_saved_times_mark_runs_done() -> None:
    client = FakeRunBoardClient(make_rows("1", "2", "3", "4"))
    client.run_times = [
        {"number_of_runs": "1", "run_duration_seconds": 95.0},
        {
            "number_of_runs": "2",
            "run_duration_seconds": None,
            "run_start_time": "2024-05-01T10:00:00+00:00",
            "run_end_time": "2024-05-01T10:02:30+00:00",
        },
        {"number_of_runs": "3", "run_duration_seconds": 0, "run_start_time": "2024-05-01T10:00:00+00:00"},
        {"number_of_runs": "99", "run_duration_seconds": 10},
    ]
    bridge, badges = _bridge(client)

    assert await bridge.fetch_and_apply_saved_times() == 2

    assert bridge.protocol_key == "mf62"
    assert badges.status("1") == RunState.done
    assert badges.duration("1") == 95.0
    assert badges.status("2") == RunState.done
    assert badges.duration("2") == 150.0
    assert badges.status("3") == RunState.not_started
    assert badges.duration("3") == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_protocol_skips_saved_times() -> None:
    client = FakeRunBoardClient(make_rows("1"))
    client.project["protocol"] = "Bespoke"
    client.run_times = [{"number_of_runs": "1", "run_duration_seconds": 5}]
    bridge, badges = _bridge(client)

    assert await bridge.fetch_and_apply_saved_times() == 0
    assert badges.status("1") == RunState.not_started


@pytest.mark.unit
@pytest.mark.asyncio
async def test_record_run_time_payload_and_failures() -> None:
    client = FakeRunBoardClient(make_rows("7"))
    bridge, _badges = _bridge(client, protocol_key="ftire")

    assert await bridge.record_run_time("7", start_time="2024-05-01T10:00:00+00:00") is True
    assert client.recorded[0] == {
        "projectId": "p-1",
        "projectName": "Alpha",
        "protocol": "ftire",
        "runNumber": "7",
        "startTime": "2024-05-01T10:00:00+00:00",
    }

    client.record_error = RunBoardAPIError(0, "Request failed: offline")
    assert await bridge.record_run_time("7", end_time="x", duration_seconds=1.23456) is False

    client.record_error = None
    bridge.record_run_time_nowait("7", end_time="y", duration_seconds=12.0)
    await bridge.flush()
    assert client.recorded[-1]["durationSeconds"] == 12.0
