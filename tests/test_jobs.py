from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Tuple

import pytest

from tyreboard.services.artifacts import ArtifactStore
from tyreboard.services.events import EventBroker
from tyreboard.services.jobs import JobService
from tyreboard.services.storage import LocalJsonStorage, TyreRepository

# Exits non-zero for jobs named "bad*", sleeps for jobs named "slow*".
SOLVER = (
    f'{sys.executable} -c "import sys, time; job = sys.argv[1]; '
    "time.sleep(5) if job.startswith('slow') else None; "
    "sys.exit(1 if job.startswith('bad') else 0)\" {job}"
)


def _setup(tmp_path: Path, rows) -> Tuple[JobService, TyreRepository, "asyncio.Queue[str]"]:
    repo = TyreRepository(LocalJsonStorage(tmp_path / "db.json"))
    repo.set_solver_command(SOLVER)
    repo.create_project({"project_name": "Alpha", "protocol": "MF6pt2"})
    repo.replace_protocol_rows("mf62", rows)
    broker = EventBroker()
    frames = broker.subscribe()
    service = JobService(repo, ArtifactStore(tmp_path / "artifacts"), broker)
    return service, repo, frames


def _events(frames: "asyncio.Queue[str]") -> List[dict]:
    events = []
    while not frames.empty():
        frame = frames.get_nowait()
        data_line = [line for line in frame.splitlines() if line.startswith("data: ")][0]
        events.append(json.loads(data_line[len("data: "):]))
    return events


@pytest.mark.integration
@pytest.mark.asyncio
async def test_dependency_runs_before_job_once(tmp_path: Path) -> None:
    rows = [
        {"number_of_runs": "1", "job": "base", "old_job": "-", "p": "1", "l": "100"},
        {"number_of_runs": "2", "job": "second", "old_job": "base", "p": "2", "l": "100"},
    ]
    service, repo, frames = _setup(tmp_path, rows)

    report = await service.resolve_and_execute("Alpha", "MF6pt2", "2")
    assert report.success is True
    assert report.jobs == ["base", "second"]
    assert repo.is_job_completed("Alpha", "mf62", "base")

    report = await service.resolve_and_execute("Alpha", "mf62", "2")
    assert report.jobs == ["second"]

    statuses = [event["status"] for event in _events(frames) if event["run"] == "2"]
    assert statuses[:4] == ["queued", "running", "running", "done"]
    log = tmp_path / "artifacts" / "projects" / "Alpha" / "mf62" / "2_100" / "second.log"
    assert "COMMAND:" in log.read_text()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failed_dependency_fails_the_run(tmp_path: Path) -> None:
    rows = [{"number_of_runs": "3", "job": "third", "old_job": "bad_base", "p": "3", "l": "80"}]
    service, repo, frames = _setup(tmp_path, rows)

    report = await service.resolve_and_execute("Alpha", "mf62", "3")

    assert report.success is False
    assert report.jobs == ["bad_base"]
    assert "Dependency job bad_base failed" in report.message
    assert repo.get_job_record("Alpha", "mf62", "bad_base")["status"] == "failed"
    assert _events(frames)[-1]["status"] == "failed"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_timeout_kills_the_solver(tmp_path: Path) -> None:
    rows = [{"number_of_runs": "4", "job": "slow_job", "old_job": "-", "p": "4", "l": "80"}]
    service, repo, _frames = _setup(tmp_path, rows)
    repo.set_job_timeout_seconds(1)

    report = await service.resolve_and_execute("Alpha", "mf62", "4")

    assert report.success is False
    assert "timed out" in report.message


@pytest.mark.integration
@pytest.mark.asyncio
async def test_terminate_all_stops_running_jobs(tmp_path: Path) -> None:
    rows = [{"number_of_runs": "5", "job": "slow_five", "old_job": "-", "p": "5", "l": "80"}]
    service, _repo, _frames = _setup(tmp_path, rows)

    task = asyncio.create_task(service.resolve_and_execute("Alpha", "mf62", "5"))
    for _ in range(200):
        if service.active_jobs:
            break
        await asyncio.sleep(0.01)

    assert service.terminate_all() == 1
    report = await task
    assert report.success is False
    assert report.message == "Job terminated by stop-all request"
    assert service.active_jobs == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_rows_and_projects_raise(tmp_path: Path) -> None:
    service, _repo, _frames = _setup(tmp_path, [{"number_of_runs": "1", "job": "", "p": "1", "l": "1"}])

    with pytest.raises(LookupError):
        await service.resolve_and_execute("Nobody", "mf62", "1")
    with pytest.raises(LookupError):
        await service.resolve_and_execute("Alpha", "mf62", "9")
    with pytest.raises(ValueError):
        await service.resolve_and_execute("Alpha", "mf62", "1")
    with pytest.raises(ValueError):
        await service.resolve_and_execute("Alpha", "nope", "1")
