from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator, Tuple

import pytest
from fastapi.testclient import TestClient

from tyreboard.main import app
from tyreboard.services.artifacts import ArtifactStore
from tyreboard.services.events import EventBroker, get_event_broker
from tyreboard.services.jobs import JobService, get_job_service
from tyreboard.services.storage import LocalJsonStorage, TyreRepository, get_repository
from tyreboard.services.tydex import TydexService, get_tydex_service

TEMPLATE = """[HEADER]
PROJECT = '{{ project_name }}'
PROTOCOL = '{{ protocol }}'
RUN = {{ run_number }}
PRESSURE = {{ p | tydex_number }}
LOAD = {{ l | tydex_number }}
"""


@pytest.fixture
def client(tmp_path: Path) -> Generator[Tuple[TestClient, TyreRepository], None, None]:
    """Provide an isolated TestClient with a fresh repository per test."""
    repo = TyreRepository(LocalJsonStorage(tmp_path / "db.json"))
    template_dir = tmp_path / "templates"
    template_dir.mkdir()
    (template_dir / "mf62.tdx.j2").write_text(TEMPLATE, encoding="utf-8")
    repo.set_tydex_template_dir(str(template_dir))
    repo.set_solver_command(f'{sys.executable} -c "import sys; sys.exit(0)" {{job}}')

    artifacts = ArtifactStore(tmp_path / "artifacts")
    broker = EventBroker()
    jobs = JobService(repo, artifacts, broker)
    tydex = TydexService(repo, artifacts)

    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_job_service] = lambda: jobs
    app.dependency_overrides[get_tydex_service] = lambda: tydex
    app.dependency_overrides[get_event_broker] = lambda: broker
    with TestClient(app) as test_client:
        yield test_client, repo
    app.dependency_overrides.clear()


def _seed(api: TestClient) -> str:
    resp = api.post(
        "/api/projects",
        json={"project_name": "Alpha", "protocol": "MF6pt2", "region": "EU", "tyre_size": "205/55R16"},
    )
    assert resp.status_code == 201
    rows = [
        {"number_of_runs": 1, "job": "run1", "old_job": "-", "template_tydex": "mf62.tdx.j2", "tydex_name": "run1.tdx", "p": "2.2", "l": "4000"},
        {"number_of_runs": 2, "job": "run2", "old_job": "run1", "p": "2.4", "l": "4500"},
    ]
    assert api.put("/api/protocols/mf62/rows", json=rows).status_code == 200
    return resp.json()["id"]


def test_project_lifecycle(client: Tuple[TestClient, TyreRepository]) -> None:
    api, _repo = client
    project_id = _seed(api)

    resp = api.get(f"/api/projects/{project_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["project"]["status"] == "Not Started"

    resp = api.post("/api/projects", json={"project_name": "Alpha", "protocol": "FTire"})
    assert resp.status_code == 400

    resp = api.patch(f"/api/projects/{project_id}/status", json={"status": "In Progress"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "In Progress"

    assert api.patch(f"/api/projects/{project_id}/status", json={"status": "Paused"}).status_code == 422
    assert api.get("/api/projects/missing").status_code == 404
    assert len(api.get("/api/projects").json()) == 1


def test_protocol_rows_and_row_lookup(client: Tuple[TestClient, TyreRepository]) -> None:
    api, _repo = client
    _seed(api)

    rows = api.get("/api/protocols/MF6pt2/rows").json()
    assert [row["number_of_runs"] for row in rows] == ["1", "2"]

    resp = api.get("/api/get-row-data", params={"protocol": "mf62", "runNumber": "2"})
    assert resp.status_code == 200
    assert resp.json()["data"]["old_job"] == "run1"

    assert api.get("/api/get-row-data", params={"protocol": "mf62", "runNumber": "7"}).status_code == 404
    assert api.get("/api/protocols/unknown/rows").status_code == 400

    duplicate = [{"number_of_runs": "1"}, {"number_of_runs": "1"}]
    assert api.put("/api/protocols/mf62/rows", json=duplicate).status_code == 400


@pytest.mark.integration
def test_resolve_job_dependencies_runs_solver(client: Tuple[TestClient, TyreRepository]) -> None:
    api, repo = client
    _seed(api)

    resp = api.post("/api/resolve-job-dependencies", json={"projectName": "Alpha", "protocol": "MF6pt2", "runNumber": 2})
    assert resp.status_code == 200
    assert resp.json()["jobs"] == ["run1", "run2"]
    assert repo.is_job_completed("Alpha", "mf62", "run2")

    resp = api.post("/api/resolve-job-dependencies", json={"projectName": "Ghost", "protocol": "mf62", "runNumber": 2})
    assert resp.status_code == 404


def test_generate_and_preview_tydex(client: Tuple[TestClient, TyreRepository]) -> None:
    api, _repo = client
    _seed(api)
    row = api.get("/api/get-row-data", params={"protocol": "mf62", "runNumber": "1"}).json()["data"]

    resp = api.post("/api/generate-tydex", json={"protocol": "MF6pt2", "projectName": "Alpha", "rowData": row})
    assert resp.status_code == 200
    generated = resp.json()["file"]
    assert generated["filename"] == "run1.tdx"
    assert generated["path"].endswith("mf62/2.2_4000/run1.tdx")

    files = api.get("/api/tydex-files", params={"projectName": "Alpha"}).json()
    assert [item["id"] for item in files] == [generated["id"]]

    preview = api.get(f"/api/tydex-files/{generated['id']}/preview").json()
    assert "PROJECT = 'Alpha'" in preview["content"]
    assert "PROTOCOL = 'MF6pt2'" in preview["content"]
    assert "PRESSURE = 2.2" in preview["content"]
    assert "LOAD = 4000" in preview["content"]

    row_two = api.get("/api/get-row-data", params={"protocol": "mf62", "runNumber": "2"}).json()["data"]
    resp = api.post("/api/generate-tydex", json={"protocol": "MF6pt2", "projectName": "Alpha", "rowData": row_two})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "No template_tydex found for this row"
    assert api.get("/api/tydex-files/missing/preview").status_code == 404


def test_run_times_round_trip(client: Tuple[TestClient, TyreRepository]) -> None:
    api, _repo = client
    project_id = _seed(api)

    start = {"projectId": project_id, "projectName": "Alpha", "protocol": "mf62", "runNumber": "1", "startTime": "2024-05-01T10:00:00+00:00"}
    assert api.post("/api/record-run-time", json=start).status_code == 200
    end = {
        "projectName": "Alpha",
        "protocol": "mf62",
        "runNumber": "1",
        "endTime": "2024-05-01T10:01:40+00:00",
        "durationSeconds": 100,
    }
    assert api.post("/api/record-run-time", json=end).status_code == 200

    times = api.get("/api/get-run-times", params={"projectId": project_id, "protocol": "mf62"}).json()
    assert times == [
        {
            "number_of_runs": "1",
            "run_duration_seconds": 100.0,
            "run_start_time": "2024-05-01T10:00:00+00:00",
            "run_end_time": "2024-05-01T10:01:40+00:00",
        }
    ]

    bad = {"projectName": "Ghost", "protocol": "mf62", "runNumber": "1"}
    assert api.post("/api/record-run-time", json=bad).status_code == 400
    negative = dict(end, durationSeconds=-1)
    assert api.post("/api/record-run-time", json=negative).status_code == 422


def test_config_validation(client: Tuple[TestClient, TyreRepository]) -> None:
    api, _repo = client

    config = api.get("/api/config").json()
    assert config["run_finish_timeout_seconds"] == 1200
    assert config["default_run_estimate_seconds"] == 30

    resp = api.patch("/api/config", json={"inter_run_delay_seconds": 2.5, "keepalive_interval_seconds": 5})
    assert resp.status_code == 200
    assert resp.json()["inter_run_delay_seconds"] == 2.5

    assert api.patch("/api/config", json={"solver_command": "abaqus interactive"}).status_code == 400
    assert api.patch("/api/config", json={"run_finish_timeout_seconds": 0}).status_code == 400


def test_stop_all_reports_terminated_jobs(client: Tuple[TestClient, TyreRepository]) -> None:
    api, _repo = client

    resp = api.post("/api/stop-all")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "terminated": 0, "message": "Terminated 0 job(s)"}
