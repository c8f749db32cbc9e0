from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from tyreboard.constants import protocol_key_for_label
from tyreboard.schemas import (
    JobResult,
    Project,
    ProjectCreate,
    ProjectStatusUpdate,
    ProtocolRow,
    ResolveJobRequest,
    RowDataResponse,
    RunTime,
    RunTimePayload,
    StopAllResult,
    TydexFile,
    TydexPreview,
    TydexRequest,
    TydexResult,
)
from tyreboard.services.jobs import JobService, get_job_service
from tyreboard.services.storage import RepositoryDep, TyreRepository
from tyreboard.services.tydex import TydexService, get_tydex_service

LOGGER = logging.getLogger("tyreboard.api")

router = APIRouter(prefix="/api", tags=["api"])


def _protocol_key(protocol: str) -> str:
    try:
        return protocol_key_for_label(protocol)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _ensure_project(repo: TyreRepository, project_id: str) -> Dict[str, Any]:
    project = repo.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


# Projects ------------------------------------------------------------------------
@router.get("/projects", response_model=List[Project])
async def list_projects(repo: TyreRepository = RepositoryDep) -> List[Project]:
    return repo.list_projects()


@router.post("/projects", response_model=Project, status_code=201)
async def create_project(payload: ProjectCreate, repo: TyreRepository = RepositoryDep) -> Project:
    try:
        return repo.create_project(payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/projects/{project_id}")
async def get_project(project_id: str, repo: TyreRepository = RepositoryDep) -> Dict[str, Any]:
    project = _ensure_project(repo, project_id)
    return {"success": True, "project": Project.model_validate(project).model_dump(mode="json")}


@router.patch("/projects/{project_id}/status", response_model=Project)
async def update_project_status(
    project_id: str, payload: ProjectStatusUpdate, repo: TyreRepository = RepositoryDep
) -> Project:
    record = repo.update_project_status(project_id, payload.status.value)
    if not record:
        raise HTTPException(status_code=404, detail="Project not found")
    return record


# Protocol tables -----------------------------------------------------------------
@router.get("/protocols/{protocol}/rows", response_model=List[ProtocolRow])
async def list_protocol_rows(protocol: str, repo: TyreRepository = RepositoryDep) -> List[ProtocolRow]:
    return repo.list_protocol_rows(_protocol_key(protocol))


@router.put("/protocols/{protocol}/rows", response_model=List[ProtocolRow])
async def replace_protocol_rows(
    protocol: str, rows: List[ProtocolRow], repo: TyreRepository = RepositoryDep
) -> List[ProtocolRow]:
    key = _protocol_key(protocol)
    try:
        return repo.replace_protocol_rows(key, [row.model_dump() for row in rows])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/get-row-data", response_model=RowDataResponse)
async def get_row_data(
    protocol: str,
    run_number: str = Query(alias="runNumber"),
    repo: TyreRepository = RepositoryDep,
) -> RowDataResponse:
    row = repo.get_protocol_row(_protocol_key(protocol), run_number)
    if not row:
        raise HTTPException(status_code=404, detail=f"Run {run_number} not found")
    return RowDataResponse(data=ProtocolRow.model_validate(row))


# Jobs ----------------------------------------------------------------------------
@router.post("/resolve-job-dependencies", response_model=JobResult)
async def resolve_job_dependencies(
    payload: ResolveJobRequest, jobs: JobService = Depends(get_job_service)
) -> JobResult:
    try:
        report = await jobs.resolve_and_execute(payload.project_name, payload.protocol, payload.run_number)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not report.success:
        LOGGER.warning("Run %s (%s) failed: %s", payload.run_number, payload.project_name, report.message)
        raise HTTPException(status_code=500, detail=report.message)
    return JobResult(success=True, message=report.message, jobs=report.jobs)


@router.post("/stop-all", response_model=StopAllResult)
async def stop_all(jobs: JobService = Depends(get_job_service)) -> StopAllResult:
    terminated = jobs.terminate_all()
    return StopAllResult(success=True, terminated=terminated, message=f"Terminated {terminated} job(s)")


# Tydex ---------------------------------------------------------------------------
@router.post("/generate-tydex", response_model=TydexResult)
async def generate_tydex(
    payload: TydexRequest, tydex: TydexService = Depends(get_tydex_service)
) -> TydexResult:
    try:
        record = tydex.generate(payload.protocol, payload.project_name, payload.row_data.model_dump())
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ValueError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TydexResult(success=True, message=f"Generated {record['filename']}", file=record)


@router.get("/tydex-files", response_model=List[TydexFile])
async def list_tydex_files(
    project_name: Optional[str] = Query(default=None, alias="projectName"),
    repo: TyreRepository = RepositoryDep,
) -> List[TydexFile]:
    return repo.list_tydex_files(project_name)


@router.get("/tydex-files/{file_id}/preview", response_model=TydexPreview)
async def preview_tydex_file(file_id: str, tydex: TydexService = Depends(get_tydex_service)) -> TydexPreview:
    try:
        return tydex.read(file_id)
    except (LookupError, FileNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# Run times -----------------------------------------------------------------------
@router.post("/record-run-time", response_model=RunTime)
async def record_run_time(payload: RunTimePayload, repo: TyreRepository = RepositoryDep) -> RunTime:
    try:
        return repo.record_run_time(payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/get-run-times", response_model=List[RunTime])
async def get_run_times(
    project_id: str = Query(alias="projectId"),
    protocol: str = Query(...),
    repo: TyreRepository = RepositoryDep,
) -> List[RunTime]:
    _ensure_project(repo, project_id)
    return repo.list_run_times(project_id, _protocol_key(protocol))
