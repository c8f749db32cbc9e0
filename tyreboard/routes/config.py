from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from tyreboard.schemas import ConfigUpdate
from tyreboard.services.storage import RepositoryDep, TyreRepository

router = APIRouter(prefix="/api", tags=["config"])


@router.get("/config")
async def get_config(repo: TyreRepository = RepositoryDep) -> Dict[str, Any]:
    return repo.get_config()


@router.patch("/config")
async def update_config(payload: ConfigUpdate, repo: TyreRepository = RepositoryDep) -> Dict[str, Any]:
    try:
        if payload.solver_command is not None:
            repo.set_solver_command(payload.solver_command)
        if payload.job_timeout_seconds is not None:
            repo.set_job_timeout_seconds(payload.job_timeout_seconds)
        if payload.keepalive_interval_seconds is not None:
            repo.set_keepalive_interval_seconds(payload.keepalive_interval_seconds)
        if payload.tydex_template_dir is not None:
            repo.set_tydex_template_dir(payload.tydex_template_dir)
        repo.set_queue_timing(
            inter_run_delay_seconds=payload.inter_run_delay_seconds,
            run_finish_timeout_seconds=payload.run_finish_timeout_seconds,
            artifact_grace_seconds=payload.artifact_grace_seconds,
            default_run_estimate_seconds=payload.default_run_estimate_seconds,
            pause_poll_seconds=payload.pause_poll_seconds,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return repo.get_config()
