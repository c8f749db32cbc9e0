from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tyreboard.constants import NO_DEPENDENCY_MARKERS, protocol_key_for_label
from tyreboard.services.artifacts import ArtifactStore, get_artifact_store
from tyreboard.services.events import EventBroker, get_event_broker
from tyreboard.services.storage import TyreRepository, get_repository

LOGGER = logging.getLogger("tyreboard.jobs")


def _utcnow() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass
class JobOutcome:
    job: str
    success: bool
    message: str = ""
    return_code: Optional[int] = None
    timed_out: bool = False
    terminated: bool = False


@dataclass
class ExecutionReport:
    success: bool
    message: str = ""
    jobs: List[str] = field(default_factory=list)


class JobService:
    """Run a protocol row's solver job, resolving its dependency job first."""

    def __init__(
        self,
        repo: Optional[TyreRepository] = None,
        artifacts: Optional[ArtifactStore] = None,
        broker: Optional[EventBroker] = None,
    ) -> None:
        self._repo = repo or get_repository()
        self._artifacts = artifacts or get_artifact_store()
        self._broker = broker or get_event_broker()
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._terminated: set[str] = set()
        self._job_locks: Dict[str, asyncio.Lock] = {}

    @property
    def active_jobs(self) -> List[str]:
        return sorted(self._processes.keys())

    def _lock_for(self, job_key: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_key)
        if lock is None:
            lock = asyncio.Lock()
            self._job_locks[job_key] = lock
        return lock

    def _build_command(self, *, job: str, project_name: str, protocol: str, folder: str) -> List[str]:
        template = self._repo.get_config()["solver_command"]
        try:
            command = template.format(job=job, project=project_name, protocol=protocol, folder=folder)
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Solver command has an unknown placeholder: {exc}") from exc
        args = shlex.split(command)
        if not args:
            raise ValueError("Solver command is empty.")
        return args

    async def resolve_and_execute(self, project_name: str, protocol: str, run_number: str) -> ExecutionReport:
        if not self._repo.find_project_by_name(project_name):
            raise LookupError(f"Project '{project_name}' not found")
        protocol_key = protocol_key_for_label(protocol)
        row = self._repo.get_protocol_row(protocol_key, run_number)
        if not row:
            raise LookupError(f"Run {run_number} not found in {protocol_key} table")
        job = str(row.get("job") or "").strip()
        if not job:
            raise ValueError(f"Run {run_number} has no job name")
        folder = f"{row.get('p', '')}_{row.get('l', '')}"
        run = str(run_number)

        self._broker.publish_run_status(run, "queued", folder=folder)
        executed: List[str] = []

        dependency = str(row.get("old_job") or "").strip()
        if dependency not in NO_DEPENDENCY_MARKERS and dependency != job:
            self._broker.publish_run_status(
                run,
                "running",
                progress=5,
                message=f"Running dependency {dependency}",
                folder=folder,
            )
            outcome = await self._run_once(
                job=dependency,
                project_name=project_name,
                protocol=protocol_key,
                folder=folder,
            )
            if outcome is not None:
                executed.append(dependency)
                if not outcome.success:
                    message = f"Dependency job {dependency} failed: {outcome.message}"
                    self._broker.publish_run_status(run, "failed", message=message, folder=folder)
                    return ExecutionReport(success=False, message=message, jobs=executed)

        self._broker.publish_run_status(
            run,
            "running",
            progress=50 if executed else 5,
            message=f"Running {job}",
            folder=folder,
        )
        outcome = await self._run_job(job=job, project_name=project_name, protocol=protocol_key, folder=folder)
        executed.append(job)
        if not outcome.success:
            self._broker.publish_run_status(run, "failed", message=outcome.message, folder=folder)
            return ExecutionReport(success=False, message=outcome.message, jobs=executed)

        self._broker.publish_run_status(run, "done", progress=100, folder=folder)
        return ExecutionReport(success=True, message=f"Job {job} completed", jobs=executed)

    async def _run_once(
        self,
        *,
        job: str,
        project_name: str,
        protocol: str,
        folder: str,
    ) -> Optional[JobOutcome]:
        """Run a dependency job unless it already completed for this project."""
        async with self._lock_for(f"{project_name}:{protocol}:{job}"):
            if self._repo.is_job_completed(project_name, protocol, job):
                LOGGER.info("Dependency %s already completed for %s; reusing", job, project_name)
                return None
            return await self._execute(job=job, project_name=project_name, protocol=protocol, folder=folder)

    async def _run_job(self, *, job: str, project_name: str, protocol: str, folder: str) -> JobOutcome:
        async with self._lock_for(f"{project_name}:{protocol}:{job}"):
            return await self._execute(job=job, project_name=project_name, protocol=protocol, folder=folder)

    async def _execute(self, *, job: str, project_name: str, protocol: str, folder: str) -> JobOutcome:
        job_key = f"{project_name}:{protocol}:{job}"
        args = self._build_command(job=job, project_name=project_name, protocol=protocol, folder=folder)
        timeout = self._repo.get_config()["job_timeout_seconds"]
        workdir = self._artifacts.run_folder(project_name, protocol, folder)
        log_path = workdir / f"{job}.log"
        self._repo.update_job_record(
            project_name,
            protocol,
            job,
            {"status": "running", "started_at": _utcnow(), "folder": folder, "log": self._artifacts.relative(log_path)},
        )
        LOGGER.info("Starting job %s for %s (%s)", job, project_name, " ".join(args))

        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{_utcnow()}] COMMAND: {' '.join(args)}\n")
            handle.flush()
            try:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    cwd=str(workdir),
                    stdout=handle,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as exc:
                message = f"Solver launch failed: {exc}"
                LOGGER.error("Failed to launch job %s: %s", job, exc)
                handle.write(f"[{_utcnow()}] {message}\n")
                self._repo.update_job_record(
                    project_name, protocol, job, {"status": "failed", "completed_at": _utcnow(), "message": message}
                )
                return JobOutcome(job=job, success=False, message=message)

            self._processes[job_key] = process
            outcome = JobOutcome(job=job, success=False)
            try:
                return_code = await asyncio.wait_for(process.wait(), timeout=timeout)
                outcome.return_code = return_code
                if job_key in self._terminated:
                    outcome.terminated = True
                    outcome.message = "Job terminated by stop-all request"
                elif return_code == 0:
                    outcome.success = True
                    outcome.message = f"Job {job} completed"
                else:
                    outcome.message = f"Job {job} exited with code {return_code}"
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                outcome.timed_out = True
                outcome.message = f"Job {job} timed out after {timeout} seconds"
            finally:
                self._processes.pop(job_key, None)
                self._terminated.discard(job_key)
            handle.write(f"[{_utcnow()}] {outcome.message}\n")

        self._repo.update_job_record(
            project_name,
            protocol,
            job,
            {
                "status": "completed" if outcome.success else "failed",
                "completed_at": _utcnow(),
                "return_code": outcome.return_code,
                "message": outcome.message,
            },
        )
        if outcome.success:
            LOGGER.info("Job %s for %s completed", job, project_name)
        else:
            LOGGER.warning("Job %s for %s failed: %s", job, project_name, outcome.message)
        return outcome

    def terminate_all(self) -> int:
        terminated = 0
        for job_key, process in list(self._processes.items()):
            if process.returncode is not None:
                continue
            self._terminated.add(job_key)
            try:
                process.kill()
                terminated += 1
            except ProcessLookupError:
                LOGGER.debug("Job %s exited before it could be terminated", job_key)
        LOGGER.info("Stop-all terminated %s job(s)", terminated)
        return terminated


_job_service: Optional[JobService] = None


def get_job_service() -> JobService:
    global _job_service
    if _job_service is None:
        _job_service = JobService()
    return _job_service
