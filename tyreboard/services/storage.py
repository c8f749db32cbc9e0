from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Depends

from tyreboard.constants import DEFAULT_CONFIG
from tyreboard.schemas import ProjectStatus, validate_protocol_key

STATE_VERSION = 1


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "projects": {},
        "protocol_rows": {},
        "run_times": {},
        "job_records": {},
        "tydex_files": {},
        "config": dict(DEFAULT_CONFIG),
    }


def _run_time_key(project_id: str, protocol: str, run_number: str) -> str:
    return f"{project_id}:{protocol}:{run_number}"


def _job_key(project_name: str, protocol: str, job: str) -> str:
    return f"{project_name}:{protocol}:{job}"


class LocalJsonStorage:
    """Small document store backed by a single JSON file.

    Top-level collections map item ids to JSON objects, roughly the shape of
    the JSONB columns the production database keeps. All writes are
    synchronised via an internal lock and flushed to disk immediately.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        for collection in ("projects", "protocol_rows", "run_times", "job_records", "tydex_files"):
            state.setdefault(collection, {})
        state_config = state.setdefault("config", {})
        for key, value in DEFAULT_CONFIG.items():
            state_config.setdefault(key, value)
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        return self._state.setdefault("config", dict(DEFAULT_CONFIG))

    def update_config(self, **values: Any) -> Dict[str, Any]:
        with self._lock:
            config = self.get_config()
            for key, value in values.items():
                if value is not None:
                    config[key] = value
            self._persist()
            return config

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self._collection(collection).get(item_id)

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            if item_id in self._collection(collection):
                del self._collection(collection)[item_id]
                self._persist()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        return list(self._collection(collection).values())

    def filter(self, collection: str, *, key: str, value: Any) -> List[Dict[str, Any]]:
        return [item for item in self.list(collection) if item.get(key) == value]

    def bulk_delete(self, collection: str, item_ids: Iterable[str]) -> None:
        with self._lock:
            coll = self._collection(collection)
            removed = False
            for item_id in item_ids:
                if item_id in coll:
                    del coll[item_id]
                    removed = True
            if removed:
                self._persist()


class TyreRepository:
    """Repository offering domain-focused helpers on top of LocalJsonStorage."""

    def __init__(self, storage: LocalJsonStorage) -> None:
        self._storage = storage

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        return {
            "solver_command": str(config.get("solver_command", DEFAULT_CONFIG["solver_command"])),
            "job_timeout_seconds": int(config.get("job_timeout_seconds", DEFAULT_CONFIG["job_timeout_seconds"])),
            "keepalive_interval_seconds": float(
                config.get("keepalive_interval_seconds", DEFAULT_CONFIG["keepalive_interval_seconds"])
            ),
            "tydex_template_dir": str(config.get("tydex_template_dir", DEFAULT_CONFIG["tydex_template_dir"])),
            "inter_run_delay_seconds": float(
                config.get("inter_run_delay_seconds", DEFAULT_CONFIG["inter_run_delay_seconds"])
            ),
            "run_finish_timeout_seconds": float(
                config.get("run_finish_timeout_seconds", DEFAULT_CONFIG["run_finish_timeout_seconds"])
            ),
            "artifact_grace_seconds": float(
                config.get("artifact_grace_seconds", DEFAULT_CONFIG["artifact_grace_seconds"])
            ),
            "default_run_estimate_seconds": float(
                config.get("default_run_estimate_seconds", DEFAULT_CONFIG["default_run_estimate_seconds"])
            ),
            "pause_poll_seconds": float(config.get("pause_poll_seconds", DEFAULT_CONFIG["pause_poll_seconds"])),
        }

    def set_solver_command(self, command: str) -> Dict[str, Any]:
        normalized = (command or "").strip()
        if not normalized:
            raise ValueError("Solver command cannot be blank.")
        if "{job}" not in normalized:
            raise ValueError("Solver command must reference the {job} placeholder.")
        self._storage.update_config(solver_command=normalized)
        return self.get_config()

    def set_job_timeout_seconds(self, timeout_seconds: int) -> Dict[str, Any]:
        if timeout_seconds <= 0:
            raise ValueError("Job timeout must be a positive number of seconds.")
        self._storage.update_config(job_timeout_seconds=int(timeout_seconds))
        return self.get_config()

    def set_keepalive_interval_seconds(self, seconds: float) -> Dict[str, Any]:
        if seconds <= 0:
            raise ValueError("Keepalive interval must be positive.")
        self._storage.update_config(keepalive_interval_seconds=float(seconds))
        return self.get_config()

    def set_tydex_template_dir(self, directory: str) -> Dict[str, Any]:
        normalized = (directory or "").strip()
        if not normalized:
            raise ValueError("Tydex template directory cannot be blank.")
        self._storage.update_config(tydex_template_dir=normalized)
        return self.get_config()

    def set_queue_timing(
        self,
        *,
        inter_run_delay_seconds: Optional[float] = None,
        run_finish_timeout_seconds: Optional[float] = None,
        artifact_grace_seconds: Optional[float] = None,
        default_run_estimate_seconds: Optional[float] = None,
        pause_poll_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        if inter_run_delay_seconds is not None and inter_run_delay_seconds < 0:
            raise ValueError("Inter-run delay must be zero or greater.")
        if artifact_grace_seconds is not None and artifact_grace_seconds < 0:
            raise ValueError("Tydex grace period must be zero or greater.")
        for label, value in (
            ("Run finish timeout", run_finish_timeout_seconds),
            ("Default run estimate", default_run_estimate_seconds),
            ("Pause poll interval", pause_poll_seconds),
        ):
            if value is not None and value <= 0:
                raise ValueError(f"{label} must be positive.")
        self._storage.update_config(
            inter_run_delay_seconds=inter_run_delay_seconds,
            run_finish_timeout_seconds=run_finish_timeout_seconds,
            artifact_grace_seconds=artifact_grace_seconds,
            default_run_estimate_seconds=default_run_estimate_seconds,
            pause_poll_seconds=pause_poll_seconds,
        )
        return self.get_config()

    # -- Projects -----------------------------------------------------------------
    def list_projects(self) -> List[Dict[str, Any]]:
        return sorted(self._storage.list("projects"), key=lambda it: it["created_at"], reverse=True)

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("projects", project_id)

    def find_project_by_name(self, project_name: str) -> Optional[Dict[str, Any]]:
        matches = self._storage.filter("projects", key="project_name", value=project_name)
        return matches[0] if matches else None

    def create_project(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.find_project_by_name(payload["project_name"]):
            raise ValueError(f"Project '{payload['project_name']}' already exists.")
        now = _utcnow()
        project_id = str(uuid.uuid4())
        record = {
            "id": project_id,
            "project_name": payload["project_name"],
            "protocol": payload["protocol"],
            "region": payload.get("region"),
            "department": payload.get("department"),
            "tyre_size": payload.get("tyre_size"),
            "inputs": payload.get("inputs") or {},
            "status": ProjectStatus.not_started.value,
            "created_at": now,
            "updated_at": now,
        }
        return self._storage.upsert("projects", project_id, record)

    def update_project_status(self, project_id: str, status: str) -> Optional[Dict[str, Any]]:
        record = self.get_project(project_id)
        if not record:
            return None
        record["status"] = ProjectStatus(status).value
        record["updated_at"] = _utcnow()
        return self._storage.upsert("projects", project_id, record)

    # -- Protocol rows ------------------------------------------------------------
    def list_protocol_rows(self, protocol: str) -> List[Dict[str, Any]]:
        key = validate_protocol_key(protocol)
        table = self._storage.get("protocol_rows", key) or {}
        return list(table.get("rows", []))

    def replace_protocol_rows(self, protocol: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        key = validate_protocol_key(protocol)
        seen = set()
        for row in rows:
            run_number = str(row["number_of_runs"])
            if run_number in seen:
                raise ValueError(f"Duplicate run number '{run_number}' in {key} table.")
            seen.add(run_number)
        record = {"protocol": key, "rows": rows, "updated_at": _utcnow()}
        self._storage.upsert("protocol_rows", key, record)
        return rows

    def get_protocol_row(self, protocol: str, run_number: str) -> Optional[Dict[str, Any]]:
        for row in self.list_protocol_rows(protocol):
            if str(row.get("number_of_runs")) == str(run_number):
                return row
        return None

    # -- Run times ----------------------------------------------------------------
    def record_run_time(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        project_id = payload.get("project_id") or ""
        if not project_id and payload.get("project_name"):
            project = self.find_project_by_name(payload["project_name"])
            project_id = project["id"] if project else ""
        if not project_id:
            raise ValueError("A project id or a known project name is required.")
        protocol = validate_protocol_key(payload.get("protocol") or "")
        run_number = str(payload["run_number"])
        key = _run_time_key(project_id, protocol, run_number)
        record = self._storage.get("run_times", key) or {
            "id": key,
            "project_id": project_id,
            "project_name": payload.get("project_name"),
            "protocol": protocol,
            "number_of_runs": run_number,
            "run_start_time": None,
            "run_end_time": None,
            "run_duration_seconds": None,
        }
        if payload.get("start_time") and not payload.get("end_time"):
            # A new start supersedes the previous attempt.
            record["run_start_time"] = payload["start_time"]
            record["run_end_time"] = None
            record["run_duration_seconds"] = None
        else:
            if payload.get("start_time"):
                record["run_start_time"] = payload["start_time"]
            if payload.get("end_time"):
                record["run_end_time"] = payload["end_time"]
            if payload.get("duration_seconds") is not None:
                record["run_duration_seconds"] = float(payload["duration_seconds"])
        record["updated_at"] = _utcnow()
        return self._storage.upsert("run_times", key, record)

    def list_run_times(self, project_id: str, protocol: str) -> List[Dict[str, Any]]:
        key = validate_protocol_key(protocol)
        items = [
            item
            for item in self._storage.filter("run_times", key="project_id", value=project_id)
            if item.get("protocol") == key
        ]
        return sorted(items, key=lambda it: str(it.get("number_of_runs")))

    # -- Job records --------------------------------------------------------------
    def get_job_record(self, project_name: str, protocol: str, job: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("job_records", _job_key(project_name, protocol, job))

    def is_job_completed(self, project_name: str, protocol: str, job: str) -> bool:
        record = self.get_job_record(project_name, protocol, job)
        return bool(record and record.get("status") == "completed")

    def update_job_record(self, project_name: str, protocol: str, job: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        key = _job_key(project_name, protocol, job)
        record = self._storage.get("job_records", key) or {
            "id": key,
            "project_name": project_name,
            "protocol": protocol,
            "job": job,
            "created_at": _utcnow(),
        }
        record.update({k: v for k, v in payload.items() if v is not None})
        record["updated_at"] = _utcnow()
        return self._storage.upsert("job_records", key, record)

    # -- Tydex files --------------------------------------------------------------
    def create_tydex_file(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = [
            item
            for item in self._storage.filter("tydex_files", key="path", value=payload["path"])
        ]
        file_id = existing[0]["id"] if existing else str(uuid.uuid4())
        record = {
            "id": file_id,
            "project_name": payload["project_name"],
            "protocol": payload["protocol"],
            "run_number": str(payload["run_number"]),
            "filename": payload["filename"],
            "path": payload["path"],
            "url": payload["url"],
            "created_at": _utcnow(),
        }
        return self._storage.upsert("tydex_files", file_id, record)

    def list_tydex_files(self, project_name: Optional[str] = None) -> List[Dict[str, Any]]:
        items = self._storage.list("tydex_files")
        if project_name:
            items = [it for it in items if it.get("project_name") == project_name]
        return sorted(items, key=lambda it: it["created_at"], reverse=True)

    def get_tydex_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("tydex_files", file_id)


_repository: Optional[TyreRepository] = None


def get_repository() -> TyreRepository:
    """FastAPI dependency to retrieve the singleton repository instance."""
    global _repository
    if _repository is None:
        storage_path = Path("dev.tyreboard.json")
        backend = LocalJsonStorage(storage_path)
        _repository = TyreRepository(backend)
    return _repository


RepositoryDep = Depends(get_repository)
