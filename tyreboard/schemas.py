from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tyreboard.constants import PROTOCOL_KEYS


class ProjectStatus(str, Enum):
    not_started = "Not Started"
    in_progress = "In Progress"
    completed = "Completed"
    archived = "Archived"


class ProjectBase(BaseModel):
    project_name: str
    protocol: str
    region: Optional[str] = None
    department: Optional[str] = None
    tyre_size: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class ProjectCreate(ProjectBase):
    pass


class Project(ProjectBase):
    id: str
    status: ProjectStatus = ProjectStatus.not_started
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class ProjectStatusUpdate(BaseModel):
    status: ProjectStatus


class ProtocolRow(BaseModel):
    """One row of a protocol test matrix; extra protocol columns are kept."""

    number_of_runs: str
    job: str = ""
    old_job: str = ""
    template_tydex: str = ""
    tydex_name: str = ""
    p: str = ""
    l: str = ""  # noqa: E741
    inputs: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @field_validator("number_of_runs", mode="before")
    @classmethod
    def coerce_run_number(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("Run number is required.")
        return str(value).strip()

    @property
    def folder_name(self) -> str:
        return f"{self.p}_{self.l}"


class RowDataResponse(BaseModel):
    success: bool = True
    data: ProtocolRow


class ResolveJobRequest(BaseModel):
    project_name: str = Field(alias="projectName")
    protocol: str
    run_number: str = Field(alias="runNumber")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("run_number", mode="before")
    @classmethod
    def coerce_run_number(cls, value: Any) -> str:
        return str(value)


class JobResult(BaseModel):
    success: bool
    message: str = ""
    jobs: List[str] = Field(default_factory=list)


class TydexRequest(BaseModel):
    protocol: str
    project_name: str = Field(alias="projectName")
    row_data: ProtocolRow = Field(alias="rowData")

    model_config = ConfigDict(populate_by_name=True)


class TydexFile(BaseModel):
    id: str
    project_name: str
    protocol: str
    run_number: str
    filename: str
    path: str
    url: str
    created_at: str


class TydexResult(BaseModel):
    success: bool
    message: str = ""
    file: Optional[TydexFile] = None


class TydexPreview(BaseModel):
    file: TydexFile
    content: str


class RunTimePayload(BaseModel):
    """Start and/or end of one run as reported by the run board."""

    project_id: Optional[str] = Field(default=None, alias="projectId")
    project_name: Optional[str] = Field(default=None, alias="projectName")
    protocol: Optional[str] = None
    run_number: str = Field(alias="runNumber")
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    duration_seconds: Optional[float] = Field(default=None, alias="durationSeconds", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("run_number", mode="before")
    @classmethod
    def coerce_run_number(cls, value: Any) -> str:
        return str(value)


class RunTime(BaseModel):
    number_of_runs: str
    run_duration_seconds: Optional[float] = None
    run_start_time: Optional[str] = None
    run_end_time: Optional[str] = None


class StopAllResult(BaseModel):
    success: bool
    terminated: int = 0
    message: str = ""


class ConfigUpdate(BaseModel):
    solver_command: Optional[str] = None
    job_timeout_seconds: Optional[int] = None
    keepalive_interval_seconds: Optional[float] = None
    tydex_template_dir: Optional[str] = None
    inter_run_delay_seconds: Optional[float] = None
    run_finish_timeout_seconds: Optional[float] = None
    artifact_grace_seconds: Optional[float] = None
    default_run_estimate_seconds: Optional[float] = None
    pause_poll_seconds: Optional[float] = None


# -- Run board -------------------------------------------------------------------


class RunState(str, Enum):
    not_started = "not_started"
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"
    skipped = "skipped"
    stopping = "stopping"


TERMINAL_STATES = frozenset({RunState.done, RunState.failed, RunState.skipped})
PUSHED_STATES = frozenset({RunState.queued, RunState.running, RunState.done, RunState.failed})

BADGE_TEXT = {
    RunState.queued: "Q",
    RunState.running: "...",
    RunState.done: "OK",
    RunState.failed: "ERR",
    RunState.skipped: "SKP",
    RunState.stopping: "STOP",
}


class LiveMode(str, Enum):
    running = "running"
    queued = "queued"
    failed = "failed"
    done = "done"
    idle = "idle"


class RunStatusEvent(BaseModel):
    run: str
    status: RunState
    progress: Optional[float] = None
    message: Optional[str] = None
    folder: Optional[str] = None

    @field_validator("run", mode="before")
    @classmethod
    def coerce_run(cls, value: Any) -> str:
        return str(value)

    @field_validator("status")
    @classmethod
    def validate_pushed(cls, value: RunState) -> RunState:
        if value not in PUSHED_STATES:
            raise ValueError(f"Status '{value.value}' cannot be pushed by the server.")
        return value


class AggregateCounts(BaseModel):
    queued: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0
    stopping: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.done + self.failed

    @property
    def percentage(self) -> int:
        total = self.total
        if total == 0:
            return 0
        return int(round(self.done / total * 100))

    @property
    def mode(self) -> LiveMode:
        if self.running > 0:
            return LiveMode.running
        if self.queued > 0:
            return LiveMode.queued
        if self.failed > 0:
            return LiveMode.failed
        if self.done > 0:
            return LiveMode.done
        return LiveMode.idle

    @property
    def summary(self) -> str:
        if self.running:
            return f"Running {self.running} test(s)"
        if self.queued:
            return f"Queued {self.queued} test(s)"
        if self.done:
            return "Idle — recent runs done"
        return "Idle"

    @property
    def counts_line(self) -> str:
        return f"Queued: {self.queued} • Running: {self.running} • Done: {self.done} • Failed: {self.failed}"


class LiveSummary(BaseModel):
    counts: AggregateCounts
    summary: str
    mode: LiveMode
    progress_width: int
    connected: bool = True

    @classmethod
    def from_counts(cls, counts: AggregateCounts, *, connected: bool = True) -> "LiveSummary":
        if not connected:
            return cls(
                counts=counts,
                summary="Live updates disconnected",
                mode=LiveMode.idle,
                progress_width=counts.percentage,
                connected=False,
            )
        return cls(
            counts=counts,
            summary=counts.summary,
            mode=counts.mode,
            progress_width=counts.percentage,
        )


def validate_protocol_key(value: str) -> str:
    key = (value or "").strip().lower()
    if key not in PROTOCOL_KEYS:
        raise ValueError(f"Unknown protocol '{value}'")
    return key
