from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from tyreboard.schemas import RunState


def progress_width(status: RunState, pushed: Optional[float] = None) -> int:
    """Width of a row's progress bar for the given status."""
    if pushed is not None:
        return int(round(max(0.0, min(100.0, float(pushed)))))
    if status in (RunState.done, RunState.failed):
        return 100
    if status == RunState.running:
        return 5
    return 0


@dataclass
class RowEntry:
    run: str
    data: Dict[str, Any] = field(default_factory=dict)
    trigger_enabled: bool = True
    artifact_available: bool = False
    progress: int = 0
    message: str = ""
    folder: Optional[str] = None


class RowRegistry:
    """Ordered run identifiers of the protocol table currently on the board."""

    def __init__(self, rows: Iterable[Dict[str, Any]] = ()) -> None:
        self._entries: Dict[str, RowEntry] = {}
        self.load(rows)

    def load(self, rows: Iterable[Dict[str, Any]]) -> List[str]:
        entries: Dict[str, RowEntry] = {}
        for row in rows:
            run = str(row.get("number_of_runs", "")).strip()
            if not run:
                raise ValueError("Every protocol row needs a run number.")
            if run in entries:
                raise ValueError(f"Duplicate run number '{run}' in protocol table.")
            entries[run] = RowEntry(run=run, data=dict(row))
        self._entries = entries
        return self.run_ids

    @property
    def run_ids(self) -> List[str]:
        return list(self._entries.keys())

    def __contains__(self, run: object) -> bool:
        return str(run) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, run: str) -> Optional[RowEntry]:
        return self._entries.get(str(run))

    def row_data(self, run: str) -> Dict[str, Any]:
        entry = self.get(run)
        return dict(entry.data) if entry else {}

    def ordered(self, run_ids: Iterable[str]) -> List[str]:
        """Restrict `run_ids` to known rows, in table order."""
        wanted = {str(run) for run in run_ids}
        return [run for run in self._entries if run in wanted]

    def is_trigger_available(self, run: str) -> bool:
        entry = self.get(run)
        return bool(entry and entry.trigger_enabled)

    def set_trigger_enabled(self, run: str, enabled: bool) -> None:
        entry = self.get(run)
        if entry:
            entry.trigger_enabled = enabled

    def is_artifact_available(self, run: str) -> bool:
        entry = self.get(run)
        return bool(entry and entry.artifact_available)

    def set_artifact_available(self, run: str, available: bool) -> None:
        entry = self.get(run)
        if entry:
            entry.artifact_available = available

    def set_message(self, run: str, message: str) -> None:
        entry = self.get(run)
        if entry:
            entry.message = message

    def set_progress(self, run: str, status: RunState, pushed: Optional[float] = None) -> int:
        width = progress_width(status, pushed)
        entry = self.get(run)
        if entry:
            entry.progress = width
        return width

    def set_folder(self, run: str, folder: Optional[str]) -> None:
        entry = self.get(run)
        if entry and folder:
            entry.folder = folder
