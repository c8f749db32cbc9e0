from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from tyreboard.schemas import BADGE_TEXT, TERMINAL_STATES, AggregateCounts, RunState

LOGGER = logging.getLogger("tyreboard.badges")

LOCAL = "local"
REMOTE = "remote"

# Server-pushed updates may only move a run forward along this order.
_RANK = {
    RunState.not_started: 0,
    RunState.queued: 1,
    RunState.running: 2,
    RunState.stopping: 2,
    RunState.done: 3,
    RunState.failed: 3,
    RunState.skipped: 3,
}

CountsObserver = Callable[[AggregateCounts], None]


def badge_text(status: RunState, progress: Optional[float] = None) -> str:
    if status == RunState.running and progress is not None:
        return f"{min(99, int(round(progress)))}%"
    return BADGE_TEXT.get(status, "")


@dataclass
class RunRecord:
    run: str
    status: RunState = RunState.not_started
    text: str = ""
    progress: Optional[float] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_seconds: float = 0.0


class BadgeStore:
    """Single owner of every run's status and timing.

    Local transitions (the queue and the executor) are always applied. Pushed
    transitions never move a run backwards: a pushed `queued` or `running` is
    ignored once the run is running or finished, while a pushed terminal state
    replaces whatever the board decided locally.
    """

    def __init__(self, run_ids: Iterable[str] = ()) -> None:
        self._records: Dict[str, RunRecord] = {}
        self._observers: List[CountsObserver] = []
        self.register(run_ids)

    def register(self, run_ids: Iterable[str]) -> None:
        for run in run_ids:
            self.record(run)

    def reset(self, run_ids: Iterable[str]) -> None:
        self._records = {}
        self.register(run_ids)
        self._publish()

    def record(self, run: str) -> RunRecord:
        key = str(run)
        record = self._records.get(key)
        if record is None:
            record = RunRecord(run=key)
            self._records[key] = record
        return record

    def status(self, run: str) -> RunState:
        record = self._records.get(str(run))
        return record.status if record else RunState.not_started

    def runs_with(self, *statuses: RunState) -> List[str]:
        wanted = set(statuses)
        return [run for run, record in self._records.items() if record.status in wanted]

    def accepts(self, run: str, status: RunState, source: str = LOCAL) -> bool:
        if source != REMOTE or status in TERMINAL_STATES:
            return True
        current = self.status(run)
        if current == status:
            return True
        return _RANK[status] > _RANK[current]

    def set_status(
        self,
        run: str,
        status: RunState,
        hint: Optional[str] = None,
        *,
        source: str = LOCAL,
        progress: Optional[float] = None,
    ) -> bool:
        """Record `status` for `run`; returns False when nothing changed."""
        status = RunState(status)
        if not self.accepts(run, status, source):
            LOGGER.debug("Ignoring pushed %s for run %s (currently %s)", status.value, run, self.status(run).value)
            return False
        record = self.record(run)
        text = hint if hint is not None else badge_text(status, progress)
        if record.status == status and record.text == text and record.progress == progress:
            return False
        record.status = status
        record.text = text
        record.progress = progress
        self._publish()
        return True

    def clear(self, run: str) -> None:
        record = self.record(run)
        if record.status == RunState.not_started and not record.text:
            return
        record.status = RunState.not_started
        record.text = ""
        record.progress = None
        self._publish()

    def set_timing(
        self,
        run: str,
        *,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        record = self.record(run)
        if start_time is not None:
            record.start_time = start_time
        if end_time is not None:
            record.end_time = end_time
        if duration_seconds is not None:
            record.duration_seconds = max(0.0, float(duration_seconds))
        self._publish()

    def duration(self, run: str) -> float:
        record = self._records.get(str(run))
        return record.duration_seconds if record else 0.0

    def total_duration(self) -> float:
        return sum(record.duration_seconds for record in self._records.values())

    def counts(self) -> AggregateCounts:
        counts = AggregateCounts()
        for record in self._records.values():
            if record.status == RunState.not_started:
                continue
            field_name = record.status.value
            setattr(counts, field_name, getattr(counts, field_name) + 1)
        return counts

    @property
    def percentage(self) -> int:
        return self.counts().percentage

    def subscribe(self, callback: CountsObserver) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _publish(self) -> None:
        counts = self.counts()
        for callback in list(self._observers):
            try:
                callback(counts)
            except Exception:  # pragma: no cover - observer bugs must not break state updates
                LOGGER.exception("Badge observer failed")
