from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from tyreboard.runboard.badges import BadgeStore
from tyreboard.runboard.executor import RunExecutor
from tyreboard.runboard.rows import RowRegistry
from tyreboard.schemas import AggregateCounts, RunState

LOGGER = logging.getLogger("tyreboard.orchestrator")


class QueueBusyError(RuntimeError):
    """Raised when a queue is started while another one is draining."""


class QueuePhase(str, Enum):
    idle = "idle"
    draining = "draining"
    paused = "paused"
    aborting = "aborting"


@dataclass
class QueueState:
    running: bool = False
    paused: bool = False
    abort_requested: bool = False
    current_run: Optional[str] = None
    queue: List[str] = field(default_factory=list)

    @property
    def phase(self) -> QueuePhase:
        if not self.running:
            return QueuePhase.idle
        if self.abort_requested:
            return QueuePhase.aborting
        if self.paused:
            return QueuePhase.paused
        return QueuePhase.draining


@dataclass
class QueueEvent:
    kind: str
    state: QueueState
    eta_seconds: float
    counts: AggregateCounts
    message: Optional[str] = None


@dataclass
class RunBoardSettings:
    inter_run_delay_seconds: float = 1.0
    run_finish_timeout_seconds: float = 1200.0
    artifact_grace_seconds: float = 0.9
    default_run_estimate_seconds: float = 30.0
    pause_poll_seconds: float = 0.4
    auto_generate_tydex: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], **overrides: Any) -> "RunBoardSettings":
        """Build queue timings from the server configuration payload."""
        defaults = cls()
        values = {
            name: float(config.get(name, getattr(defaults, name)))
            for name in (
                "inter_run_delay_seconds",
                "run_finish_timeout_seconds",
                "artifact_grace_seconds",
                "default_run_estimate_seconds",
                "pause_poll_seconds",
            )
        }
        values.update(overrides)
        return cls(**values)


QueueObserver = Callable[[QueueEvent], None]


class QueueOrchestrator:
    """Drain ordered run lists through the executor, one run at a time."""

    def __init__(
        self,
        registry: RowRegistry,
        badges: BadgeStore,
        executor: RunExecutor,
        *,
        terminate_all: Callable[[], Awaitable[object]],
        settings: Optional[RunBoardSettings] = None,
    ) -> None:
        self._registry = registry
        self._badges = badges
        self._executor = executor
        self._terminate_all = terminate_all
        self.settings = settings or RunBoardSettings()
        self.state = QueueState()
        self._observers: List[QueueObserver] = []
        self._drain_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._last_eta: Optional[float] = None
        self._badges.subscribe(self._on_counts)

    # -- Observation --------------------------------------------------------------
    def subscribe(self, callback: QueueObserver) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _emit(self, kind: str, message: Optional[str] = None) -> None:
        event = QueueEvent(
            kind=kind,
            state=replace(self.state, queue=list(self.state.queue)),
            eta_seconds=self.eta_seconds(),
            counts=self._badges.counts(),
            message=message,
        )
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:  # pragma: no cover - observer bugs must not stall the queue
                LOGGER.exception("Queue observer failed")

    def notify(self, message: str) -> None:
        LOGGER.info("Notice: %s", message)
        self._emit("notice", message)

    def _on_counts(self, counts: AggregateCounts) -> None:
        eta = self.eta_seconds()
        if eta != self._last_eta:
            self._last_eta = eta
            self._emit("eta")

    def eta_seconds(self) -> float:
        default = self.settings.default_run_estimate_seconds
        total = 0.0
        for run in self._badges.runs_with(RunState.queued):
            recorded = self._badges.duration(run)
            total += recorded if recorded > 0 else default
        return total

    # -- Commands -----------------------------------------------------------------
    @property
    def drain_task(self) -> Optional[asyncio.Task]:
        return self._drain_task

    def start(self, run_ids: Iterable[str], delay_seconds: Optional[float] = None) -> asyncio.Task:
        if self.state.running:
            raise QueueBusyError("A queue is already running.")
        ordered = list(dict.fromkeys(str(run) for run in run_ids))
        if not ordered:
            raise ValueError("No runs to queue.")
        delay = self.settings.inter_run_delay_seconds if delay_seconds is None else delay_seconds
        self.state = QueueState(running=True, queue=list(ordered))
        for run in ordered:
            self._badges.set_status(run, RunState.queued)
        LOGGER.info("Queued %s run(s): %s", len(ordered), ", ".join(ordered))
        self._emit("state")
        self._drain_task = asyncio.create_task(self._drain(self._generation, delay))
        return self._drain_task

    def run_all(self) -> asyncio.Task:
        return self.start(self._registry.run_ids)

    def run_selected(self, run_ids: Iterable[str]) -> asyncio.Task:
        return self.start(self._registry.ordered(run_ids))

    def retry_failed(self) -> Optional[asyncio.Task]:
        failed = self._registry.ordered(self._badges.runs_with(RunState.failed))
        if not failed:
            self.notify("No failed runs to retry")
            return None
        if self.state.running:
            raise QueueBusyError("A queue is already running.")
        for run in failed:
            self._badges.clear(run)
        return self.start(failed)

    def pause(self) -> None:
        if self.state.running and not self.state.paused:
            self.state.paused = True
            LOGGER.info("Queue paused")
            self._emit("state")

    def resume(self) -> None:
        if self.state.paused:
            self.state.paused = False
            LOGGER.info("Queue resumed")
            self._emit("state")

    def toggle_pause(self) -> None:
        if self.state.paused:
            self.resume()
        else:
            self.pause()

    def abort(self) -> int:
        """Skip every run not yet dispatched; the current run finishes."""
        if not self.state.running:
            return 0
        self.state.abort_requested = True
        skipped = list(self.state.queue)
        self.state.queue.clear()
        for run in skipped:
            self._badges.set_status(run, RunState.skipped)
        LOGGER.info("Queue aborted; skipped %s run(s)", len(skipped))
        self._emit("state")
        return len(skipped)

    async def stop_all(self) -> None:
        """Terminate server jobs and force the board back to idle."""
        self._generation += 1
        drain = self._drain_task
        if drain is not None and not drain.done() and drain is not asyncio.current_task():
            drain.cancel()
        self._executor.abandon_all()

        for run in self._badges.runs_with(RunState.running):
            self._badges.set_status(run, RunState.stopping)
        try:
            await self._terminate_all()
        except Exception as exc:
            LOGGER.warning("Stop-all request failed: %s", exc)
            self.notify(f"Stop-all request failed: {exc}")

        for run in self._badges.runs_with(RunState.running, RunState.stopping, RunState.queued):
            self._badges.set_status(run, RunState.failed)
            self._registry.set_trigger_enabled(run, True)
        self.state = QueueState()
        self._drain_task = None
        LOGGER.info("Stop-all completed; queue reset")
        self._emit("state")

    # -- Drain loop ---------------------------------------------------------------
    async def _wait_while_paused(self) -> None:
        while self.state.paused and not self.state.abort_requested:
            await asyncio.sleep(self.settings.pause_poll_seconds)

    async def _drain(self, generation: int, delay: float) -> None:
        try:
            while self.state.queue:
                await self._wait_while_paused()
                if self.state.abort_requested or not self.state.queue:
                    break
                run = self.state.queue.pop(0)
                self.state.current_run = run
                self._emit("state")
                await self._dispatch(run, delay)
                self.state.current_run = None
        finally:
            if generation == self._generation:
                self.state = QueueState()
                self._drain_task = None
                self._emit("state")

    async def _dispatch(self, run: str, delay: float) -> None:
        if self.settings.auto_generate_tydex and self._registry.is_artifact_available(run):
            self._executor.generate_tydex_nowait(run)
            await asyncio.sleep(self.settings.artifact_grace_seconds)

        attempt = self._executor.trigger(run)
        if attempt is None:
            self._badges.set_status(run, RunState.failed)
            self.notify(f"Run {run} could not be started")
            return

        result = await self._executor.wait_for_finish(attempt, self.settings.run_finish_timeout_seconds)
        self._badges.set_status(run, RunState.done if result.ok else RunState.failed)
        if delay > 0 and self.state.queue:
            await asyncio.sleep(delay)
