from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Iterable, List, Optional

from tyreboard.constants import protocol_key_from_name
from tyreboard.runboard.api_client import RunBoardAPIError, RunBoardClient
from tyreboard.runboard.badges import BadgeStore
from tyreboard.runboard.executor import AttemptResult, RunExecutor
from tyreboard.runboard.live_status import StatusSyncListener
from tyreboard.runboard.orchestrator import QueueBusyError, QueueEvent, QueueOrchestrator, RunBoardSettings
from tyreboard.runboard.persistence import PersistenceBridge
from tyreboard.runboard.rows import RowRegistry
from tyreboard.schemas import LiveSummary, RunState

LOGGER = logging.getLogger("tyreboard.board")


def format_duration(seconds: Optional[float]) -> str:
    total = int(round(seconds or 0))
    if total < 0:
        total = 0
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class RunBoard:
    """Run board for one project's protocol table.

    Wires the registry, badge store, executor, queue, live listener and
    persistence bridge together and exposes the operator's controls.
    """

    def __init__(
        self,
        client: RunBoardClient,
        *,
        project_id: str,
        project_name: Optional[str] = None,
        protocol_key: Optional[str] = None,
        settings: Optional[RunBoardSettings] = None,
    ) -> None:
        self.client = client
        self.project_id = project_id
        self.project_name = project_name or ""
        self.protocol_key = protocol_key or ""
        self._explicit_settings = settings is not None
        self.notices: List[str] = []

        self.registry = RowRegistry()
        self.badges = BadgeStore()
        self.listener = StatusSyncListener(self.badges, self.registry, client)
        self.persistence = PersistenceBridge(
            client,
            self.badges,
            self.registry,
            project_id=project_id,
            project_name=project_name,
            protocol_key=protocol_key,
        )
        self.executor = RunExecutor(
            client,
            self.registry,
            self.badges,
            self.persistence,
            self.listener,
            project_name=self.project_name,
            protocol_key=self.protocol_key,
            notify=self._notify,
        )
        self.orchestrator = QueueOrchestrator(
            self.registry,
            self.badges,
            self.executor,
            terminate_all=client.terminate_all,
            settings=settings,
        )
        self.orchestrator.subscribe(self._collect_notice)
        self._live_task: Optional[asyncio.Task] = None

    def _notify(self, message: str) -> None:
        self.orchestrator.notify(message)

    def _collect_notice(self, event: QueueEvent) -> None:
        if event.kind == "notice" and event.message:
            self.notices.append(event.message)

    async def load(self) -> List[str]:
        """Fetch project, settings and protocol table, then apply saved times."""
        if not self.project_name or not self.protocol_key:
            project = await self.client.get_project(self.project_id)
            self.project_name = self.project_name or project.get("project_name", "")
            self.protocol_key = self.protocol_key or protocol_key_from_name(str(project.get("protocol") or "")) or ""
        if not self.protocol_key:
            raise ValueError(f"Project {self.project_id} has no recognised protocol.")
        self.executor.project_name = self.persistence.project_name = self.project_name
        self.executor.protocol_key = self.persistence.protocol_key = self.protocol_key

        if not self._explicit_settings:
            try:
                config = await self.client.get_config()
            except RunBoardAPIError as exc:
                LOGGER.debug("Using default queue settings: %s", exc.detail)
            else:
                self.orchestrator.settings = RunBoardSettings.from_config(
                    config,
                    auto_generate_tydex=self.orchestrator.settings.auto_generate_tydex,
                )

        rows = await self.client.list_protocol_rows(self.protocol_key)
        run_ids = self.registry.load(rows)
        self.badges.reset(run_ids)
        await self.persistence.fetch_and_apply_saved_times()
        LOGGER.info("Loaded %s run(s) for %s (%s)", len(run_ids), self.project_name, self.protocol_key)
        return run_ids

    # -- Live updates -------------------------------------------------------------
    def start_live(self) -> asyncio.Task:
        if self._live_task is None or self._live_task.done():
            self._live_task = asyncio.create_task(self.listener.listen())
        return self._live_task

    async def close(self) -> None:
        if self._live_task is not None and not self._live_task.done():
            self._live_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._live_task
        self._live_task = None
        await self.persistence.flush()

    # -- Controls -----------------------------------------------------------------
    def run_all(self) -> asyncio.Task:
        return self.orchestrator.run_all()

    def run_selected(self, run_ids: Iterable[str]) -> asyncio.Task:
        return self.orchestrator.run_selected(run_ids)

    def retry_failed(self) -> Optional[asyncio.Task]:
        return self.orchestrator.retry_failed()

    def toggle_pause(self) -> None:
        self.orchestrator.toggle_pause()

    def abort(self) -> int:
        return self.orchestrator.abort()

    async def stop_all(self) -> None:
        await self.orchestrator.stop_all()

    async def run_single(self, run: str) -> AttemptResult:
        """Run one row outside the queue, like its own Run button."""
        if self.orchestrator.state.running:
            raise QueueBusyError("A queue is already running.")
        attempt = self.executor.trigger(run)
        if attempt is None:
            self._notify(f"Run {run} could not be started")
            return AttemptResult(ok=False, reason="unavailable")
        timeout = self.orchestrator.settings.run_finish_timeout_seconds
        result = await self.executor.wait_for_finish(attempt, timeout)
        self.badges.set_status(run, RunState.done if result.ok else RunState.failed)
        return result

    async def generate_tydex(self, run: str):
        return await self.executor.generate_tydex(run)

    # -- Readouts -----------------------------------------------------------------
    def badge(self, run: str) -> str:
        return self.badges.record(run).text

    def duration_text(self, run: str) -> str:
        return format_duration(self.badges.duration(run))

    def total_time_text(self) -> str:
        return format_duration(self.badges.total_duration())

    def counts_line(self) -> str:
        return self.badges.counts().counts_line

    def overall_progress(self) -> int:
        return self.badges.percentage

    def eta_seconds(self) -> float:
        return self.orchestrator.eta_seconds()

    def live_summary(self) -> LiveSummary:
        return self.listener.summary()
