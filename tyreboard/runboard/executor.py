from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from tyreboard.constants import NO_DEPENDENCY_MARKERS, protocol_label
from tyreboard.runboard.api_client import RunBoardAPIError, RunBoardClient
from tyreboard.runboard.badges import BadgeStore
from tyreboard.runboard.live_status import StatusSyncListener
from tyreboard.runboard.persistence import PersistenceBridge, utc_timestamp
from tyreboard.runboard.rows import RowRegistry
from tyreboard.schemas import RunState

LOGGER = logging.getLogger("tyreboard.executor")

Notifier = Callable[[str], None]


def processing_text(job: str, old_job: str = "") -> str:
    job = (job or "").strip()
    old_job = (old_job or "").strip()
    if old_job not in NO_DEPENDENCY_MARKERS and old_job != job:
        return f"Processing: {old_job} (dependency) ⌛"
    return f"Processing: {job} ⌛"


@dataclass
class Attempt:
    """One dispatched execution of a run."""

    run: str
    attempt_id: int
    task: "asyncio.Task[bool]" = field(repr=False)
    started_at: float = 0.0
    stale: bool = False


@dataclass
class AttemptResult:
    ok: bool
    reason: str = ""


class RunExecutor:
    """Execute single runs against the server and report their outcome."""

    def __init__(
        self,
        client: RunBoardClient,
        registry: RowRegistry,
        badges: BadgeStore,
        persistence: Optional[PersistenceBridge] = None,
        listener: Optional[StatusSyncListener] = None,
        *,
        project_name: str,
        protocol_key: str,
        notify: Optional[Notifier] = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._badges = badges
        self._persistence = persistence
        self._listener = listener
        self.project_name = project_name
        self.protocol_key = protocol_key
        self._notify = notify or (lambda message: None)
        self._ids = itertools.count(1)
        self._attempts: Dict[str, Attempt] = {}
        self._background: Set[asyncio.Task] = set()

    def in_flight(self, run: str) -> bool:
        attempt = self._attempts.get(str(run))
        return bool(attempt and not attempt.task.done())

    def trigger(self, run: str) -> Optional[Attempt]:
        """Start executing `run`; None when its trigger is unavailable."""
        run = str(run)
        if not self._registry.is_trigger_available(run) or self.in_flight(run):
            return None
        self._registry.set_trigger_enabled(run, False)
        attempt_id = next(self._ids)
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._execute(run, attempt_id))
        attempt = Attempt(run=run, attempt_id=attempt_id, task=task, started_at=loop.time())
        self._attempts[run] = attempt
        return attempt

    def _is_current(self, run: str, attempt_id: int) -> bool:
        attempt = self._attempts.get(run)
        return bool(attempt and attempt.attempt_id == attempt_id and not attempt.stale)

    async def _lookup_metadata(self, run: str) -> Dict[str, Any]:
        try:
            return await self._client.get_row_data(self.protocol_key, run)
        except RunBoardAPIError as exc:
            LOGGER.debug("Row lookup for run %s failed (%s); using table data", run, exc.detail)
            return self._registry.row_data(run)

    async def _execute(self, run: str, attempt_id: int) -> bool:
        try:
            return await self._run_attempt(run, attempt_id)
        finally:
            self._registry.set_trigger_enabled(run, True)

    def _fail(self, run: str, attempt_id: int, detail: str) -> bool:
        if not self._is_current(run, attempt_id):
            LOGGER.info("Discarding failure of abandoned attempt for run %s: %s", run, detail)
            return False
        self._badges.set_status(run, RunState.failed)
        self._registry.set_progress(run, RunState.failed)
        self._registry.set_message(run, f"Error: {detail}")
        self._notify(f"Run {run} failed: {detail}")
        return False

    async def _run_attempt(self, run: str, attempt_id: int) -> bool:
        loop = asyncio.get_running_loop()
        started = loop.time()
        metadata = await self._lookup_metadata(run)
        if not self._is_current(run, attempt_id):
            LOGGER.info("Attempt for run %s was abandoned before the job was requested", run)
            return False
        self._badges.set_status(run, RunState.running)
        self._registry.set_progress(run, RunState.running)
        self._registry.set_message(run, processing_text(metadata.get("job", ""), metadata.get("old_job", "")))
        start_time = utc_timestamp()
        self._badges.set_timing(run, start_time=start_time)
        if self._persistence is not None:
            self._persistence.record_run_time_nowait(run, start_time=start_time)

        try:
            result = await self._client.resolve_and_execute(self.project_name, self.protocol_key, run)
        except RunBoardAPIError as exc:
            return self._fail(run, attempt_id, exc.detail)
        except Exception as exc:
            LOGGER.exception("Unexpected error executing run %s", run)
            return self._fail(run, attempt_id, str(exc))
        if not result.get("success"):
            return self._fail(run, attempt_id, result.get("message") or "Job execution failed")

        if not self._is_current(run, attempt_id):
            LOGGER.info("Run %s finished after its attempt was abandoned", run)
            return True

        duration = loop.time() - started
        end_time = utc_timestamp()
        self._badges.set_status(run, RunState.done)
        self._badges.set_timing(run, end_time=end_time, duration_seconds=duration)
        self._registry.set_progress(run, RunState.done)
        self._registry.set_message(run, "Completed")
        self._registry.set_artifact_available(run, True)
        if self._persistence is not None:
            self._persistence.record_run_time_nowait(run, end_time=end_time, duration_seconds=duration)
        return True

    async def wait_for_finish(self, attempt: Attempt, timeout: float) -> AttemptResult:
        """Resolve on the attempt's own outcome or a pushed terminal event.

        On timeout the attempt is abandoned but its request keeps running.
        """
        waiters: Set[asyncio.Future] = {attempt.task}
        terminal = self._listener.wait_for_terminal(attempt.run) if self._listener else None
        if terminal is not None:
            waiters.add(terminal)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if terminal is not None and self._listener is not None:
                self._listener.discard_waiter(attempt.run, terminal)

        if not done:
            attempt.stale = True
            LOGGER.warning("Run %s did not finish within %s seconds", attempt.run, timeout)
            self._notify(f"Run {attempt.run} timed out")
            return AttemptResult(ok=False, reason="timeout")
        if attempt.task in done:
            return AttemptResult(ok=attempt.task.result(), reason="request")
        status = terminal.result()
        return AttemptResult(ok=status == RunState.done, reason="event")

    def abandon_all(self) -> None:
        for attempt in self._attempts.values():
            if not attempt.task.done():
                attempt.stale = True

    async def generate_tydex(self, run: str) -> Optional[Dict[str, Any]]:
        row = self._registry.row_data(run)
        if not row.get("template_tydex"):
            self._notify(f"Run {run}: no template_tydex found for this row")
            return None
        try:
            result = await self._client.generate_tydex(protocol_label(self.protocol_key), self.project_name, row)
        except RunBoardAPIError as exc:
            LOGGER.warning("Tydex generation for run %s failed: %s", run, exc.detail)
            self._notify(f"Tydex generation failed for run {run}: {exc.detail}")
            return None
        if not result.get("success"):
            detail = result.get("message") or "Tydex generation failed"
            LOGGER.warning("Tydex generation for run %s was rejected: %s", run, detail)
            self._notify(f"Tydex generation failed for run {run}: {detail}")
            return None
        LOGGER.info("Generated Tydex for run %s", run)
        return result

    def generate_tydex_nowait(self, run: str) -> asyncio.Task:
        task = asyncio.create_task(self.generate_tydex(run))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
