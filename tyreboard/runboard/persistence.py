from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from tyreboard.constants import protocol_key_from_name
from tyreboard.runboard.api_client import RunBoardAPIError, RunBoardClient
from tyreboard.runboard.badges import BadgeStore
from tyreboard.runboard.rows import RowRegistry
from tyreboard.schemas import RunState

LOGGER = logging.getLogger("tyreboard.persistence")


def utc_timestamp() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PersistenceBridge:
    """Record run timings on the server and reload them into the board."""

    def __init__(
        self,
        client: RunBoardClient,
        badges: BadgeStore,
        registry: RowRegistry,
        *,
        project_id: str,
        project_name: Optional[str] = None,
        protocol_key: Optional[str] = None,
    ) -> None:
        self._client = client
        self._badges = badges
        self._registry = registry
        self.project_id = project_id
        self.project_name = project_name
        self.protocol_key = protocol_key
        self._pending: Set[asyncio.Task] = set()

    def _payload(
        self,
        run: str,
        start_time: Optional[str],
        end_time: Optional[str],
        duration_seconds: Optional[float],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "projectId": self.project_id,
            "projectName": self.project_name,
            "protocol": self.protocol_key,
            "runNumber": str(run),
        }
        if start_time:
            payload["startTime"] = start_time
        if end_time:
            payload["endTime"] = end_time
        if duration_seconds is not None:
            payload["durationSeconds"] = round(float(duration_seconds), 3)
        return payload

    async def record_run_time(
        self,
        run: str,
        *,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> bool:
        payload = self._payload(run, start_time, end_time, duration_seconds)
        try:
            await self._client.record_run_time(payload)
        except RunBoardAPIError as exc:
            LOGGER.warning("Could not record run time for run %s: %s", run, exc.detail)
            return False
        return True

    def record_run_time_nowait(self, run: str, **timing: Any) -> "asyncio.Task[bool]":
        task = asyncio.create_task(self.record_run_time(run, **timing))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self) -> None:
        """Wait for fire-and-forget recordings still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def resolve_protocol_key(self) -> Optional[str]:
        if self.protocol_key:
            return self.protocol_key
        try:
            project = await self._client.get_project(self.project_id)
        except RunBoardAPIError as exc:
            LOGGER.warning("Could not load project %s: %s", self.project_id, exc.detail)
            return None
        if not self.project_name:
            self.project_name = project.get("project_name")
        self.protocol_key = protocol_key_from_name(str(project.get("protocol") or ""))
        return self.protocol_key

    async def fetch_and_apply_saved_times(self) -> int:
        """Apply recorded durations; returns the number of runs marked done."""
        protocol = await self.resolve_protocol_key()
        if not protocol:
            LOGGER.info("No protocol resolved for project %s; skipping saved times", self.project_id)
            return 0
        try:
            items = await self._client.get_run_times(self.project_id, protocol)
        except RunBoardAPIError as exc:
            LOGGER.warning("Could not fetch saved run times: %s", exc.detail)
            return 0

        completed = 0
        for item in items:
            run = str(item.get("number_of_runs", ""))
            if run not in self._registry:
                continue
            start = item.get("run_start_time")
            end = item.get("run_end_time")
            duration = item.get("run_duration_seconds")
            if duration is not None and float(duration) > 0:
                self._badges.set_timing(run, start_time=start, end_time=end, duration_seconds=float(duration))
                self._badges.set_status(run, RunState.done)
                completed += 1
                continue
            started, ended = _parse_timestamp(start), _parse_timestamp(end)
            if started and ended:
                computed = max(0.0, (ended - started).total_seconds())
                self._badges.set_timing(run, start_time=start, end_time=end, duration_seconds=computed)
                self._badges.set_status(run, RunState.done)
                completed += 1
                continue
            self._badges.set_timing(run, duration_seconds=0)
        return completed
