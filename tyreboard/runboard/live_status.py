from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from tyreboard.runboard.api_client import RunBoardAPIError, RunBoardClient, ServerEvent
from tyreboard.runboard.badges import REMOTE, BadgeStore, badge_text
from tyreboard.runboard.rows import RowRegistry
from tyreboard.schemas import AggregateCounts, LiveSummary, RunState, RunStatusEvent

LOGGER = logging.getLogger("tyreboard.live")

SummaryObserver = Callable[[LiveSummary], None]

_TRACKED = (RunState.queued, RunState.running, RunState.done, RunState.failed)


class StatusSyncListener:
    """Reconcile the server's run-status stream into the badge store."""

    def __init__(
        self,
        badges: BadgeStore,
        registry: Optional[RowRegistry] = None,
        client: Optional[RunBoardClient] = None,
    ) -> None:
        self._badges = badges
        self._registry = registry
        self._client = client
        self._sets: Dict[RunState, Set[str]] = {state: set() for state in _TRACKED}
        self._waiters: Dict[str, List["asyncio.Future[RunState]"]] = {}
        self._observers: List[SummaryObserver] = []
        self.connected = True

    def members(self, status: RunState) -> Set[str]:
        return set(self._sets[status])

    def counts(self) -> AggregateCounts:
        return AggregateCounts(
            queued=len(self._sets[RunState.queued]),
            running=len(self._sets[RunState.running]),
            done=len(self._sets[RunState.done]),
            failed=len(self._sets[RunState.failed]),
        )

    def summary(self) -> LiveSummary:
        return LiveSummary.from_counts(self.counts(), connected=self.connected)

    def subscribe(self, callback: SummaryObserver) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _publish(self) -> None:
        summary = self.summary()
        for callback in list(self._observers):
            try:
                callback(summary)
            except Exception:  # pragma: no cover - observer bugs must not stop the stream
                LOGGER.exception("Live status observer failed")

    def handle_event(self, event: ServerEvent) -> None:
        if event.event == "ping":
            if not self.connected:
                self.connected = True
                self._publish()
            return
        if event.event == "run-status":
            self.apply_status(event.data)
            return
        LOGGER.debug("Ignoring unknown event %s", event.event)

    def apply_status(self, payload: Dict[str, Any]) -> bool:
        try:
            update = RunStatusEvent.model_validate(payload)
        except ValidationError as exc:
            LOGGER.debug("Ignoring malformed run-status payload %r: %s", payload, exc)
            return False
        run, status = update.run, update.status
        if not self._badges.accepts(run, status, REMOTE):
            LOGGER.debug("Ignoring out-of-order %s for run %s", status.value, run)
            return False

        for members in self._sets.values():
            members.discard(run)
        self._sets[status].add(run)

        self._badges.set_status(
            run,
            status,
            badge_text(status, update.progress),
            source=REMOTE,
            progress=update.progress,
        )
        if self._registry is not None:
            self._registry.set_progress(run, status, update.progress)
            self._registry.set_folder(run, update.folder)
            if update.message:
                self._registry.set_message(run, update.message)
        if status in (RunState.done, RunState.failed):
            self._resolve_waiters(run, status)
        self._publish()
        return True

    def mark_disconnected(self) -> None:
        self.connected = False
        self._publish()

    def wait_for_terminal(self, run: str) -> "asyncio.Future[RunState]":
        """Future resolved by the next pushed done/failed event for `run`."""
        future: "asyncio.Future[RunState]" = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(str(run), []).append(future)
        return future

    def discard_waiter(self, run: str, future: "asyncio.Future[RunState]") -> None:
        waiters = self._waiters.get(str(run), [])
        if future in waiters:
            waiters.remove(future)
        if not waiters:
            self._waiters.pop(str(run), None)
        if not future.done():
            future.cancel()

    def _resolve_waiters(self, run: str, status: RunState) -> None:
        for future in self._waiters.pop(run, []):
            if not future.done():
                future.set_result(status)

    async def listen(self) -> None:
        """Consume the server event stream until it ends or fails."""
        if self._client is None:
            raise RuntimeError("Listener has no client to stream from.")
        try:
            async for event in self._client.stream_events():
                self.handle_event(event)
        except RunBoardAPIError as exc:
            LOGGER.warning("Live updates disconnected: %s", exc.detail)
        finally:
            self.mark_disconnected()
