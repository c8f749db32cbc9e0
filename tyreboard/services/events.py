from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

LOGGER = logging.getLogger("tyreboard.events")


def render_sse(event: str, payload: Dict[str, Any]) -> str:
    """Frame one named server-sent event with a JSON body."""
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


class EventBroker:
    """Fan run-status events out to every connected event-stream client."""

    def __init__(self, max_backlog: int = 500) -> None:
        self._subscribers: Set["asyncio.Queue[str]"] = set()
        self._max_backlog = max_backlog

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[str]":
        queue_ref: "asyncio.Queue[str]" = asyncio.Queue(maxsize=self._max_backlog)
        self._subscribers.add(queue_ref)
        return queue_ref

    def unsubscribe(self, queue_ref: "asyncio.Queue[str]") -> None:
        self._subscribers.discard(queue_ref)

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        frame = render_sse(event, payload)
        for queue_ref in list(self._subscribers):
            try:
                queue_ref.put_nowait(frame)
            except asyncio.QueueFull:
                LOGGER.warning("Dropping slow event-stream subscriber (backlog %s)", self._max_backlog)
                self._subscribers.discard(queue_ref)

    def publish_run_status(
        self,
        run: str,
        status: str,
        *,
        progress: Optional[float] = None,
        message: Optional[str] = None,
        folder: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {"run": str(run), "status": status}
        if progress is not None:
            payload["progress"] = progress
        if message:
            payload["message"] = message
        if folder:
            payload["folder"] = folder
        self.publish("run-status", payload)

    async def stream(
        self,
        *,
        keepalive_interval: float,
        is_disconnected=None,
    ) -> AsyncIterator[str]:
        queue_ref = self.subscribe()
        try:
            yield render_sse("ping", {"connected": True})
            while True:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    frame = await asyncio.wait_for(queue_ref.get(), timeout=keepalive_interval)
                except asyncio.TimeoutError:
                    yield render_sse("ping", {})
                    continue
                yield frame
        finally:
            self.unsubscribe(queue_ref)


_broker: Optional[EventBroker] = None


def get_event_broker() -> EventBroker:
    global _broker
    if _broker is None:
        _broker = EventBroker()
    return _broker
