from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from tyreboard.services.events import EventBroker, get_event_broker
from tyreboard.services.storage import RepositoryDep, TyreRepository

router = APIRouter(tags=["events"])


@router.get("/events")
async def run_status_events(
    request: Request,
    repo: TyreRepository = RepositoryDep,
    broker: EventBroker = Depends(get_event_broker),
) -> StreamingResponse:
    """Server-sent stream of run-status events with periodic pings."""
    interval = repo.get_config()["keepalive_interval_seconds"]
    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "Connection": "keep-alive",
    }
    return StreamingResponse(
        broker.stream(keepalive_interval=interval, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers=headers,
    )
