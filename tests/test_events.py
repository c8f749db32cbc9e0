from __future__ import annotations

import pytest

from tyreboard.runboard.api_client import SSEDecoder
from tyreboard.services.events import EventBroker, render_sse


@pytest.mark.unit
def test_render_sse_frames_json_payload() -> None:
    frame = render_sse("run-status", {"run": "3", "status": "done"})
    assert frame == 'event: run-status\ndata: {"run": "3", "status": "done"}\n\n'


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stream_yields_pings_and_published_events() -> None:
    broker = EventBroker()
    stream = broker.stream(keepalive_interval=0.05)

    first = await stream.__anext__()
    assert first.startswith("event: ping")
    assert broker.subscriber_count == 1

    broker.publish_run_status("2", "running", progress=40, folder="2_100")
    frame = await stream.__anext__()
    keepalive = await stream.__anext__()
    await stream.aclose()

    decoder = SSEDecoder()
    events = [decoder.feed(line) for line in frame.split("\n")]
    event = [item for item in events if item is not None][0]
    assert event.event == "run-status"
    assert event.data == {"run": "2", "status": "running", "progress": 40, "folder": "2_100"}
    assert keepalive == "event: ping\ndata: {}\n\n"
    assert broker.subscriber_count == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_subscribers_are_dropped() -> None:
    broker = EventBroker(max_backlog=1)
    queue_ref = broker.subscribe()

    broker.publish("run-status", {"run": "1", "status": "queued"})
    broker.publish("run-status", {"run": "1", "status": "running"})

    assert broker.subscriber_count == 0
    assert queue_ref.qsize() == 1
