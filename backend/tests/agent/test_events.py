"""Tests for Event SSE framing and EventStream ordering and buffering."""

import asyncio
import json

import pytest

from workspace_agent.agent.events import DoneReason, Event, EventStream, EventType

pytestmark = pytest.mark.unit

SID = "sess-events"


def test_sse_framing():
    event = Event.tool_call(SID, "c1", "create_table", {"name": "tasks"})
    frame = event.to_sse()

    assert frame.startswith("event: tool_call\ndata: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame.split("data: ", 1)[1])
    assert payload["type"] == "tool_call"
    assert payload["session_id"] == SID
    assert payload["tool_call_id"] == "c1"
    assert payload["arguments"] == {"name": "tasks"}


def test_phase_change_and_done_payloads():
    assert Event.phase_change(SID, "planning", "confirmed").data == {"from": "planning", "to": "confirmed"}
    assert Event.done(SID, DoneReason.END_TURN).data == {"reason": "end_turn"}


async def test_events_read_in_emit_order():
    stream = EventStream(SID)
    await stream.emit(Event.message(SID, "a"))
    await stream.emit(Event.tool_call_start(SID, "c1", "query_data"))
    stream.emit_nowait(Event.done(SID, DoneReason.END_TURN))
    stream.close()

    events = await stream.collect()
    assert [e.type for e in events] == [EventType.MESSAGE, EventType.TOOL_CALL_START, EventType.DONE]


async def test_full_buffer_drops_oldest_message():
    stream = EventStream(SID, maxsize=2)
    await stream.emit(Event.message(SID, "first"))
    await stream.emit(Event.plan_update(SID, None))
    await stream.emit(Event.message(SID, "second"))
    stream.close()

    events = await stream.collect()
    assert [e.type for e in events] == [EventType.PLAN_UPDATE, EventType.MESSAGE]
    assert events[1].data["content"] == "second"
    assert stream.dropped == 1


async def test_non_message_events_wait_for_room():
    stream = EventStream(SID, maxsize=1)
    await stream.emit(Event.plan_update(SID, None))
    blocked = asyncio.create_task(stream.emit(Event.tool_result(SID, "c1", "query_data", {"success": True})))
    await asyncio.sleep(0)
    assert not blocked.done()

    first = await stream.__anext__()
    await blocked
    stream.close()
    rest = await stream.collect()

    assert first.type == EventType.PLAN_UPDATE
    assert [e.type for e in rest] == [EventType.TOOL_RESULT]
    assert stream.dropped == 0


async def test_aclose_cancels_producer():
    stream = EventStream(SID)

    async def produce():
        while True:
            await stream.emit(Event.message(SID, "tick"))
            await asyncio.sleep(0.01)

    task = asyncio.create_task(produce())
    stream.attach(task)
    await stream.__anext__()
    await stream.aclose()

    assert task.cancelled()
    assert stream.closed
    assert await stream.collect() == []
