"""Agent event model, SSE framing and the bounded per-turn EventStream.

The engine is the only writer of an EventStream; the HTTP layer (or a test)
is the only reader. Events come out in exactly the order they were emitted.

Buffering: at most ``maxsize`` events are queued. When the buffer is full a new
``message`` event evicts the oldest queued ``message`` event; every other event
type waits for room. Terminal events (``error``/``done``) and engine-internal
emits use ``emit_nowait`` and bypass the bound.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    MESSAGE = "message"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PLAN_UPDATE = "plan_update"
    PHASE_CHANGE = "phase_change"
    CONFIRMATION_REQUIRED = "confirmation_required"
    ERROR = "error"
    DONE = "done"


class DoneReason(StrEnum):
    ATTEMPT_COMPLETION = "attempt_completion"
    STEP_LIMIT = "step_limit"
    ERROR = "error"
    CANCELLED = "cancelled"
    END_TURN = "end_turn"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class Event(BaseModel):
    type: EventType
    session_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }

    def to_sse(self) -> str:
        payload = json.dumps(self.to_dict(), default=str, ensure_ascii=False)
        return f"event: {self.type.value}\ndata: {payload}\n\n"

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def message(cls, session_id: str, content: str) -> Event:
        return cls(type=EventType.MESSAGE, session_id=session_id, data={"content": content})

    @classmethod
    def tool_call_start(cls, session_id: str, tool_call_id: str, tool_name: str) -> Event:
        return cls(
            type=EventType.TOOL_CALL_START,
            session_id=session_id,
            data={"tool_call_id": tool_call_id, "tool_name": tool_name},
        )

    @classmethod
    def tool_call(cls, session_id: str, tool_call_id: str, tool_name: str, arguments: Any) -> Event:
        return cls(
            type=EventType.TOOL_CALL,
            session_id=session_id,
            data={"tool_call_id": tool_call_id, "tool_name": tool_name, "arguments": arguments},
        )

    @classmethod
    def tool_result(cls, session_id: str, tool_call_id: str, tool_name: str, result: dict[str, Any]) -> Event:
        return cls(
            type=EventType.TOOL_RESULT,
            session_id=session_id,
            data={"tool_call_id": tool_call_id, "tool_name": tool_name, **result},
        )

    @classmethod
    def plan_update(cls, session_id: str, plan: dict[str, Any] | None) -> Event:
        return cls(type=EventType.PLAN_UPDATE, session_id=session_id, data={"plan": plan})

    @classmethod
    def phase_change(cls, session_id: str, from_phase: str, to_phase: str) -> Event:
        return cls(
            type=EventType.PHASE_CHANGE,
            session_id=session_id,
            data={"from": str(from_phase), "to": str(to_phase)},
        )

    @classmethod
    def confirmation_required(
        cls,
        session_id: str,
        action_id: str,
        tool_call_id: str,
        tool_name: str,
        arguments: Any,
        affected_resource: str,
    ) -> Event:
        return cls(
            type=EventType.CONFIRMATION_REQUIRED,
            session_id=session_id,
            data={
                "action_id": action_id,
                "tool_call_id": tool_call_id,
                "tool_name": tool_name,
                "arguments": arguments,
                "affected_resource": affected_resource,
            },
        )

    @classmethod
    def error(cls, session_id: str, kind: str, message: str) -> Event:
        return cls(type=EventType.ERROR, session_id=session_id, data={"kind": str(kind), "message": message})

    @classmethod
    def done(cls, session_id: str, reason: DoneReason) -> Event:
        return cls(type=EventType.DONE, session_id=session_id, data={"reason": reason.value})


class EventStream:
    """Bounded, ordered, single-producer single-consumer event stream."""

    def __init__(self, session_id: str, maxsize: int = 256) -> None:
        self.session_id = session_id
        self._maxsize = max(maxsize, 1)
        self._buffer: deque[Event] = deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._closed = False
        self._producer: asyncio.Task | None = None
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def producer(self) -> asyncio.Task | None:
        return self._producer

    def attach(self, task: asyncio.Task) -> None:
        self._producer = task

    async def emit(self, event: Event) -> None:
        """Queue an event, waiting while the buffer is full (message events evict instead)."""
        while not self._closed and len(self._buffer) >= self._maxsize:
            if event.type == EventType.MESSAGE and self._drop_oldest_message():
                break
            self._writable.clear()
            await self._writable.wait()
        self.emit_nowait(event)

    def emit_nowait(self, event: Event) -> None:
        """Queue an event without honoring the bound. Used for terminal events."""
        if self._closed:
            return
        self._buffer.append(event)
        self._readable.set()

    def _drop_oldest_message(self) -> bool:
        for queued in self._buffer:
            if queued.type == EventType.MESSAGE:
                self._buffer.remove(queued)
                self.dropped += 1
                return True
        return False

    def close(self) -> None:
        """Mark the end of the stream; queued events remain readable."""
        self._closed = True
        self._readable.set()
        self._writable.set()

    async def aclose(self) -> None:
        """Stop consuming: cancel the producer and wait for it to finish."""
        producer = self._producer
        if producer is not None and not producer.done():
            producer.cancel()
            await asyncio.wait([producer])
        self.close()
        self._buffer.clear()

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> Event:
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            self._readable.clear()
            await self._readable.wait()
        event = self._buffer.popleft()
        self._writable.set()
        return event

    async def collect(self) -> list[Event]:
        return [event async for event in self]
