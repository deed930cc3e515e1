"""Scripted LLMClient for tests and offline runs.

Each call to ``stream`` plays the next ScriptedTurn. When the script runs out,
an optional ``responder`` decides the turn; otherwise the client answers with
``default_text`` and no tool calls.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from workspace_agent.agent.llm import LLMChunk, LLMResponse, TextDelta, ToolCallStart
from workspace_agent.agent.state import ToolCall


@dataclass
class ScriptedTurn:
    text: str = ""
    tool_calls: list[ToolCall | dict[str, Any]] = field(default_factory=list)
    error: BaseException | None = None
    delay: float = 0.0


def _as_tool_call(call: ToolCall | dict[str, Any]) -> ToolCall:
    if isinstance(call, ToolCall):
        return call
    return ToolCall(id=call.get("id", ""), name=call["name"], arguments=call.get("arguments", {}))


class ScriptedLLMClient:
    def __init__(
        self,
        turns: list[ScriptedTurn] | None = None,
        responder: Callable[[str, list[dict[str, Any]], list[dict[str, Any]]], ScriptedTurn] | None = None,
        default_text: str = "Done.",
    ) -> None:
        self._turns = deque(turns or [])
        self._responder = responder
        self._default_text = default_text
        self.calls: list[dict[str, Any]] = []

    def add_turns(self, *turns: ScriptedTurn) -> None:
        self._turns.extend(turns)

    def _next_turn(self, system: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> ScriptedTurn:
        if self._turns:
            return self._turns.popleft()
        if self._responder is not None:
            return self._responder(system, messages, tools)
        return ScriptedTurn(text=self._default_text)

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[LLMChunk]:
        self.calls.append({"system": system, "messages": messages, "tools": [t["name"] for t in tools]})
        turn = self._next_turn(system, messages, tools)
        if turn.delay:
            await asyncio.sleep(turn.delay)
        if turn.error is not None:
            raise turn.error
        if turn.text:
            yield TextDelta(turn.text)
        calls = [_as_tool_call(c) for c in turn.tool_calls]
        for call in calls:
            yield ToolCallStart(call.id, call.name)
        yield LLMResponse(
            text=turn.text,
            tool_calls=calls,
            stop_reason="tool_use" if calls else "end_turn",
        )
