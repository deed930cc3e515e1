"""LLM client protocol, Anthropic streaming adapter and retry wrapper.

Provides:
- TextDelta / ToolCallStart / LLMResponse: the chunks an LLMClient stream yields
  (any number of deltas and starts, then exactly one LLMResponse)
- LLMClient: Protocol implemented by AnthropicLLMClient and the scripted fake
- to_anthropic_messages(): session history -> Anthropic Messages API payload
- complete_with_retry(): one LLM call with timeout and tenacity retries
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog
from anthropic import AsyncAnthropic
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from workspace_agent.agent.error.classifier import is_retryable_llm_error
from workspace_agent.agent.state import HistoryEntry, ToolCall
from workspace_agent.core.exceptions import LLMError

logger = structlog.get_logger(__name__)


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallStart:
    id: str
    name: str


@dataclass
class LLMResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


LLMChunk = TextDelta | ToolCallStart | LLMResponse


@runtime_checkable
class LLMClient(Protocol):
    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[LLMChunk]: ...


# ------------------------------------------------------------------
# Anthropic adapter
# ------------------------------------------------------------------


class AnthropicLLMClient:
    """Streams ``messages.stream`` events as LLM chunks."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 8192,
        temperature: float = 0.2,
        client: Any = None,
    ) -> None:
        self._client = client or AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[LLMChunk]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "system": system,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        if tools:
            kwargs["tools"] = tools

        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "text":
                    yield TextDelta(event.text)
                elif event.type == "content_block_start" and event.content_block.type == "tool_use":
                    yield ToolCallStart(event.content_block.id, event.content_block.name)
            final = await stream.get_final_message()

        text = "".join(b.text for b in final.content if b.type == "text")
        tool_calls = [
            ToolCall(id=b.id, name=b.name, arguments=b.input if isinstance(b.input, dict) else {})
            for b in final.content
            if b.type == "tool_use"
        ]
        yield LLMResponse(
            text=text,
            tool_calls=tool_calls,
            stop_reason=final.stop_reason,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
        )


# ------------------------------------------------------------------
# History conversion
# ------------------------------------------------------------------


def _arguments_dict(arguments: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    try:
        decoded = json.loads(arguments) if arguments.strip() else {}
    except json.JSONDecodeError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def to_anthropic_messages(history: list[HistoryEntry]) -> list[dict[str, Any]]:
    """Convert session history to Messages API format.

    Tool calls without a recorded result are omitted, tool results whose call
    was compacted away become plain text, and consecutive same-role messages are
    merged so roles alternate.
    """
    answered = {e.tool_call_id for e in history if e.role == "tool"}
    emitted_calls: set[str] = set()
    messages: list[dict[str, Any]] = []

    def push(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})

    for entry in history:
        if entry.role == "user":
            push("user", [{"type": "text", "text": entry.content or "(empty message)"}])
        elif entry.role == "assistant":
            blocks: list[dict[str, Any]] = []
            if entry.content:
                blocks.append({"type": "text", "text": entry.content})
            for call in entry.tool_calls or []:
                if call.id in answered:
                    emitted_calls.add(call.id)
                    blocks.append(
                        {"type": "tool_use", "id": call.id, "name": call.name, "input": _arguments_dict(call.arguments)}
                    )
            push("assistant", blocks)
        elif entry.tool_call_id in emitted_calls:
            push(
                "user",
                [{"type": "tool_result", "tool_use_id": entry.tool_call_id, "content": entry.content or "(no output)"}],
            )
        else:
            push("user", [{"type": "text", "text": f"[{entry.tool_name} result]\n{entry.content}"}])

    if messages and messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": [{"type": "text", "text": "(conversation continued)"}]})
    return messages


# ------------------------------------------------------------------
# Retry wrapper
# ------------------------------------------------------------------


async def complete_with_retry(
    llm: LLMClient,
    system: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]],
    on_chunk: Callable[[TextDelta | ToolCallStart], Awaitable[None]],
    timeout: float = 120.0,
    max_retries: int = 3,
    wait: wait_base | None = None,
) -> LLMResponse:
    """Run one streamed completion, retrying transient failures.

    Chunks are forwarded to *on_chunk* as they arrive. Once a chunk has been
    forwarded the call is no longer retried, so clients never see duplicates.

    Raises:
        LLMError: retries exhausted or a non-retryable provider error.
    """

    async def attempt() -> LLMResponse:
        forwarded = False

        async def consume() -> LLMResponse:
            nonlocal forwarded
            response: LLMResponse | None = None
            async for chunk in llm.stream(system, messages, tools):
                if isinstance(chunk, LLMResponse):
                    response = chunk
                else:
                    forwarded = True
                    await on_chunk(chunk)
            if response is None:
                raise LLMError("LLM stream ended without a final message", retryable=True)
            return response

        try:
            return await asyncio.wait_for(consume(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if forwarded and not isinstance(e, LLMError):
                raise LLMError(f"LLM stream interrupted: {e}") from e
            if forwarded:
                e.retryable = False
            raise

    try:
        async for attempt_state in AsyncRetrying(
            retry=retry_if_exception(is_retryable_llm_error),
            stop=stop_after_attempt(1 + max_retries),
            wait=wait or wait_exponential(multiplier=1, min=1, max=20),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "llm_call_retrying",
                attempt=rs.attempt_number,
                sleep_seconds=rs.next_action.sleep,
                error=str(rs.outcome.exception()),
            ),
        ):
            with attempt_state:
                return await attempt()
    except LLMError:
        raise
    except Exception as e:
        raise LLMError(f"{type(e).__name__}: {e}") from e
    raise LLMError("LLM call did not complete")
