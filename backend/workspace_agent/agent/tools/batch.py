"""batch: run independent tool calls concurrently and report them as one result.

Sub-calls go through the registry, so persona filtering and parameter
validation apply to each one. ``batch`` and ``task`` are rejected per call,
as are confirmation-gated tools while the context requires confirmation.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.agent.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CALLS = 25
FORBIDDEN_IN_BATCH = frozenset({"batch", "task"})


class BatchTool(Tool):
    name = "batch"
    description = (
        "Execute up to 25 independent tool calls in parallel. Use it for calls that do not depend "
        "on each other's results, e.g. creating several tables. `batch` and `task` cannot be nested."
    )
    parameters = {
        "type": "object",
        "properties": {
            "tool_calls": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "tool": {"type": "string"},
                        "parameters": {"type": "object"},
                    },
                    "required": ["tool"],
                },
            },
        },
        "required": ["tool_calls"],
    }

    def __init__(self, registry: ToolRegistry, max_calls: int = DEFAULT_MAX_CALLS) -> None:
        self.registry = registry
        self.max_calls = max_calls

    async def _run_one(self, ctx: ToolContext, call: dict[str, Any]) -> ToolResult:
        tool_name = call["tool"]
        if tool_name in FORBIDDEN_IN_BATCH:
            return ToolResult.fail(f"'{tool_name}' cannot be called inside batch", ErrorKind.INVALID_PARAMETERS)
        tool = self.registry.get(tool_name)
        if ctx.confirmation_required and tool is not None and tool.requires_confirmation:
            return ToolResult.fail(
                f"'{tool_name}' needs user confirmation and cannot run inside batch; call it directly",
                ErrorKind.INVALID_PARAMETERS,
            )
        return await self.registry.execute(ctx, tool_name, call.get("parameters") or {})

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        requested = params["tool_calls"]
        calls = requested[: self.max_calls]
        discarded = len(requested) - len(calls)
        if discarded:
            logger.warning("batch_calls_discarded", requested=len(requested), discarded=discarded)

        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self._run_one(ctx, call)) for call in calls]
        results = [t.result() for t in tasks]

        successful = sum(1 for r in results if r.success)
        failed = len(results) - successful + discarded
        entries = [
            {
                "tool": call["tool"],
                "success": result.success,
                "output": result.output,
                "error": result.error,
            }
            for call, result in zip(calls, results, strict=True)
        ]
        lines = [f"Batch execution: {successful}/{len(requested)} successful"]
        for i, entry in enumerate(entries):
            status = "ok" if entry["success"] else f"failed: {entry['error']}"
            lines.append(f"[{i}] {entry['tool']}: {status}")
        if discarded:
            lines.append(f"{discarded} call(s) discarded (limit {self.max_calls})")

        data = {
            "executed": len(calls),
            "discarded": discarded,
            "successful": successful,
            "failed": failed,
            "results": entries,
        }
        output = "\n".join(lines)
        if successful == 0:
            return ToolResult.fail("all batched calls failed", ErrorKind.TOOL_ERROR, output=output, data=data)
        return ToolResult.ok(output, data)
