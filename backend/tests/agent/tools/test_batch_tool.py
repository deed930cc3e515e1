"""Tests for the batch tool: concurrency, nesting rejection and the call cap."""

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.agent.tools.batch import BatchTool
from workspace_agent.agent.tools.registry import PERSONA_DENIED, ToolRegistry

pytestmark = pytest.mark.unit


def table_call(name: str) -> dict[str, Any]:
    return {"tool": "create_table", "parameters": {"name": name, "columns": [{"name": "label", "type": "TEXT"}]}}


async def test_three_tables_created(tool_registry, ctx, vm_store):
    calls = [table_call(n) for n in ("a", "b", "c")]
    result = await tool_registry.execute(ctx, "batch", {"tool_calls": calls})

    assert result.success
    assert result.output.startswith("Batch execution: 3/3 successful")
    assert {t.name for t in await vm_store.list_tables(ctx.workspace_id)} == {"a", "b", "c"}


async def test_nested_batch_and_task_rejected_without_failing_siblings(tool_registry, ctx, vm_store):
    calls = [
        {"tool": "batch", "parameters": {"tool_calls": [table_call("inner")]}},
        table_call("outer"),
        {"tool": "task", "parameters": {"prompt": "x", "subagent_type": "general"}},
    ]
    result = await tool_registry.execute(ctx, "batch", {"tool_calls": calls})

    assert result.success
    outcomes = [(r["tool"], r["success"]) for r in result.data["results"]]
    assert outcomes == [("batch", False), ("create_table", True), ("task", False)]
    assert "cannot be called inside batch" in result.data["results"][0]["error"]
    assert [t.name for t in await vm_store.list_tables(ctx.workspace_id)] == ["outer"]


@pytest.mark.parametrize("requested", [1, 25, 26, 40])
async def test_call_cap(tool_registry, ctx, requested):
    calls = [{"tool": "get_block_spec", "parameters": {"block_type": "markdown"}} for _ in range(requested)]
    result = await tool_registry.execute(ctx, "batch", {"tool_calls": calls})

    assert result.data["executed"] == min(requested, 25)
    assert result.data["discarded"] == max(0, requested - 25)
    assert len(result.data["results"]) == min(requested, 25)
    assert result.data["failed"] == max(0, requested - 25)


async def test_sub_calls_respect_persona_filter(tool_registry, ctx):
    restricted = replace(ctx, tool_filter=frozenset({"batch", "get_block_spec"}))
    calls = [{"tool": "get_block_spec", "parameters": {"block_type": "chart"}}, table_call("nope")]
    result = await tool_registry.execute(restricted, "batch", {"tool_calls": calls})

    assert result.data["successful"] == 1
    assert result.data["results"][1]["error"] == PERSONA_DENIED


async def test_confirmation_gated_tools_rejected_when_confirmation_required(tool_registry, ctx, vm_store):
    gated = replace(ctx, confirmation_required=True)
    calls = [table_call("keep"), {"tool": "delete_table", "parameters": {"table_name": "keep"}}]
    result = await tool_registry.execute(gated, "batch", {"tool_calls": calls})

    outcomes = [(r["tool"], r["success"]) for r in result.data["results"]]
    assert outcomes == [("create_table", True), ("delete_table", False)]
    assert "needs user confirmation" in result.data["results"][1]["error"]
    assert [t.name for t in await vm_store.list_tables(ctx.workspace_id)] == ["keep"]


async def test_all_failed_is_a_failure(tool_registry, ctx):
    result = await tool_registry.execute(ctx, "batch", {"tool_calls": [{"tool": "no_such_tool"}]})
    assert not result.success
    assert result.error == "all batched calls failed"
    assert "[0] no_such_tool: failed: unknown tool" in result.output


async def test_calls_run_concurrently(ctx):
    running = 0
    peak = 0

    class SlowTool(Tool):
        name = "slow"
        description = "Sleeps briefly."

        async def execute(self, ctx, params):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return ToolResult.ok("done")

    registry = ToolRegistry()
    registry.register(SlowTool())
    registry.register(BatchTool(registry))

    result = await registry.execute(ctx, "batch", {"tool_calls": [{"tool": "slow"} for _ in range(5)]})

    assert result.data["successful"] == 5
    assert peak == 5
