"""Tests for ToolRegistry dispatch: lookup, persona filtering, validation and error capture."""

from dataclasses import replace
from typing import Any

import jsonschema
import pytest

from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.agent.tools.registry import PERSONA_DENIED, UNKNOWN_TOOL, ToolRegistry

pytestmark = pytest.mark.unit

EXPECTED_TOOLS = {
    "create_table", "alter_table", "delete_table", "insert_data", "update_data", "delete_data",
    "query_data", "query_vm_data", "get_workspace_info", "generate_ui_schema", "modify_ui_schema",
    "get_ui_schema", "get_block_spec", "deploy_logic", "get_logic", "deploy_component",
    "list_components", "publish_app", "create_plan", "update_plan", "batch", "task",
    "attempt_completion", "create_persona",
}


class EchoTool(Tool):
    name = "echo"
    description = "Echo the text back."
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}, "times": {"type": "integer", "minimum": 1}},
        "required": ["text"],
    }

    async def execute(self, ctx, params: dict[str, Any]) -> ToolResult:
        return ToolResult.ok(params["text"] * params.get("times", 1))


class ExplodingTool(Tool):
    name = "explode"
    description = "Always raises."

    async def execute(self, ctx, params: dict[str, Any]) -> ToolResult:
        raise RuntimeError("kaboom")


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(ExplodingTool())
    return registry


def test_catalog_registers_every_tool(tool_registry):
    assert {t.name for t in tool_registry.list_all()} == EXPECTED_TOOLS
    assert "batch" in tool_registry


def test_definitions_filtered_by_allowlist(registry):
    assert [d["name"] for d in registry.definitions()] == ["echo", "explode"]
    assert [d["name"] for d in registry.definitions(frozenset({"echo"}))] == ["echo"]
    assert registry.definitions()[0]["input_schema"]["required"] == ["text"]


def test_invalid_schema_rejected_at_registration():
    class Broken(EchoTool):
        name = "broken"
        parameters = {"type": "object", "properties": {"x": {"type": "not-a-type"}}}

    with pytest.raises(jsonschema.SchemaError):
        ToolRegistry().register(Broken())


class TestExecute:
    async def test_success(self, registry, ctx):
        result = await registry.execute(ctx, "echo", {"text": "ab", "times": 2})
        assert result.success
        assert result.output == "abab"

    async def test_json_string_arguments_decoded(self, registry, ctx):
        result = await registry.execute(ctx, "echo", '{"text": "hi"}')
        assert result.output == "hi"

    async def test_unknown_tool(self, registry, ctx):
        result = await registry.execute(ctx, "nope", {})
        assert not result.success
        assert result.error == UNKNOWN_TOOL
        assert result.error_kind == ErrorKind.UNKNOWN_TOOL

    async def test_persona_filter_denies(self, registry, ctx):
        restricted = replace(ctx, tool_filter=frozenset({"explode"}))
        result = await registry.execute(restricted, "echo", {"text": "hi"})
        assert not result.success
        assert result.error == PERSONA_DENIED
        assert result.error_kind == ErrorKind.PERSONA_DENIED

    @pytest.mark.parametrize(
        "arguments,fragment",
        [
            ('{"text": ', "malformed JSON"),
            ([1, 2], "must be a JSON object"),
            ({}, "'text' is a required property"),
            ({"text": "x", "times": 0}, "times:"),
        ],
    )
    async def test_invalid_parameters(self, registry, ctx, arguments, fragment):
        result = await registry.execute(ctx, "echo", arguments)
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_PARAMETERS
        assert result.error.startswith("invalid parameters")
        assert fragment in result.error

    async def test_tool_exception_becomes_failed_result(self, registry, ctx):
        result = await registry.execute(ctx, "explode", {})
        assert not result.success
        assert result.error == "kaboom"
        assert result.error_kind == ErrorKind.TOOL_ERROR

    async def test_sql_errors_classified(self, tool_registry, ctx):
        result = await tool_registry.execute(ctx, "query_data", {"sql": "SELECT * FROM nowhere"})
        assert not result.success
        assert result.error_kind == ErrorKind.SQL_ERROR
        assert "no such table" in result.error


def test_failed_result_rendering():
    result = ToolResult.fail("bad input", output="details")
    assert result.to_llm_content() == "Error: bad input\ndetails"
    assert result.to_event_data() == {"success": False, "output": "details", "error": "bad input"}
    assert ToolResult.ok("").to_llm_content() == "OK"
