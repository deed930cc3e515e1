"""ToolRegistry: catalog of tools and the single dispatch entry point.

``execute`` never raises for tool-level problems. Unknown tools, persona
denials, malformed arguments and exceptions thrown by the tool itself all come
back as ``ToolResult(success=False)`` so the LLM can correct course.
Cancellation is the only thing that propagates.
"""

from __future__ import annotations

import asyncio
import json
import threading
from typing import Any

import structlog
from jsonschema import Draft7Validator

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind, classify_tool_exception
from workspace_agent.agent.tools.base import Tool, ToolResult

logger = structlog.get_logger(__name__)

UNKNOWN_TOOL = "unknown tool"
PERSONA_DENIED = "tool not allowed by persona"


def format_validation_errors(validator: Draft7Validator, instance: Any) -> list[str]:
    errors = sorted(validator.iter_errors(instance), key=lambda e: list(e.path))
    formatted = []
    for error in errors:
        path = ".".join(str(p) for p in error.path) or "$"
        formatted.append(f"{path}: {error.message}")
    return formatted


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Draft7Validator] = {}
        self._lock = threading.RLock()

    def register(self, tool: Tool) -> None:
        Draft7Validator.check_schema(tool.parameters)
        with self._lock:
            if tool.name in self._tools:
                logger.warning("tool_replaced", tool=tool.name)
            self._tools[tool.name] = tool
            self._validators[tool.name] = Draft7Validator(tool.parameters)

    def get(self, name: str) -> Tool | None:
        with self._lock:
            return self._tools.get(name)

    def list_all(self) -> list[Tool]:
        with self._lock:
            return list(self._tools.values())

    def list_filtered(self, allowlist: frozenset[str] | set[str] | list[str] | None) -> list[Tool]:
        """Tools permitted by *allowlist*; empty or None permits all."""
        tools = self.list_all()
        if not allowlist:
            return tools
        allowed = set(allowlist)
        return [t for t in tools if t.name in allowed]

    def definitions(self, allowlist: frozenset[str] | set[str] | list[str] | None = None) -> list[dict[str, Any]]:
        return [t.definition() for t in self.list_filtered(allowlist)]

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools

    def validate(self, name: str, params: Any) -> tuple[dict[str, Any] | None, str | None]:
        """Decode and schema-check arguments. Returns (params, error)."""
        if isinstance(params, str):
            try:
                params = json.loads(params) if params.strip() else {}
            except json.JSONDecodeError as e:
                return None, f"invalid parameters: malformed JSON ({e.msg})"
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return None, "invalid parameters: arguments must be a JSON object"
        with self._lock:
            validator = self._validators[name]
        errors = format_validation_errors(validator, params)
        if errors:
            return None, "invalid parameters: " + "; ".join(errors)
        return params, None

    async def execute(self, ctx: ToolContext, name: str, params: Any) -> ToolResult:
        tool = self.get(name)
        if tool is None:
            return ToolResult.fail(UNKNOWN_TOOL, ErrorKind.UNKNOWN_TOOL)

        if not ctx.allows(name):
            logger.info("tool_denied_by_persona", tool=name, persona_id=ctx.persona_id)
            return ToolResult.fail(PERSONA_DENIED, ErrorKind.PERSONA_DENIED)

        decoded, error = self.validate(name, params)
        if error is not None:
            return ToolResult.fail(error, ErrorKind.INVALID_PARAMETERS)

        try:
            return await tool.execute(ctx, decoded)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind = classify_tool_exception(e)
            logger.warning(
                "tool_execution_failed",
                tool=name,
                error=str(e),
                error_type=type(e).__name__,
                kind=kind,
            )
            return ToolResult.fail(str(e) or type(e).__name__, kind)
