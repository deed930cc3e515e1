"""Tool contract shared by every concrete tool.

A tool is static metadata (``name``, ``description``, ``parameters`` JSON
schema, ``requires_confirmation``) plus ``execute(ctx, params)``. Tools are
polymorphic over that capability set; the variants are closed, one family per
module under ``agent/tools``.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind


class ToolResult(BaseModel):
    success: bool
    output: str = ""
    error: str | None = None
    data: Any = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, output: str, data: Any = None) -> ToolResult:
        return cls(success=True, output=output, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        kind: ErrorKind = ErrorKind.TOOL_ERROR,
        output: str = "",
        data: Any = None,
    ) -> ToolResult:
        return cls(success=False, error=error, error_kind=kind, output=output, data=data)

    def to_llm_content(self) -> str:
        """Render the result as the text fed back to the LLM."""
        if self.success:
            return self.output or "OK"
        parts = [f"Error: {self.error}"]
        if self.output:
            parts.append(self.output)
        return "\n".join(parts)

    def to_event_data(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "output": self.output}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


class Tool(ABC):
    name: ClassVar[str]
    description: ClassVar[str]
    parameters: ClassVar[dict[str, Any]] = {"type": "object", "properties": {}}
    requires_confirmation: ClassVar[bool] = False
    # database | ui_schema | logic | persona | app; reported with confirmation requests
    affected_resource: ClassVar[str | None] = None

    @abstractmethod
    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult: ...

    def definition(self) -> dict[str, Any]:
        """Anthropic ``ToolParam`` shape."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


def dumps(value: Any) -> str:
    """Compact JSON for tool output; non-JSON values fall back to str()."""
    return json.dumps(value, default=str, ensure_ascii=False)
