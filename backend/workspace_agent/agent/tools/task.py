"""task: delegate a subtask to a specialized sub-agent.

A transient persona ``_subagent_<type>_<ns>`` is registered for the run and
removed afterwards. Its allow-list is the template's filter narrowed by the
caller's own filter, so delegation never widens permissions.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

import structlog

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.personas import SUBAGENT_TEMPLATE_PREFIX, SUBAGENT_TEMPLATES, Persona, PersonaRegistry
from workspace_agent.agent.tools.base import Tool, ToolResult

logger = structlog.get_logger(__name__)


class SubAgentRunner(Protocol):
    async def run_subagent(self, ctx: ToolContext, persona: Persona, prompt: str) -> dict[str, Any]: ...


class TaskTool(Tool):
    name = "task"
    description = (
        "Delegate a self-contained subtask to a specialized sub-agent and get back its summary. "
        "subagent_type: data_modeler (tables and seed data), ui_designer (UI schema), "
        "logic_developer (JavaScript routes) or general."
    )
    parameters = {
        "type": "object",
        "properties": {
            "description": {"type": "string", "description": "Short label for the subtask."},
            "prompt": {"type": "string", "minLength": 1},
            "subagent_type": {"type": "string", "enum": list(SUBAGENT_TEMPLATES)},
        },
        "required": ["prompt", "subagent_type"],
    }

    def __init__(
        self,
        personas: PersonaRegistry,
        runner: SubAgentRunner | None = None,
        timeout_seconds: float = 300.0,
        max_depth: int = 2,
    ) -> None:
        self.personas = personas
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.max_depth = max_depth

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        if self.runner is None:
            return ToolResult.fail("sub-agents are not available")
        if ctx.depth >= self.max_depth:
            return ToolResult.fail(
                f"task nesting limit reached (depth {ctx.depth}, max {self.max_depth})",
                ErrorKind.INVALID_PARAMETERS,
            )

        subagent_type = params["subagent_type"]
        template = self.personas.get(f"{SUBAGENT_TEMPLATE_PREFIX}{subagent_type}") or SUBAGENT_TEMPLATES[subagent_type]
        tools = [t for t in template.tool_filter if ctx.allows(t)]
        if not tools:
            return ToolResult.fail(
                f"persona does not allow any tool needed by the {subagent_type} sub-agent",
                ErrorKind.PERSONA_DENIED,
            )

        persona = template.model_copy(
            update={
                "id": f"_subagent_{subagent_type}_{time.time_ns()}",
                "tool_filter": tools,
                "builtin": False,
            }
        )
        prompt = params["prompt"]
        if params.get("description"):
            prompt = f"{params['description']}\n\n{prompt}"

        self.personas.register(persona)
        log = logger.bind(persona_id=persona.id, parent_session_id=ctx.session_id, depth=ctx.depth + 1)
        log.info("subagent_started", subagent_type=subagent_type)
        try:
            outcome = await asyncio.wait_for(
                self.runner.run_subagent(ctx, persona, prompt),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            log.warning("subagent_timed_out", timeout=self.timeout_seconds)
            return ToolResult.fail(f"sub-agent timed out after {self.timeout_seconds:g}s")
        finally:
            self.personas.unregister(persona.id)

        outcome = {"subagent_type": subagent_type, "persona_id": persona.id, **outcome}
        log.info("subagent_finished", status=outcome.get("status"), tool_calls=outcome.get("tool_calls"))
        summary = (
            f"Sub-agent {subagent_type} {outcome.get('status', 'finished')} after "
            f"{outcome.get('tool_calls', 0)} tool call(s).\n\n{outcome.get('final_message') or '(no final message)'}"
        )
        if outcome.get("status") == "failed":
            return ToolResult.fail(outcome.get("error") or "sub-agent failed", output=summary, data=outcome)
        return ToolResult.ok(summary, outcome)
