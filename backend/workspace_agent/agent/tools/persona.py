"""create_persona: register a staff persona from a declarative description."""

from __future__ import annotations

import re
import uuid
from typing import Any

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.personas import ACTION_TOOL_MAP, PersonaRegistry
from workspace_agent.agent.tools.base import Tool, ToolResult


def _persona_id(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "persona"
    return f"custom_{slug}_{uuid.uuid4().hex[:6]}"


class CreatePersonaTool(Tool):
    name = "create_persona"
    description = (
        "Create an AI staff persona for the app's users. `allowed_actions` decides which data "
        "tools it may call (query, insert, update, delete); it can always inspect the workspace."
    )
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "description": {"type": "string"},
            "role_prompt": {"type": "string", "minLength": 1},
            "allowed_actions": {
                "type": "array",
                "items": {"type": "string", "enum": list(ACTION_TOOL_MAP)},
                "minItems": 1,
                "uniqueItems": True,
            },
            "suggestions": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["name", "role_prompt", "allowed_actions"],
    }
    affected_resource = "persona"

    def __init__(self, personas: PersonaRegistry) -> None:
        self.personas = personas

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        persona = self.personas.register_custom(
            _persona_id(params["name"]),
            params["name"],
            params.get("description", ""),
            params["role_prompt"],
            params["allowed_actions"],
            params.get("suggestions"),
        )
        return ToolResult.ok(
            f"Persona '{persona.name}' created ({persona.id}) with tools: {', '.join(persona.tool_filter)}",
            {"persona_id": persona.id, "tool_filter": persona.tool_filter},
        )
