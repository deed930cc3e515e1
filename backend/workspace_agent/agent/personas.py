"""Personas: named agent identities with a system prompt and a tool allow-list.

Provides:
- Persona model. ``tool_filter`` is a closed allow-list; empty means every tool.
- Built-in personas seeded at boot: the app builder, staff personas and the
  sub-agent templates used by the ``task`` tool.
- build_persona_prompt(): wraps a user role prompt in the standard rules envelope.
- PersonaRegistry: thread-safe in-memory registry. Custom personas live only in
  memory; they are lost on restart.
"""

from __future__ import annotations

import threading

import structlog
from pydantic import BaseModel, Field

from workspace_agent.core.exceptions import PersonaNotFoundError

logger = structlog.get_logger(__name__)

DEFAULT_PERSONA_ID = "web_creator"
SUBAGENT_TEMPLATE_PREFIX = "subagent_"

# allowed_actions -> tool name
ACTION_TOOL_MAP: dict[str, str] = {
    "query": "query_data",
    "insert": "insert_data",
    "update": "update_data",
    "delete": "delete_data",
}
WRITE_ACTIONS = frozenset({"insert", "update", "delete"})

WRITE_RULES = """- Always call get_workspace_info first to learn the available tables and columns.
- Only read or change data in tables that exist; never invent table or column names.
- Before inserting, updating or deleting, restate exactly which records will change.
- Confirm with the user before any delete, and never delete more rows than requested.
- After a write, report what changed (table, number of rows, key values)."""

READ_ONLY_RULES = """- Always call get_workspace_info first to learn the available tables and columns.
- You have READ-ONLY access. Never attempt to insert, update or delete data.
- Only query tables that exist; never invent table or column names.
- If the user asks for a change, explain that you cannot modify data and suggest who can.
- Summarize query results clearly; include counts and key figures."""


class Persona(BaseModel):
    id: str
    name: str
    description: str = ""
    system_prompt: str = ""
    tool_filter: list[str] = Field(default_factory=list)
    enabled: bool = True
    suggestions: list[str] = Field(default_factory=list)
    builtin: bool = False

    def allowed_tools(self) -> frozenset[str]:
        return frozenset(self.tool_filter)


def actions_to_tools(allowed_actions: list[str]) -> list[str]:
    """Map persona actions to tool names; get_workspace_info is always included."""
    tools = ["get_workspace_info"]
    for action in allowed_actions:
        tool = ACTION_TOOL_MAP.get(action)
        if tool and tool not in tools:
            tools.append(tool)
    return tools


def build_persona_prompt(name: str, role_prompt: str, allowed_actions: list[str]) -> str:
    rules = WRITE_RULES if WRITE_ACTIONS.intersection(allowed_actions) else READ_ONLY_RULES
    return (
        f"You are **{name}**, a specialized AI staff assistant.\n"
        "\n"
        f"{role_prompt.strip()}\n"
        "\n"
        "IMPORTANT RULES:\n"
        f"{rules}\n"
        "\n"
        "You MUST respond with either:\n"
        "- A tool call (function_call) to perform a data operation\n"
        "- A plain text message with your response or asking for clarification"
    )


def _staff(
    persona_id: str,
    name: str,
    description: str,
    role_prompt: str,
    actions: list[str],
    suggestions: list[str],
) -> Persona:
    return Persona(
        id=persona_id,
        name=name,
        description=description,
        system_prompt=build_persona_prompt(name, role_prompt, actions),
        tool_filter=actions_to_tools(actions),
        suggestions=suggestions,
        builtin=True,
    )


SUBAGENT_TEMPLATES: dict[str, Persona] = {
    "data_modeler": Persona(
        id=f"{SUBAGENT_TEMPLATE_PREFIX}data_modeler",
        name="Data Modeler",
        description="Designs and creates database tables and seed data.",
        system_prompt=(
            "You are a data modeling specialist working inside a low-code app builder. "
            "Design normalized tables for the requested domain, create them with create_table, "
            "and seed each table with a few realistic rows using insert_data. "
            "Inspect the workspace first with get_workspace_info and reuse existing tables. "
            "Finish with a short summary of the tables, their columns and the seeded row counts."
        ),
        tool_filter=[
            "create_table",
            "alter_table",
            "delete_table",
            "insert_data",
            "query_data",
            "get_workspace_info",
        ],
        builtin=True,
    ),
    "ui_designer": Persona(
        id=f"{SUBAGENT_TEMPLATE_PREFIX}ui_designer",
        name="UI Designer",
        description="Builds and edits the UI schema.",
        system_prompt=(
            "You are a UI specialist. Read the current schema with get_ui_schema, look up block "
            "configuration with get_block_spec before using a block type, and only reference "
            "tables that exist (check with get_workspace_info). Prefer modify_ui_schema for small "
            "edits. Finish with a short summary of the pages you built or changed."
        ),
        tool_filter=[
            "get_workspace_info",
            "get_ui_schema",
            "get_block_spec",
            "generate_ui_schema",
            "modify_ui_schema",
            "query_data",
        ],
        builtin=True,
    ),
    "logic_developer": Persona(
        id=f"{SUBAGENT_TEMPLATE_PREFIX}logic_developer",
        name="Logic Developer",
        description="Writes and deploys the workspace's JavaScript routes.",
        system_prompt=(
            "You are a backend logic specialist. Write JavaScript that sets exports.routes, uses "
            "the db binding for data access and returns {status, body} on errors. Read the "
            "current code with get_logic before replacing it and deploy with deploy_logic. "
            "Finish with a list of the routes you deployed."
        ),
        tool_filter=["get_workspace_info", "get_logic", "deploy_logic", "query_data"],
        builtin=True,
    ),
    "general": Persona(
        id=f"{SUBAGENT_TEMPLATE_PREFIX}general",
        name="General Assistant",
        description="Handles self-contained subtasks across data, UI and logic.",
        system_prompt=(
            "You are a focused assistant completing one delegated subtask inside a low-code app "
            "builder. Work only on the subtask you were given and finish with a concise summary "
            "of what you did."
        ),
        tool_filter=[
            "get_workspace_info",
            "create_table",
            "alter_table",
            "insert_data",
            "update_data",
            "query_data",
            "get_ui_schema",
            "get_block_spec",
            "generate_ui_schema",
            "modify_ui_schema",
            "get_logic",
            "deploy_logic",
            "list_components",
        ],
        builtin=True,
    ),
}


def builtin_personas() -> list[Persona]:
    personas = [
        Persona(
            id=DEFAULT_PERSONA_ID,
            name="App Builder",
            description="Builds complete apps: database, UI and logic.",
            builtin=True,
        ),
        _staff(
            "data_analyst",
            "Data Analyst",
            "Answers questions about the app's data.",
            "You analyze the workspace data and answer questions with concrete numbers.",
            ["query"],
            ["How many records were added this week?", "Show the top 5 customers by order total"],
        ),
        _staff(
            "data_entry_clerk",
            "Data Entry Clerk",
            "Adds and corrects records.",
            "You help the team keep records complete and correct.",
            ["query", "insert", "update"],
            ["Add a new customer", "Fix the email of order 42"],
        ),
        _staff(
            "records_manager",
            "Records Manager",
            "Maintains records, including removals.",
            "You maintain the workspace's records and clean up obsolete data on request.",
            ["query", "insert", "update", "delete"],
            ["Archive completed tasks", "Remove duplicate contacts"],
        ),
    ]
    return personas + [p.model_copy() for p in SUBAGENT_TEMPLATES.values()]


class PersonaRegistry:
    def __init__(self, seed_builtins: bool = True) -> None:
        self._personas: dict[str, Persona] = {}
        self._lock = threading.RLock()
        if seed_builtins:
            for persona in builtin_personas():
                self.register(persona)

    def register(self, persona: Persona) -> None:
        with self._lock:
            self._personas[persona.id] = persona
        logger.debug("persona_registered", persona_id=persona.id)

    def unregister(self, persona_id: str) -> bool:
        with self._lock:
            removed = self._personas.pop(persona_id, None) is not None
        if removed:
            logger.debug("persona_unregistered", persona_id=persona_id)
        return removed

    def get(self, persona_id: str) -> Persona | None:
        with self._lock:
            return self._personas.get(persona_id)

    def resolve(self, persona_id: str | None) -> Persona:
        """Return an enabled persona, falling back to the app builder when no id is given.

        Raises:
            PersonaNotFoundError: unknown or disabled persona.
        """
        persona = self.get(persona_id or DEFAULT_PERSONA_ID)
        if persona is None or not persona.enabled:
            raise PersonaNotFoundError(persona_id or DEFAULT_PERSONA_ID)
        return persona

    def list_all(self, include_transient: bool = False) -> list[Persona]:
        with self._lock:
            personas = list(self._personas.values())
        if include_transient:
            return personas
        return [p for p in personas if not p.id.startswith("_")]

    def register_custom(
        self,
        persona_id: str,
        name: str,
        description: str,
        role_prompt: str,
        allowed_actions: list[str],
        suggestions: list[str] | None = None,
    ) -> Persona:
        persona = Persona(
            id=persona_id,
            name=name,
            description=description,
            system_prompt=build_persona_prompt(name, role_prompt, allowed_actions),
            tool_filter=actions_to_tools(allowed_actions),
            suggestions=suggestions or [],
        )
        self.register(persona)
        logger.info("custom_persona_registered", persona_id=persona_id, tools=persona.tool_filter)
        return persona
