"""System prompt composition for agent turns.

Personas with their own prompt get it verbatim plus the workspace context
suffix. The app builder (empty prompt) gets the phase-aware web-creator prompt:

- planning: role, tools, capabilities, planning conversation guide (complexity-aware), context
- confirmed: full execution prompt plus the plan-confirmed guide
- executing / completed / failed: full execution prompt

Sections are joined with blank lines; empty sections are skipped.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import StrEnum

from workspace_agent.agent.personas import Persona
from workspace_agent.agent.session import Session
from workspace_agent.agent.state import SessionPhase, StepStatus
from workspace_agent.agent.tools.base import Tool
from workspace_agent.agent.tools.block_specs import BLOCK_SPECS


class RequestComplexity(StrEnum):
    SIMPLE = "simple"
    QUESTION = "question"
    COMPLEX = "complex"


TOOL_COSTS: dict[str, str] = {
    "get_workspace_info": "FREE",
    "get_ui_schema": "FREE",
    "get_block_spec": "FREE",
    "get_logic": "FREE",
    "list_components": "FREE",
    "query_data": "FREE",
    "query_vm_data": "FREE",
    "create_plan": "FREE",
    "update_plan": "FREE",
    "attempt_completion": "FREE",
    "create_table": "CHEAP",
    "alter_table": "CHEAP",
    "delete_table": "CHEAP",
    "insert_data": "CHEAP",
    "update_data": "CHEAP",
    "delete_data": "CHEAP",
    "batch": "CHEAP",
    "generate_ui_schema": "MODERATE",
    "modify_ui_schema": "MODERATE",
    "deploy_component": "MODERATE",
    "deploy_logic": "MODERATE",
    "publish_app": "MODERATE",
    "create_persona": "MODERATE",
    "task": "MODERATE",
}

_QUESTION_START = re.compile(
    r"^(what|which|how many|how much|how do|how does|why|where|who|when|is|are|does|do|can|could|show|list|tell)\b"
)
_BUILD_WORDS = (
    "build", "create", "make", "generate", "design", "develop", "add", "set up", "setup",
    "app", "system", "platform", "portal", "dashboard",
)
_SIMPLE_WORDS = ("add", "rename", "remove", "delete", "drop", "change", "update", "fix", "insert")
_DOMAIN_WORDS = (
    "app", "system", "platform", "portal", "management", "crm", "erp", "dashboard", "tracker", "website",
)


def classify_request_complexity(prompt: str) -> RequestComplexity:
    """Cheap keyword heuristic deciding how much Q&A the planning phase needs."""
    text = " ".join(prompt.lower().split())
    if not text:
        return RequestComplexity.COMPLEX
    wants_build = any(word in text for word in _BUILD_WORDS)
    if (text.endswith("?") or _QUESTION_START.match(text)) and not wants_build:
        return RequestComplexity.QUESTION
    words = text.split()
    if len(words) <= 12 and any(text.startswith(w) or f" {w} " in f" {text} " for w in _SIMPLE_WORDS):
        if not any(word in text for word in _DOMAIN_WORDS):
            return RequestComplexity.SIMPLE
    return RequestComplexity.COMPLEX


_ROLE_SECTION = """\
You are an expert low-code application builder. You turn a user's description into a working app:
database tables with seed data, a declarative UI schema, optional JavaScript route logic and custom
components. You work through tools only; you never ask the user to do the work themselves.
Be direct and technical. Do not start replies with filler such as "Great" or "Sure"."""

_CAPABILITIES_SECTION = """\
====

# Capabilities

- Data: create, alter and drop tables; insert, update, delete and query rows (SQLite dialect).
- UI: generate a full UI schema or apply incremental edits; look up block specs on demand.
- Logic: deploy JavaScript routes (`exports.routes`) backed by the workspace database.
- Orchestration: plans shown to the user as a TodoList, parallel `batch` calls, `task` delegation.
- Staff: create AI staff personas with a restricted set of data actions."""

_TOOL_GUIDELINES = """\
====

# Tool Use Guidelines

1. Assess before acting: call get_workspace_info on the first interaction.
2. Prefer FREE tools to verify state instead of guessing.
3. One logical operation per call; group independent calls with batch.
4. Read every tool result. A failed result explains what to fix; fix it before moving on.
5. Never invent table or column names; check them first."""

_PLAN_CONFIRMED_GUIDE = """\
====

# Plan Confirmed: Begin Execution

The user confirmed the plan. Execute it now.

1. Start from the first pending step.
2. Before each step call update_plan to mark it in_progress; after it, mark it completed.
3. Follow the plan order and do not skip steps.
4. If a step fails, mark it failed and try to fix it before moving on."""

_EXECUTION_GUIDE = """\
====

# Phased Execution

## Phase 1: Assessment
Call get_workspace_info. If a UI exists, call get_ui_schema before changing it.

## Phase 2A: Data Layer
Create tables in dependency order (parents first), then insert realistic seed rows so the app
is usable immediately.

## Phase 2B: UI Layer
New app: generate_ui_schema with the full schema. Changes: modify_ui_schema operations.
Call get_block_spec before using a block type you have not used in this session. Every
data_source.table and config.table_name must reference an existing table.

## Phase 2C: Verification
Call attempt_completion. If it reports issues, fix each one and call it again. After three
failures on the same issue, stop and report the details to the user.

## Parallel Execution
Use batch for two or more independent operations (for example several unrelated tables).
Never batch calls that depend on each other's results. batch and task cannot be nested in batch.

## Delegation
task delegates to sub-agents: data_modeler (schema and seed data), ui_designer (pages and
blocks), logic_developer (routes), general. Each prompt states the task, the expected outcome
and the relevant context.

## Final Answer
Summarize what was built: pages, tables, next steps. Do not end with a question."""

_APP_SCHEMA_SECTION = """\
====

# UI Schema Structure

```json
{
  "app_name": "Application Name",
  "default_page": "dashboard",
  "navigation": {"type": "sidebar", "items": [{"page_id": "dashboard", "label": "Dashboard", "icon": "LayoutDashboard"}]},
  "pages": [
    {
      "id": "dashboard",
      "title": "Dashboard",
      "route": "/dashboard",
      "blocks": [
        {"id": "table_users", "type": "data_table",
         "config": {"table_name": "users", "columns": [{"key": "name", "label": "Name"}]},
         "data_source": {"table": "users"}}
      ]
    }
  ]
}
```

Every block has a unique id, a type, a type-specific config and optionally a data_source.
navigation.items[].page_id must match pages[].id. Set "hidden": true on detail pages that are
reached only through row clicks."""

_HARD_RULES = """\
====

# Hard Rules

| Constraint | Enforcement |
|------------|-------------|
| UI referencing a table that does not exist | BLOCKED: create the table first |
| Modifying UI without reading the current schema | BLOCKED: call get_ui_schema first |
| Tables without seed data | BLOCKED: insert sample rows |
| Declaring completion without attempt_completion | BLOCKED |
| Retrying attempt_completion without fixing the reported issue | BLOCKED |
| Speculating about data without querying | BLOCKED: use query_data |"""


def _tools_section(tools: Iterable[Tool]) -> str:
    lines = [
        "====",
        "",
        "# Tools",
        "",
        "| Tool | Cost | Purpose |",
        "|------|------|---------|",
    ]
    for tool in tools:
        purpose = tool.description.split(". ")[0].rstrip(".")
        lines.append(f"| {tool.name} | {TOOL_COSTS.get(tool.name, 'CHEAP')} | {purpose} |")
    return "\n".join(lines)


def _block_reference() -> str:
    lines = ["====", "", "# Block Types", "", "Call get_block_spec for the full config of any type.", ""]
    lines.extend(f"- {name}: {spec.title}" for name, spec in BLOCK_SPECS.items())
    return "\n".join(lines)


def _planning_guide(hint: str | None) -> str:
    if hint == RequestComplexity.SIMPLE:
        mode = """\
## Mode: SIMPLE REQUEST
This request is a small, single-operation change. Skip the Q&A and call create_plan right
away with one to three steps. Only ask a question if something essential is missing."""
    elif hint == RequestComplexity.QUESTION:
        mode = """\
## Mode: INFORMATIONAL QUERY
This is a question with no build intent. Answer it directly, using get_workspace_info or
query_data if needed. Do not call create_plan."""
    else:
        mode = """\
## Mode: COMPLEX REQUEST
1. Work out the app type, core entities and required pages.
2. Ask two or three targeted questions about gaps (data model, pages, business rules).
3. After at most three rounds of questions, call create_plan with grouped steps
   (data layer, UI layer, verification) and a requirements summary."""
    return f"""\
====

# Planning Phase (ACTIVE)

Your only goal now is to understand the requirements and create a plan.
- Do not call construction tools (create_table, generate_ui_schema, deploy_logic, ...).
- You may call get_workspace_info, get_ui_schema, get_block_spec or query_data.
- The plan is shown to the user, who must confirm it before execution starts.

{mode}"""


def context_section(session: Session | None, workspace_id: str, user_id: str) -> str:
    lines = ["====", "", "# Context", "", f"Current workspace_id: {workspace_id}", f"Current user_id: {user_id}"]
    if session is None:
        return "\n".join(lines)
    lines.append(f"Session phase: {session.phase}")
    plan = session.plan
    if plan is not None:
        lines.append(f"Plan: {plan.title} (status: {plan.status}, {len(plan.steps)} steps)")
        if plan.summary:
            lines.append(f"Requirements summary: {plan.summary}")
        progress = plan.progress()
        summary = f"Progress: {progress[StepStatus.COMPLETED]}/{progress['total']} completed"
        if progress[StepStatus.IN_PROGRESS]:
            summary += f", {progress[StepStatus.IN_PROGRESS]} in progress"
        if progress[StepStatus.FAILED]:
            summary += f", {progress[StepStatus.FAILED]} failed"
        lines.append(summary)
        for step in plan.steps:
            lines.append(f"- [{step.status}] {step.id}: {step.description}")
    return "\n".join(lines)


def _join(*sections: str) -> str:
    return "\n\n".join(s for s in sections if s)


def build_web_creator_prompt(session: Session | None, tools: list[Tool], workspace_id: str, user_id: str) -> str:
    phase = session.phase if session is not None else SessionPhase.PLANNING
    context = context_section(session, workspace_id, user_id)

    if phase == SessionPhase.PLANNING:
        return _join(
            _ROLE_SECTION,
            _tools_section(tools),
            _CAPABILITIES_SECTION,
            _planning_guide(session.complexity_hint if session else None),
            context,
        )
    return _join(
        _ROLE_SECTION,
        _tools_section(tools),
        _TOOL_GUIDELINES,
        _CAPABILITIES_SECTION,
        _PLAN_CONFIRMED_GUIDE if phase == SessionPhase.CONFIRMED else "",
        _EXECUTION_GUIDE,
        _block_reference(),
        _APP_SCHEMA_SECTION,
        _HARD_RULES,
        context,
    )


def build_system_prompt(
    persona: Persona,
    session: Session | None,
    tools: list[Tool],
    workspace_id: str,
    user_id: str,
) -> str:
    """Effective system prompt for one LLM call."""
    if not persona.system_prompt.strip():
        return build_web_creator_prompt(session, tools, workspace_id, user_id)
    return f"{persona.system_prompt}\n\nCurrent workspace_id: {workspace_id}\nCurrent user_id: {user_id}"
