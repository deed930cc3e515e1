"""Planning tools: create_plan and update_plan.

Both operate on the Session named by ``ctx.session_id``. Plan invariants
(group references, auto-completion) are enforced by the Session itself.
"""

from __future__ import annotations

from typing import Any

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.session import SessionManager
from workspace_agent.agent.state import Plan, PlanGroup, PlanStatus, PlanStep, SessionPhase, StepStatus
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.core.exceptions import PlanStateError


def build_plan(params: dict[str, Any]) -> Plan:
    """Normalize create_plan arguments into a Plan; unknown group ids are cleared."""
    groups = [
        PlanGroup(id=str(g["id"]), title=g.get("title", ""), description=g.get("description", ""))
        for g in params.get("groups") or []
        if g.get("id")
    ]
    group_ids = {g.id for g in groups}
    steps = []
    for n, raw in enumerate(params["steps"], start=1):
        group_id = raw.get("group_id")
        steps.append(
            PlanStep(
                id=str(raw.get("id") or f"step_{n}"),
                description=raw["description"],
                tool=raw.get("tool"),
                group_id=group_id if group_id in group_ids else None,
            )
        )
    return Plan(
        title=params["title"].strip(),
        summary=params.get("summary", ""),
        groups=groups,
        steps=steps,
    )


class CreatePlanTool(Tool):
    name = "create_plan"
    description = (
        "Propose a plan before multi-step work. The plan stays a draft until the user confirms it. "
        "Steps may name the tool they will use and a group_id from `groups`."
    )
    parameters = {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "summary": {"type": "string"},
            "groups": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "title": {"type": "string"},
                        "description": {"type": "string"},
                    },
                    "required": ["id"],
                },
            },
            "steps": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "description": {"type": "string"},
                        "tool": {"type": "string"},
                        "group_id": {"type": "string"},
                    },
                    "required": ["description"],
                },
            },
        },
        "required": ["title", "steps"],
    }

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        if not params["title"].strip():
            return ToolResult.fail("plan title is required", ErrorKind.INVALID_PARAMETERS)
        if not params["steps"]:
            return ToolResult.fail("plan needs at least one step", ErrorKind.INVALID_PARAMETERS)

        plan = build_plan(params)
        ids = [s.id for s in plan.steps]
        if len(set(ids)) != len(ids):
            return ToolResult.fail("step ids must be unique", ErrorKind.INVALID_PARAMETERS)

        session = self.sessions.get(ctx.session_id) if ctx.session_id else None
        if session is not None:
            if session.phase == SessionPhase.EXECUTING:
                plan.status = PlanStatus.IN_PROGRESS
            try:
                session.set_plan(plan)
            except PlanStateError as e:
                return ToolResult.fail(str(e), ErrorKind.INVALID_PARAMETERS)

        output = f"Plan '{plan.title}' created with {len(plan.steps)} step(s)."
        if plan.status == PlanStatus.DRAFT:
            output += " Waiting for the user to confirm it before executing."
        return ToolResult.ok(
            output,
            {"type": "plan", "status": plan.status.value, "plan": plan.model_dump(mode="json")},
        )


class UpdatePlanTool(Tool):
    name = "update_plan"
    description = "Update one plan step's status (pending, in_progress, completed, failed) with an optional note."
    parameters = {
        "type": "object",
        "properties": {
            "step_id": {"type": "string"},
            "status": {"type": "string", "enum": [s.value for s in StepStatus]},
            "note": {"type": "string"},
        },
        "required": ["step_id", "status"],
    }

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        session = self.sessions.get(ctx.session_id) if ctx.session_id else None
        if session is None:
            return ToolResult.fail("no active session for plan updates")
        try:
            plan = session.update_plan_step(params["step_id"], StepStatus(params["status"]), params.get("note"))
        except PlanStateError as e:
            return ToolResult.fail(str(e), ErrorKind.INVALID_PARAMETERS)

        progress = plan.progress()
        output = (
            f"Step '{params['step_id']}' is {params['status']} "
            f"({progress['completed']}/{progress['total']} completed)."
        )
        if plan.status == PlanStatus.COMPLETED:
            output += " All steps are done; the plan is completed."
        return ToolResult.ok(output, {"type": "plan_update", "plan": plan.model_dump(mode="json")})
