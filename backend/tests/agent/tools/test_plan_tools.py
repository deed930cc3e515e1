"""Tests for create_plan / update_plan against a live Session."""

import pytest

from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.state import PlanStatus, SessionPhase

pytestmark = pytest.mark.unit

PLAN = {
    "title": "Employee App",
    "summary": "Staff directory with leave requests",
    "groups": [{"id": "data", "title": "Data layer"}],
    "steps": [
        {"id": "s1", "description": "Create employees table", "tool": "create_table", "group_id": "data"},
        {"id": "s2", "description": "Seed employees", "tool": "insert_data", "group_id": "missing"},
        {"id": "s3", "description": "Build the UI", "tool": "generate_ui_schema"},
    ],
}


@pytest.fixture
def session(sessions, ctx):
    return sessions.get_or_create(ctx.session_id, ctx.workspace_id, ctx.user_id)


async def mark(registry, ctx, step_id, status):
    return await registry.execute(ctx, "update_plan", {"step_id": step_id, "status": status})


class TestCreatePlan:
    async def test_creates_draft(self, tool_registry, ctx, session):
        result = await tool_registry.execute(ctx, "create_plan", PLAN)

        assert result.success
        assert "Waiting for the user to confirm" in result.output
        plan = session.plan
        assert plan.status == PlanStatus.DRAFT
        assert [s.group_id for s in plan.steps] == ["data", None, None]
        assert session.phase == SessionPhase.PLANNING

    async def test_generated_step_ids(self, tool_registry, ctx, session):
        params = {"title": "Quick fix", "steps": [{"description": "rename column"}, {"description": "verify"}]}
        await tool_registry.execute(ctx, "create_plan", params)
        assert [s.id for s in session.plan.steps] == ["step_1", "step_2"]

    @pytest.mark.parametrize(
        "params,error",
        [
            ({"title": "  ", "steps": [{"description": "x"}]}, "title is required"),
            ({"title": "T", "steps": []}, "at least one step"),
            ({"title": "T", "steps": [{"id": "a", "description": "x"}, {"id": "a", "description": "y"}]}, "unique"),
        ],
    )
    async def test_rejects_bad_plans(self, tool_registry, ctx, session, params, error):
        result = await tool_registry.execute(ctx, "create_plan", params)
        assert not result.success
        assert error in result.error
        assert session.plan is None

    async def test_replacing_confirmed_plan_rejected(self, tool_registry, ctx, session):
        await tool_registry.execute(ctx, "create_plan", PLAN)
        session.confirm_plan()
        result = await tool_registry.execute(ctx, "create_plan", PLAN)
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_PARAMETERS

    async def test_replan_while_executing_stays_in_progress(self, tool_registry, ctx, session):
        await tool_registry.execute(ctx, "create_plan", PLAN)
        session.confirm_plan()
        session.start_execution()

        result = await tool_registry.execute(ctx, "create_plan", {"title": "Revised", "steps": [{"description": "x"}]})

        assert result.success
        assert session.plan.status == PlanStatus.IN_PROGRESS
        assert "Waiting for the user" not in result.output


class TestUpdatePlan:
    async def test_all_steps_terminal_completes_session(self, tool_registry, ctx, session):
        await tool_registry.execute(ctx, "create_plan", PLAN)
        session.confirm_plan()
        session.start_execution()

        await mark(tool_registry, ctx, "s1", "completed")
        await mark(tool_registry, ctx, "s2", "failed")
        assert session.phase == SessionPhase.EXECUTING
        result = await mark(tool_registry, ctx, "s3", "completed")

        assert result.success
        assert "the plan is completed" in result.output
        assert session.plan.status == PlanStatus.COMPLETED
        assert session.phase == SessionPhase.COMPLETED

    async def test_draft_plan_does_not_auto_complete(self, tool_registry, ctx, session):
        await tool_registry.execute(ctx, "create_plan", PLAN)
        for step_id in ("s1", "s2", "s3"):
            result = await mark(tool_registry, ctx, step_id, "completed")
            assert result.success

        assert session.plan.status == PlanStatus.DRAFT
        assert session.phase == SessionPhase.PLANNING

    async def test_unknown_step(self, tool_registry, ctx, session):
        await tool_registry.execute(ctx, "create_plan", PLAN)
        result = await mark(tool_registry, ctx, "s9", "completed")
        assert not result.success
        assert "not found" in result.error

    async def test_invalid_status_rejected_by_schema(self, tool_registry, ctx, session):
        await tool_registry.execute(ctx, "create_plan", PLAN)
        result = await mark(tool_registry, ctx, "s1", "done")
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_PARAMETERS

    async def test_no_session(self, tool_registry, ctx):
        result = await mark(tool_registry, ctx, "s1", "completed")
        assert not result.success
        assert "no active session" in result.error
