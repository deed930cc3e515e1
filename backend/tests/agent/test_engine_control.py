"""Engine control paths: confirmations, cancellation, busy sessions, limits, failures and plan mode."""

import asyncio
from typing import Any

import pytest
import structlog

from workspace_agent.agent.engine import PLAN_MODE_TOOLS, REDACTED_MESSAGE
from workspace_agent.agent.events import EventType
from workspace_agent.agent.llm_fake import ScriptedLLMClient, ScriptedTurn
from workspace_agent.agent.state import Plan, PlanStep, SessionPhase
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.core.exceptions import LLMError, SessionNotFoundError, StoreError
from workspace_agent.vm.models import ColumnDef, CreateTableRequest

pytestmark = pytest.mark.unit

WS = "ws-test"
USER = "user-001"
SID = "sess-ctl"


def call(name, arguments=None, call_id=""):
    return {"id": call_id, "name": name, "arguments": arguments or {}}


async def run(engine, prompt, session_id=SID, persona_id=None):
    return await engine.run(WS, USER, prompt, session_id=session_id, persona_id=persona_id).collect()


def kinds(events):
    return [e.type.value for e in events]


async def wait_until_running(sessions, session_id):
    for _ in range(200):
        session = sessions.get(session_id)
        if session is not None and session.running:
            return session
        await asyncio.sleep(0.005)
    raise AssertionError(f"session {session_id} never started")


@pytest.fixture
async def old_table(vm_store):
    await vm_store.create_table(WS, CreateTableRequest(name="old", columns=[ColumnDef(name="v")]))


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


class TestConfirmation:
    def script(self):
        return ScriptedLLMClient(
            [ScriptedTurn(tool_calls=[call("delete_table", {"table_name": "old"}, "d1"), call("get_logic", {}, "g1")])]
        )

    async def test_destructive_call_is_parked(self, build_engine, sessions, vm_store, old_table):
        engine = build_engine(self.script(), confirm_destructive_tools=True)
        events = await run(engine, "drop the old table")

        assert kinds(events) == ["tool_call_start", "tool_call_start", "tool_call", "confirmation_required", "done"]
        confirmation = events[3].data
        assert confirmation["tool_name"] == "delete_table"
        assert confirmation["tool_call_id"] == "d1"
        assert confirmation["affected_resource"] == "database"
        assert events[-1].data["reason"] == "awaiting_confirmation"
        assert [t.name for t in await vm_store.list_tables(WS)] == ["old"]

        history = sessions.get(SID).history
        assert history[-1].content.startswith("Skipped: waiting for the user to confirm")

    async def test_approve_executes_once(self, build_engine, sessions, vm_store, old_table):
        engine = build_engine(self.script(), confirm_destructive_tools=True)
        events = await run(engine, "drop the old table")
        action_id = events[3].data["action_id"]

        result = await engine.confirm(SID, action_id, approved=True)

        assert result.success
        assert await vm_store.list_tables(WS) == []
        assert await engine.confirm(SID, action_id, approved=True) is None
        assert sessions.get(SID).history[-1].tool_call_id == "d1"

    async def test_decline(self, build_engine, vm_store, old_table):
        engine = build_engine(self.script(), confirm_destructive_tools=True)
        events = await run(engine, "drop the old table")

        result = await engine.confirm(SID, events[3].data["action_id"], approved=False)

        assert not result.success
        assert result.error == "the user declined this action"
        assert [t.name for t in await vm_store.list_tables(WS)] == ["old"]

    async def test_new_message_declines_pending_actions(self, build_engine, sessions, old_table):
        llm = self.script()
        engine = build_engine(llm, confirm_destructive_tools=True)
        await run(engine, "drop the old table")
        llm.add_turns(ScriptedTurn(text="Okay, keeping it."))

        await run(engine, "actually, keep it")

        session = sessions.get(SID)
        assert session.snapshot()["pending_actions"] == []
        declined = [e for e in session.history if e.tool_call_id == "d1"]
        assert declined[0].content.startswith("Declined: the user sent a new message")

    async def test_unknown_session(self, build_engine):
        engine = build_engine(ScriptedLLMClient())
        with pytest.raises(SessionNotFoundError):
            await engine.confirm("ghost", "a1", approved=True)

    async def test_confirmation_off_runs_directly(self, build_engine, vm_store, old_table):
        engine = build_engine(self.script())
        events = await run(engine, "drop the old table")

        assert "confirmation_required" not in kinds(events)
        assert await vm_store.list_tables(WS) == []

    async def test_batch_cannot_wrap_destructive_tool(self, build_engine, vm_store, old_table):
        batched = [{"tool": "delete_table", "parameters": {"table_name": "old"}}]
        llm = ScriptedLLMClient(
            [
                ScriptedTurn(tool_calls=[call("batch", {"tool_calls": batched}, "b1")]),
                ScriptedTurn(text="I need your approval for that."),
            ]
        )
        engine = build_engine(llm, confirm_destructive_tools=True)

        events = await run(engine, "drop the old table")

        assert "confirmation_required" not in kinds(events)
        result = next(e for e in events if e.type == EventType.TOOL_RESULT)
        assert result.data["success"] is False
        assert "needs user confirmation and cannot run inside batch" in result.data["output"]
        assert [t.name for t in await vm_store.list_tables(WS)] == ["old"]


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


async def test_cancel_running_turn(build_engine, sessions):
    engine = build_engine(ScriptedLLMClient([ScriptedTurn(text="slow", delay=5.0)]))
    stream = engine.run(WS, USER, "hello", session_id=SID)
    session = await wait_until_running(sessions, SID)

    assert engine.cancel(SID) is True
    events = await stream.collect()

    assert kinds(events) == ["error", "done"]
    assert events[0].data == {"kind": "cancelled", "message": "turn cancelled"}
    assert events[1].data["reason"] == "cancelled"
    assert not session.running
    assert engine.cancel(SID) is False


async def test_second_turn_on_busy_session_rejected(build_engine, sessions):
    engine = build_engine(ScriptedLLMClient([ScriptedTurn(text="slow", delay=5.0)]))
    first = engine.run(WS, USER, "one", session_id=SID)
    await wait_until_running(sessions, SID)

    rejected = await run(engine, "two")

    assert kinds(rejected) == ["error", "done"]
    assert rejected[0].data["kind"] == "session_busy"
    assert rejected[1].data["reason"] == "error"

    await first.aclose()
    assert not sessions.get(SID).running


async def test_stream_close_cancels_producer(build_engine, sessions):
    engine = build_engine(ScriptedLLMClient([ScriptedTurn(text="slow", delay=5.0)]))
    stream = engine.run(WS, USER, "hello", session_id=SID)
    await wait_until_running(sessions, SID)

    await stream.aclose()

    assert stream.producer.cancelled()
    assert not sessions.get(SID).running


# ---------------------------------------------------------------------------
# Limits and failures
# ---------------------------------------------------------------------------


async def test_step_limit(build_engine, sessions):
    llm = ScriptedLLMClient(responder=lambda system, messages, tools: ScriptedTurn(tool_calls=[call("get_logic")]))
    events = await run(build_engine(llm, max_steps=3), "loop forever")

    assert kinds(events)[-2:] == ["error", "done"]
    assert events[-2].data == {"kind": "step_limit_exceeded", "message": "step limit of 3 reached"}
    assert events[-1].data["reason"] == "step_limit"
    assert len(llm.calls) == 3
    # third identical call carries the repetition hint
    assert "3 times" in sessions.get(SID).history[-1].content
    assert sessions.get(SID).phase == SessionPhase.PLANNING


async def test_llm_error_fails_executing_session(build_engine, sessions):
    session = sessions.get_or_create(SID, WS, USER)
    session.set_plan(Plan(title="CRM", steps=[PlanStep(id="s1", description="tables")]))
    session.confirm_plan()
    session.start_execution()
    llm = ScriptedLLMClient([ScriptedTurn(error=LLMError("invalid api key"))])

    events = await run(build_engine(llm), "continue")

    assert kinds(events) == ["phase_change", "plan_update", "error", "done"]
    assert events[0].data == {"from": "executing", "to": "failed"}
    assert events[1].data["plan"]["status"] == "failed"
    assert events[2].data == {"kind": "llm_error", "message": "invalid api key"}
    assert session.phase == SessionPhase.FAILED

    llm.add_turns(ScriptedTurn(text="Let's try again."))
    retry = await run(build_engine(llm), "try again")
    assert retry[0].type == EventType.PHASE_CHANGE
    assert retry[0].data == {"from": "failed", "to": "planning"}
    assert session.phase == SessionPhase.PLANNING


async def test_unknown_persona_ends_turn(build_engine):
    events = await run(build_engine(ScriptedLLMClient()), "hi", persona_id="ghost")
    assert kinds(events) == ["error", "done"]
    assert events[0].data["kind"] == "internal"
    assert "ghost" in events[0].data["message"]


async def test_session_owned_by_another_workspace(build_engine, sessions):
    sessions.get_or_create(SID, "other-ws", USER)
    events = await run(build_engine(ScriptedLLMClient()), "hi")
    assert kinds(events) == ["error", "done"]
    assert "belongs to another workspace" in events[0].data["message"]
    assert events[1].data["reason"] == "error"


async def test_domain_error_detail_is_redacted(build_engine, sessions, monkeypatch):
    engine = build_engine(ScriptedLLMClient())

    def broken_listing(tool_filter):
        raise StoreError("cannot open /srv/data/vm/ws-test.db: disk I/O error")

    monkeypatch.setattr(engine.registry, "list_filtered", broken_listing)

    events = await run(engine, "hi")

    assert kinds(events) == ["error", "done"]
    assert events[0].data == {"kind": "internal", "message": REDACTED_MESSAGE}
    assert events[1].data["reason"] == "error"
    assert sessions.get(SID).running is False


async def test_turn_ids_bound_for_tool_logging(build_engine):
    seen: dict[str, Any] = {}

    class ContextTool(Tool):
        name = "capture_context"
        description = "Records the logging context."

        async def execute(self, ctx, params: dict[str, Any]) -> ToolResult:
            seen.update(structlog.contextvars.get_contextvars())
            return ToolResult.ok("done")

    llm = ScriptedLLMClient([ScriptedTurn(tool_calls=[call("capture_context", {}, "c1")]), ScriptedTurn(text="ok")])
    engine = build_engine(llm)
    engine.registry.register(ContextTool())

    await run(engine, "log something")

    assert seen["session_id"] == SID
    assert seen["workspace_id"] == WS
    assert "session_id" not in structlog.contextvars.get_contextvars()


async def test_slow_tool_times_out(build_engine):
    class SlowTool(Tool):
        name = "slow"
        description = "Never finishes in time."

        async def execute(self, ctx, params: dict[str, Any]) -> ToolResult:
            await asyncio.sleep(5)
            return ToolResult.ok("late")

    llm = ScriptedLLMClient([ScriptedTurn(tool_calls=[call("slow", {}, "s1")]), ScriptedTurn(text="moving on")])
    engine = build_engine(llm, tool_timeout_seconds=0.01)
    engine.registry.register(SlowTool())

    events = await run(engine, "do the slow thing")

    result = next(e for e in events if e.type == EventType.TOOL_RESULT)
    assert result.data["success"] is False
    assert result.data["error"] == "tool 'slow' timed out after 0.01s"
    assert events[-1].data["reason"] == "end_turn"


async def test_subagent_llm_failure_is_a_soft_tool_failure(build_engine):
    llm = ScriptedLLMClient(
        [
            ScriptedTurn(tool_calls=[call("task", {"subagent_type": "general", "prompt": "do it"}, "t1")]),
            ScriptedTurn(error=LLMError("provider down")),
            ScriptedTurn(text="The sub-agent failed; doing it myself."),
        ]
    )
    events = await run(build_engine(llm), "delegate")

    result = next(e for e in events if e.type == EventType.TOOL_RESULT)
    assert result.data["success"] is False
    assert result.data["error"] == "provider down"
    assert events[-1].data["reason"] == "end_turn"


# ---------------------------------------------------------------------------
# Plan mode
# ---------------------------------------------------------------------------


class TestPlanMode:
    async def test_planning_offers_only_read_and_plan_tools(self, build_engine, sessions):
        llm = ScriptedLLMClient(
            [
                ScriptedTurn(tool_calls=[call("create_table", {"name": "x", "columns": [{"name": "a", "type": "TEXT"}]}, "c1")]),
                ScriptedTurn(text="I need a plan first."),
            ]
        )
        events = await run(build_engine(llm, plan_mode=True), "build me a CRM app")

        assert set(llm.calls[0]["tools"]) == PLAN_MODE_TOOLS
        result = next(e for e in events if e.type == EventType.TOOL_RESULT)
        assert result.data["error"] == "tool not allowed by persona"
        assert sessions.get(SID).complexity_hint == "complex"
        assert "Mode: COMPLEX REQUEST" in llm.calls[0]["system"]

    async def test_confirmed_plan_unlocks_all_tools(self, build_engine, sessions, tool_registry):
        session = sessions.get_or_create(SID, WS, USER)
        session.set_plan(Plan(title="CRM", steps=[PlanStep(id="s1", description="tables")]))
        session.confirm_plan()
        llm = ScriptedLLMClient([ScriptedTurn(text="Starting.")])

        await run(build_engine(llm, plan_mode=True), "go")

        assert len(llm.calls[0]["tools"]) == len(tool_registry.list_all())
