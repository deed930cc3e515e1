"""Engine: the agent turn loop.

One turn = load session -> resolve persona -> (LLM call -> tool dispatch)* -> done.

Event ordering per turn (single writer, the turn task):
- ``message`` / ``tool_call_start`` while the LLM streams
- for each tool call, in order: ``tool_call`` -> ``tool_result`` -> ``plan_update``
  (plan tools only) -> ``phase_change`` (if the call changed the phase)
- exactly one terminal ``done``, preceded by ``error`` on hard failures

Tool calls within one assistant turn run sequentially; only ``batch`` fans out.
Tool failures are soft and go back to the LLM. LLM, step-limit, busy, cancel
and internal failures end the turn.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from tenacity.wait import wait_base

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.events import DoneReason, Event, EventStream
from workspace_agent.agent.llm import LLMClient, TextDelta, ToolCallStart, complete_with_retry, to_anthropic_messages
from workspace_agent.agent.loop.safety import DEFAULT_WORD_BUDGET, StepGuard
from workspace_agent.agent.loop.system_prompt import build_system_prompt, classify_request_complexity
from workspace_agent.agent.personas import Persona, PersonaRegistry
from workspace_agent.agent.session import PLAN_TOOLS, PendingAction, Session, SessionManager
from workspace_agent.agent.state import SessionPhase, ToolCall
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.agent.tools.registry import ToolRegistry
from workspace_agent.core.config import Settings
from workspace_agent.core.exceptions import (
    LLMError,
    PersonaNotFoundError,
    SessionBusyError,
    SessionMismatchError,
    SessionNotFoundError,
    WorkspaceAgentError,
)

logger = structlog.get_logger(__name__)

# Tools offered while a plan-mode session is still planning
PLAN_MODE_TOOLS = frozenset({"get_workspace_info", "get_ui_schema", "get_block_spec", "query_data", "create_plan"})

# Domain errors whose message is safe to show the client; anything else is redacted
CLIENT_FACING_ERRORS = (PersonaNotFoundError, SessionMismatchError)
REDACTED_MESSAGE = "internal error"

EmitFn = Callable[[Event], Awaitable[None]]


def client_message(exc: WorkspaceAgentError) -> str:
    """Message sent in an ``error`` event; store and runtime details stay in the log."""
    if isinstance(exc, CLIENT_FACING_ERRORS):
        return str(exc)
    return REDACTED_MESSAGE


@dataclass
class EngineConfig:
    max_steps: int = 25
    llm_timeout_seconds: float = 120.0
    llm_max_retries: int = 3
    tool_timeout_seconds: float = 60.0
    event_buffer_size: int = 256
    plan_mode: bool = False
    confirm_destructive_tools: bool = False
    tool_output_word_budget: int = DEFAULT_WORD_BUDGET
    max_history: int = 200

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            max_steps=settings.agent_max_steps,
            llm_timeout_seconds=settings.llm_timeout_seconds,
            llm_max_retries=settings.llm_max_retries,
            tool_timeout_seconds=settings.tool_timeout_seconds,
            event_buffer_size=settings.event_buffer_size,
            plan_mode=settings.plan_mode,
            confirm_destructive_tools=settings.confirm_destructive_tools,
            max_history=settings.session_max_history,
        )


@dataclass
class DriveOutcome:
    reason: DoneReason
    tool_calls: int = 0
    final_message: str = ""


def fabricate_call_id(session_id: str, step: int, index: int) -> str:
    return f"call_{session_id[:8]}_{step}_{index}"


class Engine:
    def __init__(
        self,
        llm: LLMClient,
        registry: ToolRegistry,
        sessions: SessionManager,
        personas: PersonaRegistry,
        config: EngineConfig | None = None,
        llm_wait: wait_base | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.sessions = sessions
        self.personas = personas
        self.config = config or EngineConfig()
        self._llm_wait = llm_wait
        self._active: dict[str, EventStream] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        workspace_id: str,
        user_id: str,
        prompt: str,
        session_id: str | None = None,
        persona_id: str | None = None,
    ) -> EventStream:
        """Start a turn in the background and return its event stream."""
        session_id = session_id or str(uuid.uuid4())
        stream = EventStream(session_id, self.config.event_buffer_size)
        task = asyncio.create_task(
            self._run_turn(stream, workspace_id, user_id, prompt, session_id, persona_id),
            name=f"agent-turn-{session_id}",
        )
        stream.attach(task)
        return stream

    def cancel(self, session_id: str) -> bool:
        """Cancel the running turn of a session. False when nothing is running."""
        stream = self._active.get(session_id)
        if stream is None or stream.producer is None or stream.producer.done():
            return False
        stream.producer.cancel()
        logger.info("turn_cancel_requested", session_id=session_id)
        return True

    async def confirm(self, session_id: str, action_id: str, approved: bool) -> ToolResult | None:
        """Execute or decline a parked tool call. None when the action id is unknown.

        Raises:
            SessionNotFoundError: unknown session.
            SessionBusyError: a turn is running on the session.
        """
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.try_begin_turn():
            raise SessionBusyError(session_id)
        try:
            action = session.pop_pending_action(action_id)
            if action is None:
                return None
            if approved:
                ctx = ToolContext(
                    workspace_id=session.workspace_id,
                    user_id=session.user_id,
                    session_id=session.session_id,
                    persona_id=session.persona_id,
                    tool_filter=frozenset(action.tool_filter),
                )
                result = await self._execute_tool(ctx, action.tool_call)
            else:
                result = ToolResult.fail("the user declined this action")
            session.add_tool_result(action.tool_call, result.to_llm_content())
            logger.info(
                "pending_action_resolved",
                session_id=session_id,
                tool=action.tool_call.name,
                approved=approved,
                success=result.success,
            )
            return result
        finally:
            session.end_turn()

    async def run_subagent(self, ctx: ToolContext, persona: Persona, prompt: str) -> dict[str, Any]:
        """Run an isolated child session to completion (called by the ``task`` tool)."""
        session = Session(
            session_id=f"{ctx.session_id or 'root'}/{persona.id}",
            workspace_id=ctx.workspace_id,
            user_id=ctx.user_id,
            persona_id=persona.id,
            max_history=self.config.max_history,
        )
        session.add_user_message(prompt)
        sub_ctx = ctx.for_subagent(session.session_id, persona.id, persona.allowed_tools())
        log = logger.bind(session_id=session.session_id, depth=sub_ctx.depth)

        async def emit(event: Event) -> None:
            log.debug("subagent_event", event_type=event.type.value)

        try:
            outcome = await self._drive(emit, session, persona, sub_ctx)
        except LLMError as e:
            log.warning("subagent_llm_failed", error=str(e))
            return {"tool_calls": 0, "final_message": "", "status": "failed", "error": str(e)}

        status = {
            DoneReason.END_TURN: "completed",
            DoneReason.ATTEMPT_COMPLETION: "completed",
            DoneReason.STEP_LIMIT: "incomplete",
        }.get(outcome.reason, "failed")
        return {
            "tool_calls": outcome.tool_calls,
            "final_message": outcome.final_message,
            "status": status,
        }

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        stream: EventStream,
        workspace_id: str,
        user_id: str,
        prompt: str,
        session_id: str,
        persona_id: str | None,
    ) -> None:
        # Every log line emitted during the turn, tools included, carries both ids
        with structlog.contextvars.bound_contextvars(session_id=session_id, workspace_id=workspace_id):
            await self._guarded_turn(stream, workspace_id, user_id, prompt, session_id, persona_id)

    async def _guarded_turn(
        self,
        stream: EventStream,
        workspace_id: str,
        user_id: str,
        prompt: str,
        session_id: str,
        persona_id: str | None,
    ) -> None:
        try:
            session = self.sessions.get_or_create(session_id, workspace_id, user_id, persona_id)
        except WorkspaceAgentError as e:
            logger.warning("turn_rejected", error=str(e), error_type=type(e).__name__)
            stream.emit_nowait(Event.error(session_id, ErrorKind.INTERNAL, client_message(e)))
            stream.emit_nowait(Event.done(session_id, DoneReason.ERROR))
            stream.close()
            return

        if not session.try_begin_turn():
            logger.warning("turn_rejected_session_busy")
            stream.emit_nowait(Event.error(session_id, ErrorKind.SESSION_BUSY, str(SessionBusyError(session_id))))
            stream.emit_nowait(Event.done(session_id, DoneReason.ERROR))
            stream.close()
            return

        self._active[session_id] = stream
        logger.info("turn_start", persona_id=persona_id or session.persona_id)
        try:
            outcome = await self._start_turn(stream, session, prompt, persona_id)
            logger.info("turn_finished", reason=outcome.reason.value, tool_calls=outcome.tool_calls)
            stream.emit_nowait(Event.done(session_id, outcome.reason))
        except asyncio.CancelledError:
            logger.info("turn_cancelled")
            stream.emit_nowait(Event.error(session_id, ErrorKind.CANCELLED, "turn cancelled"))
            stream.emit_nowait(Event.done(session_id, DoneReason.CANCELLED))
            raise
        except LLMError as e:
            logger.error("turn_llm_failed", error=str(e))
            self._fail_session(stream, session)
            stream.emit_nowait(Event.error(session_id, ErrorKind.LLM_ERROR, str(e)))
            stream.emit_nowait(Event.done(session_id, DoneReason.ERROR))
        except WorkspaceAgentError as e:
            logger.error("turn_failed", error=str(e), error_type=type(e).__name__)
            self._fail_session(stream, session)
            stream.emit_nowait(Event.error(session_id, ErrorKind.INTERNAL, client_message(e)))
            stream.emit_nowait(Event.done(session_id, DoneReason.ERROR))
        except Exception:
            logger.exception("turn_internal_error")
            self._fail_session(stream, session)
            stream.emit_nowait(Event.error(session_id, ErrorKind.INTERNAL, REDACTED_MESSAGE))
            stream.emit_nowait(Event.done(session_id, DoneReason.ERROR))
        finally:
            session.end_turn()
            self._active.pop(session_id, None)
            stream.close()

    def _fail_session(self, stream: EventStream, session: Session) -> None:
        previous = session.phase
        if session.mark_failed():
            stream.emit_nowait(Event.phase_change(session.session_id, previous, SessionPhase.FAILED))
            plan = session.plan
            if plan is not None:
                stream.emit_nowait(Event.plan_update(session.session_id, plan.model_dump(mode="json")))

    async def _start_turn(
        self,
        stream: EventStream,
        session: Session,
        prompt: str,
        persona_id: str | None,
    ) -> DriveOutcome:
        persona = self.personas.resolve(persona_id or session.persona_id)
        session.persona_id = persona.id

        for action in session.drain_pending_actions():
            session.add_tool_result(action.tool_call, "Declined: the user sent a new message instead of confirming.")

        previous = session.reopen()
        if previous is not None:
            session.complexity_hint = None
            await stream.emit(Event.phase_change(session.session_id, previous, SessionPhase.PLANNING))

        if self.config.plan_mode and session.phase == SessionPhase.PLANNING and session.complexity_hint is None:
            session.complexity_hint = classify_request_complexity(prompt)

        session.add_user_message(prompt)
        ctx = ToolContext(
            workspace_id=session.workspace_id,
            user_id=session.user_id,
            session_id=session.session_id,
            persona_id=persona.id,
            tool_filter=persona.allowed_tools(),
            confirmation_required=self.config.confirm_destructive_tools,
        )
        return await self._drive(stream.emit, session, persona, ctx)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _offered(self, session: Session, ctx: ToolContext) -> tuple[list[Tool], ToolContext]:
        """Tools offered to the LLM this step, and the context that enforces the same set."""
        tools = self.registry.list_filtered(ctx.tool_filter)
        if self.config.plan_mode and ctx.depth == 0 and session.phase == SessionPhase.PLANNING:
            tools = [t for t in tools if t.name in PLAN_MODE_TOOLS]
            ctx = ToolContext(
                workspace_id=ctx.workspace_id,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                persona_id=ctx.persona_id,
                tool_filter=frozenset(t.name for t in tools) or PLAN_MODE_TOOLS,
                depth=ctx.depth,
                confirmation_required=ctx.confirmation_required,
            )
        return tools, ctx

    async def _drive(self, emit: EmitFn, session: Session, persona: Persona, ctx: ToolContext) -> DriveOutcome:
        """LLM <-> tool loop shared by top-level turns and sub-agents."""
        guard = StepGuard(self.config.max_steps, self.config.tool_output_word_budget)
        outcome = DriveOutcome(reason=DoneReason.END_TURN)
        sid = session.session_id

        while guard.next_step():
            tools, step_ctx = self._offered(session, ctx)
            system = build_system_prompt(persona, session, tools, session.workspace_id, session.user_id)
            starts = 0

            async def on_chunk(chunk: TextDelta | ToolCallStart) -> None:
                nonlocal starts
                if isinstance(chunk, TextDelta):
                    await emit(Event.message(sid, chunk.text))
                else:
                    call_id = chunk.id or fabricate_call_id(sid, guard.step, starts)
                    starts += 1
                    await emit(Event.tool_call_start(sid, call_id, chunk.name))

            logger.debug("llm_call", session_id=sid, step=guard.step, tools=len(tools))
            response = await complete_with_retry(
                self.llm,
                system,
                to_anthropic_messages(session.history),
                [t.definition() for t in tools],
                on_chunk,
                timeout=self.config.llm_timeout_seconds,
                max_retries=self.config.llm_max_retries,
                wait=self._llm_wait,
            )

            calls = [
                call if call.id else call.model_copy(update={"id": fabricate_call_id(sid, guard.step, i)})
                for i, call in enumerate(response.tool_calls)
            ]
            session.add_assistant_message(response.text, calls)
            if response.text:
                outcome.final_message = response.text
            if not calls:
                outcome.reason = DoneReason.END_TURN
                return outcome

            reason = await self._dispatch(emit, session, step_ctx, calls, guard, outcome)
            if reason is not None:
                outcome.reason = reason
                return outcome

        await emit(Event.error(sid, ErrorKind.STEP_LIMIT_EXCEEDED, f"step limit of {self.config.max_steps} reached"))
        outcome.reason = DoneReason.STEP_LIMIT
        return outcome

    async def _dispatch(
        self,
        emit: EmitFn,
        session: Session,
        ctx: ToolContext,
        calls: list[ToolCall],
        guard: StepGuard,
        outcome: DriveOutcome,
    ) -> DoneReason | None:
        sid = session.session_id
        for index, call in enumerate(calls):
            if session.phase == SessionPhase.CONFIRMED and session.start_execution():
                await emit(Event.phase_change(sid, SessionPhase.CONFIRMED, SessionPhase.EXECUTING))
                plan = session.plan
                await emit(Event.plan_update(sid, plan.model_dump(mode="json") if plan else None))

            await emit(Event.tool_call(sid, call.id, call.name, call.arguments))
            tool = self.registry.get(call.name)

            if self.config.confirm_destructive_tools and tool is not None and tool.requires_confirmation:
                if ctx.depth == 0 and ctx.allows(call.name):
                    await self._park(emit, session, ctx, tool, call)
                    self._skip_rest(session, calls[index + 1 :], "waiting for the user to confirm an earlier action")
                    return DoneReason.AWAITING_CONFIRMATION
                if ctx.depth > 0:
                    result = ToolResult.fail(f"'{call.name}' needs user confirmation and cannot run in a sub-agent")
                    await self._record(emit, session, call, result, guard)
                    outcome.tool_calls += 1
                    continue

            phase_before = session.phase
            result = await self._execute_tool(ctx, call)
            outcome.tool_calls += 1
            await self._record(emit, session, call, result, guard)

            if call.name in PLAN_TOOLS and result.success:
                plan = session.plan
                plan_data = plan.model_dump(mode="json") if plan else (result.data or {}).get("plan")
                await emit(Event.plan_update(sid, plan_data))
            if session.phase != phase_before:
                await emit(Event.phase_change(sid, phase_before, session.phase))

            if call.name == "attempt_completion" and result.success:
                self._skip_rest(session, calls[index + 1 :], "the turn ended after attempt_completion")
                return DoneReason.ATTEMPT_COMPLETION
        return None

    async def _record(
        self,
        emit: EmitFn,
        session: Session,
        call: ToolCall,
        result: ToolResult,
        guard: StepGuard,
    ) -> None:
        await emit(Event.tool_result(session.session_id, call.id, call.name, result.to_event_data()))
        count = guard.record_call(call.name, call.arguments)
        content = guard.truncate(result.to_llm_content()) + guard.repetition_hint(count)
        session.add_tool_result(call, content)
        if not result.success:
            logger.info(
                "tool_call_failed",
                session_id=session.session_id,
                tool=call.name,
                kind=result.error_kind,
                error=result.error,
            )

    async def _park(self, emit: EmitFn, session: Session, ctx: ToolContext, tool: Tool, call: ToolCall) -> None:
        action = PendingAction(
            action_id=str(uuid.uuid4()),
            tool_call=call,
            affected_resource=tool.affected_resource or "database",
            tool_filter=sorted(ctx.tool_filter),
        )
        session.add_pending_action(action)
        logger.info("tool_call_parked", session_id=session.session_id, tool=call.name, action_id=action.action_id)
        await emit(
            Event.confirmation_required(
                session.session_id,
                action.action_id,
                call.id,
                call.name,
                call.arguments,
                action.affected_resource,
            )
        )

    @staticmethod
    def _skip_rest(session: Session, calls: list[ToolCall], why: str) -> None:
        for call in calls:
            session.add_tool_result(call, f"Skipped: {why}.")

    async def _execute_tool(self, ctx: ToolContext, call: ToolCall) -> ToolResult:
        # task bounds itself with its own deadline
        timeout = None if call.name == "task" else self.config.tool_timeout_seconds
        try:
            return await asyncio.wait_for(self.registry.execute(ctx, call.name, call.arguments), timeout=timeout)
        except TimeoutError:
            logger.warning("tool_timed_out", tool=call.name, timeout=timeout)
            return ToolResult.fail(f"tool '{call.name}' timed out after {timeout:g}s")
