"""Session state machine and in-memory SessionManager.

Session phases::

    planning --create_plan--> (draft) --confirm_plan--> confirmed
    confirmed --first tool call--> executing
    executing --all steps terminal--> completed
    executing --unrecoverable failure--> failed
    completed | failed --new turn--> planning

Every getter/setter takes the session's lock. Plans and history are handed out
as copies so callers can never mutate session state behind the lock.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field

from workspace_agent.agent.state import (
    HistoryEntry,
    Plan,
    PlanStatus,
    SessionPhase,
    StepStatus,
    ToolCall,
)
from workspace_agent.core.exceptions import PlanStateError, SessionMismatchError

logger = structlog.get_logger(__name__)

PLAN_TOOLS = frozenset({"create_plan", "update_plan"})

# Valid phase transitions
PHASE_TRANSITIONS: dict[SessionPhase, frozenset[SessionPhase]] = {
    SessionPhase.PLANNING: frozenset({SessionPhase.CONFIRMED, SessionPhase.FAILED}),
    SessionPhase.CONFIRMED: frozenset({SessionPhase.EXECUTING, SessionPhase.FAILED}),
    SessionPhase.EXECUTING: frozenset({SessionPhase.COMPLETED, SessionPhase.FAILED, SessionPhase.CONFIRMED}),
    SessionPhase.COMPLETED: frozenset({SessionPhase.PLANNING}),
    SessionPhase.FAILED: frozenset({SessionPhase.PLANNING}),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PendingAction(BaseModel):
    """A tool call parked until the user approves it."""

    action_id: str
    tool_call: ToolCall
    affected_resource: str
    tool_filter: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


def compact_history(history: list[HistoryEntry], max_entries: int) -> list[HistoryEntry]:
    """Elide old entries while keeping the context valid for the LLM.

    Always preserved: the latest user message, assistant turns whose tool calls
    have not been answered yet, and the most recent plan tool result. Tool calls
    and their results are kept or dropped as pairs.
    """
    if max_entries <= 0 or len(history) <= max_entries:
        return list(history)

    keep = set(range(len(history) - max_entries, len(history)))

    last_user = next((i for i in range(len(history) - 1, -1, -1) if history[i].role == "user"), None)
    if last_user is not None:
        keep.add(last_user)

    last_plan = next(
        (i for i in range(len(history) - 1, -1, -1)
         if history[i].role == "tool" and history[i].tool_name in PLAN_TOOLS),
        None,
    )
    if last_plan is not None:
        keep.add(last_plan)

    replied = {e.tool_call_id for e in history if e.role == "tool"}
    call_owner: dict[str, int] = {}
    for i, entry in enumerate(history):
        if entry.role == "assistant" and entry.tool_calls:
            for call in entry.tool_calls:
                call_owner[call.id] = i
            if any(call.id not in replied for call in entry.tool_calls):
                keep.add(i)

    results_by_owner: dict[int, list[int]] = {}
    for i, entry in enumerate(history):
        if entry.role == "tool" and entry.tool_call_id in call_owner:
            results_by_owner.setdefault(call_owner[entry.tool_call_id], []).append(i)

    for i in list(keep):
        entry = history[i]
        if entry.role == "tool" and entry.tool_call_id in call_owner:
            keep.add(call_owner[entry.tool_call_id])
    for owner, results in results_by_owner.items():
        if owner in keep:
            keep.update(results)

    return [history[i] for i in sorted(keep)]


class Session:
    """One conversation: phase, plan and LLM history, guarded by a lock."""

    def __init__(
        self,
        session_id: str,
        workspace_id: str,
        user_id: str,
        persona_id: str | None = None,
        max_history: int = 200,
    ) -> None:
        self.session_id = session_id
        self.workspace_id = workspace_id
        self.user_id = user_id
        self._lock = threading.RLock()
        self._persona_id = persona_id
        self._max_history = max_history
        self._phase = SessionPhase.PLANNING
        self._plan: Plan | None = None
        self._history: list[HistoryEntry] = []
        self._pending: dict[str, PendingAction] = {}
        self._running = False
        self._complexity_hint: str | None = None
        self.created_at = _utcnow()
        self.last_activity_at = self.created_at

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        with self._lock:
            return self._phase

    @property
    def plan(self) -> Plan | None:
        with self._lock:
            return self._plan.model_copy(deep=True) if self._plan is not None else None

    @property
    def history(self) -> list[HistoryEntry]:
        with self._lock:
            return list(self._history)

    @property
    def persona_id(self) -> str | None:
        with self._lock:
            return self._persona_id

    @persona_id.setter
    def persona_id(self, value: str | None) -> None:
        with self._lock:
            self._persona_id = value

    @property
    def complexity_hint(self) -> str | None:
        with self._lock:
            return self._complexity_hint

    @complexity_hint.setter
    def complexity_hint(self, value: str | None) -> None:
        with self._lock:
            self._complexity_hint = value

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def touch(self) -> None:
        with self._lock:
            self.last_activity_at = _utcnow()

    # ------------------------------------------------------------------
    # Turn ownership
    # ------------------------------------------------------------------

    def try_begin_turn(self) -> bool:
        """Claim the session for one turn; False if another turn is running."""
        with self._lock:
            if self._running:
                return False
            self._running = True
            self.last_activity_at = _utcnow()
            return True

    def end_turn(self) -> None:
        with self._lock:
            self._running = False
            self.last_activity_at = _utcnow()

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def transition(self, to: SessionPhase) -> bool:
        with self._lock:
            return self._transition_locked(to)

    def _transition_locked(self, to: SessionPhase) -> bool:
        if to not in PHASE_TRANSITIONS[self._phase]:
            logger.warning("session_invalid_transition", session_id=self.session_id, phase=self._phase, to=to)
            return False
        logger.info("session_phase_changed", session_id=self.session_id, phase=self._phase, to=to)
        self._phase = to
        return True

    def reopen(self) -> SessionPhase | None:
        """Start a new request cycle on a finished session; returns the old phase."""
        with self._lock:
            previous = self._phase
            if previous in (SessionPhase.COMPLETED, SessionPhase.FAILED):
                self._transition_locked(SessionPhase.PLANNING)
                return previous
            return None

    def start_execution(self) -> bool:
        """confirmed -> executing, plan -> in_progress. False when not confirmed."""
        with self._lock:
            if self._phase != SessionPhase.CONFIRMED:
                return False
            self._transition_locked(SessionPhase.EXECUTING)
            if self._plan is not None:
                self._plan.status = PlanStatus.IN_PROGRESS
            return True

    def mark_failed(self) -> bool:
        """executing|confirmed -> failed (plan too). False when not applicable."""
        with self._lock:
            if self._phase not in (SessionPhase.EXECUTING, SessionPhase.CONFIRMED):
                return False
            self._transition_locked(SessionPhase.FAILED)
            if self._plan is not None:
                self._plan.status = PlanStatus.FAILED
            return True

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def set_plan(self, plan: Plan) -> None:
        with self._lock:
            if self._phase not in (SessionPhase.PLANNING, SessionPhase.EXECUTING):
                raise PlanStateError(f"cannot set a plan while the session is {self._phase}")
            self._plan = plan.model_copy(deep=True)
            self.last_activity_at = _utcnow()

    def confirm_plan(self) -> bool:
        """Approve the draft plan. Returns False when there is no draft to confirm."""
        with self._lock:
            if self._plan is None or self._plan.status != PlanStatus.DRAFT:
                return False
            if not self._transition_locked(SessionPhase.CONFIRMED):
                return False
            self._plan.status = PlanStatus.CONFIRMED
            self.last_activity_at = _utcnow()
            return True

    def update_plan_step(self, step_id: str, status: StepStatus, note: str | None = None) -> Plan:
        """Mutate one step and auto-complete an in-progress plan once every step is terminal.

        Raises:
            PlanStateError: no plan, or unknown step id.
        """
        with self._lock:
            if self._plan is None:
                raise PlanStateError("no active plan; call create_plan first")
            step = next((s for s in self._plan.steps if s.id == step_id), None)
            if step is None:
                raise PlanStateError(f"step '{step_id}' not found in plan")
            step.status = status
            if note is not None:
                step.note = note

            if self._plan.status == PlanStatus.IN_PROGRESS and self._plan.all_steps_terminal():
                self._plan.status = PlanStatus.COMPLETED
                if self._phase == SessionPhase.EXECUTING:
                    self._transition_locked(SessionPhase.COMPLETED)
                logger.info("plan_auto_completed", session_id=self.session_id, title=self._plan.title)
            self.last_activity_at = _utcnow()
            return self._plan.model_copy(deep=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._history.append(entry)
            if len(self._history) > self._max_history:
                self._history = compact_history(self._history, self._max_history)
            self.last_activity_at = _utcnow()

    def add_user_message(self, content: str) -> None:
        self.append(HistoryEntry(role="user", content=content))

    def add_assistant_message(self, content: str, tool_calls: list[ToolCall] | None = None) -> None:
        self.append(HistoryEntry(role="assistant", content=content, tool_calls=tool_calls or None))

    def add_tool_result(self, tool_call: ToolCall, content: str) -> None:
        self.append(
            HistoryEntry(
                role="tool",
                content=content,
                tool_name=tool_call.name,
                tool_call_id=tool_call.id,
            )
        )

    # ------------------------------------------------------------------
    # Pending confirmations
    # ------------------------------------------------------------------

    def add_pending_action(self, action: PendingAction) -> None:
        with self._lock:
            self._pending[action.action_id] = action

    def pop_pending_action(self, action_id: str) -> PendingAction | None:
        with self._lock:
            return self._pending.pop(action_id, None)

    def drain_pending_actions(self) -> list[PendingAction]:
        with self._lock:
            actions = list(self._pending.values())
            self._pending.clear()
            return actions

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "session_id": self.session_id,
                "workspace_id": self.workspace_id,
                "user_id": self.user_id,
                "persona_id": self._persona_id,
                "phase": self._phase.value,
                "plan": self._plan.model_dump(mode="json") if self._plan else None,
                "message_count": len(self._history),
                "pending_actions": [a.model_dump(mode="json") for a in self._pending.values()],
                "running": self._running,
                "created_at": self.created_at.isoformat(),
                "last_activity_at": self.last_activity_at.isoformat(),
            }


class SessionManager:
    """Resident sessions keyed by id; idle ones are reaped after a TTL."""

    def __init__(self, ttl_seconds: int = 1800, max_history: int = 200) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_history = max_history
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        session_id: str | None,
        workspace_id: str,
        user_id: str,
        persona_id: str | None = None,
    ) -> Session:
        """Return the session for *session_id*, creating it on first use.

        Raises:
            SessionMismatchError: the id belongs to another workspace or user.
        """
        session_id = session_id or str(uuid.uuid4())
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id, workspace_id, user_id, persona_id, self._max_history)
                self._sessions[session_id] = session
                logger.info("session_created", session_id=session_id, workspace_id=workspace_id)
                return session
        if session.workspace_id != workspace_id or session.user_id != user_id:
            raise SessionMismatchError(f"session '{session_id}' belongs to another workspace or user")
        if persona_id:
            session.persona_id = persona_id
        session.touch()
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def list_for_workspace(self, workspace_id: str) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.workspace_id == workspace_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def reap_idle(self, now: datetime | None = None) -> int:
        """Drop sessions idle for longer than the TTL. Running sessions are kept."""
        now = now or _utcnow()
        with self._lock:
            expired = [
                sid for sid, s in self._sessions.items()
                if not s.running and now - s.last_activity_at > self._ttl
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info("sessions_reaped", count=len(expired))
        return len(expired)

    async def run_reaper(self, interval_seconds: float = 60.0) -> None:
        """Reap forever. Intended to run as ``asyncio.create_task(manager.run_reaper())``."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.reap_idle()
