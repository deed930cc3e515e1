"""Value types owned by a Session: plan, steps, history entries, tool calls.

Steps reference their group by string id only; nothing here holds a pointer
back to the session.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class SessionPhase(StrEnum):
    PLANNING = "planning"
    CONFIRMED = "confirmed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStatus(StrEnum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED})


class PlanGroup(BaseModel):
    id: str
    title: str = ""
    description: str = ""


class PlanStep(BaseModel):
    """A single step in the plan."""

    id: str
    description: str
    tool: str | None = None
    status: StepStatus = StepStatus.PENDING
    note: str | None = None
    group_id: str | None = None


class Plan(BaseModel):
    title: str
    status: PlanStatus = PlanStatus.DRAFT
    summary: str = ""
    groups: list[PlanGroup] = Field(default_factory=list)
    steps: list[PlanStep] = Field(default_factory=list)

    def all_steps_terminal(self) -> bool:
        return bool(self.steps) and all(s.status in TERMINAL_STEP_STATUSES for s in self.steps)

    def progress(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        counts["total"] = len(self.steps)
        return counts


class ToolCall(BaseModel):
    """A tool invocation requested by the assistant. ``arguments`` is opaque JSON."""

    id: str
    name: str
    arguments: dict[str, Any] | str = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    """One message of the LLM context."""

    role: Literal["user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_name: str | None = None
    tool_call_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
