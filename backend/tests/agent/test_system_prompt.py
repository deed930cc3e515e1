"""Unit tests for system prompt composition and request complexity classification."""

import pytest

from workspace_agent.agent.loop.system_prompt import (
    RequestComplexity,
    build_system_prompt,
    classify_request_complexity,
    context_section,
)
from workspace_agent.agent.personas import Persona, PersonaRegistry
from workspace_agent.agent.session import Session
from workspace_agent.agent.state import Plan, PlanStep, StepStatus

pytestmark = pytest.mark.unit

WS = "ws-prompt"
USER = "user-001"


@pytest.fixture
def builder() -> Persona:
    return PersonaRegistry().resolve(None)


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "prompt,expected",
    [
        ("How many customers do we have?", RequestComplexity.QUESTION),
        ("show me the tables", RequestComplexity.QUESTION),
        ("rename the title column to name", RequestComplexity.SIMPLE),
        ("add a priority column to tasks", RequestComplexity.SIMPLE),
        ("build me an employee management app with leave requests", RequestComplexity.COMPLEX),
        ("", RequestComplexity.COMPLEX),
    ],
)
def test_classify_request_complexity(prompt, expected):
    assert classify_request_complexity(prompt) == expected


# ---------------------------------------------------------------------------
# Phase-aware prompts
# ---------------------------------------------------------------------------


def test_planning_prompt_uses_complexity_hint(builder, tool_registry):
    session = Session("s1", WS, USER)
    session.complexity_hint = RequestComplexity.SIMPLE
    prompt = build_system_prompt(builder, session, tool_registry.list_all(), WS, USER)

    assert "Planning Phase (ACTIVE)" in prompt
    assert "Mode: SIMPLE REQUEST" in prompt
    assert "Phased Execution" not in prompt
    assert f"Current workspace_id: {WS}" in prompt


def test_confirmed_prompt_includes_execution_guides(builder, tool_registry):
    session = Session("s1", WS, USER)
    session.set_plan(Plan(title="CRM", steps=[PlanStep(id="s1", description="tables")]))
    session.confirm_plan()
    prompt = build_system_prompt(builder, session, tool_registry.list_all(), WS, USER)

    assert "Plan Confirmed: Begin Execution" in prompt
    assert "Phased Execution" in prompt
    assert "Planning Phase" not in prompt
    assert "| create_table | CHEAP |" in prompt


def test_persona_prompt_used_verbatim(tool_registry):
    persona = PersonaRegistry().resolve("data_analyst")
    prompt = build_system_prompt(persona, None, tool_registry.list_all(), WS, USER)

    assert prompt.startswith(persona.system_prompt)
    assert prompt.endswith(f"Current workspace_id: {WS}\nCurrent user_id: {USER}")
    assert "Phased Execution" not in prompt


def test_context_section_reports_progress():
    session = Session("s1", WS, USER)
    session.set_plan(
        Plan(
            title="CRM",
            summary="contacts and deals",
            steps=[PlanStep(id="s1", description="tables"), PlanStep(id="s2", description="pages")],
        )
    )
    session.confirm_plan()
    session.start_execution()
    session.update_plan_step("s1", StepStatus.COMPLETED)
    session.update_plan_step("s2", StepStatus.IN_PROGRESS)

    section = context_section(session, WS, USER)

    assert "Session phase: executing" in section
    assert "Requirements summary: contacts and deals" in section
    assert "Progress: 1/2 completed, 1 in progress" in section
    assert "- [completed] s1: tables" in section
