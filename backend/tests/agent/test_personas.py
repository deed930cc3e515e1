"""Tests for PersonaRegistry and persona prompt assembly."""

import pytest

from workspace_agent.agent.personas import (
    DEFAULT_PERSONA_ID,
    SUBAGENT_TEMPLATE_PREFIX,
    Persona,
    PersonaRegistry,
    actions_to_tools,
    build_persona_prompt,
)
from workspace_agent.core.exceptions import PersonaNotFoundError

pytestmark = pytest.mark.unit


def test_builtins_are_seeded():
    registry = PersonaRegistry()
    ids = {p.id for p in registry.list_all()}
    assert DEFAULT_PERSONA_ID in ids
    assert {"data_analyst", "data_entry_clerk", "records_manager"} <= ids
    assert f"{SUBAGENT_TEMPLATE_PREFIX}data_modeler" in ids


def test_resolve_defaults_to_app_builder():
    registry = PersonaRegistry()
    persona = registry.resolve(None)
    assert persona.id == DEFAULT_PERSONA_ID
    # app builder sees every tool
    assert persona.allowed_tools() == frozenset()


def test_resolve_unknown_or_disabled():
    registry = PersonaRegistry()
    with pytest.raises(PersonaNotFoundError):
        registry.resolve("nobody")

    registry.register(Persona(id="off", name="Off", enabled=False))
    with pytest.raises(PersonaNotFoundError):
        registry.resolve("off")


def test_transient_personas_hidden_by_default():
    registry = PersonaRegistry(seed_builtins=False)
    registry.register(Persona(id="_tmp", name="Transient"))
    registry.register(Persona(id="visible", name="Visible"))

    assert [p.id for p in registry.list_all()] == ["visible"]
    assert len(registry.list_all(include_transient=True)) == 2
    assert registry.unregister("_tmp") is True
    assert registry.unregister("_tmp") is False


class TestCustomPersonas:
    def test_actions_map_to_tools(self):
        assert actions_to_tools(["query", "delete", "query", "fly"]) == [
            "get_workspace_info",
            "query_data",
            "delete_data",
        ]

    def test_read_only_prompt(self):
        prompt = build_persona_prompt("Auditor", "You audit invoices.", ["query"])
        assert prompt.startswith("You are **Auditor**")
        assert "You audit invoices." in prompt
        assert "READ-ONLY" in prompt

    def test_write_prompt(self):
        prompt = build_persona_prompt("Clerk", "You enter orders.", ["query", "insert"])
        assert "READ-ONLY" not in prompt
        assert "restate exactly which records will change" in prompt

    def test_register_custom(self):
        registry = PersonaRegistry(seed_builtins=False)
        persona = registry.register_custom("hr", "HR Helper", "Staff records", "You manage staff.", ["query", "update"])

        assert registry.resolve("hr") is persona
        assert persona.tool_filter == ["get_workspace_info", "query_data", "update_data"]
        assert persona.builtin is False
