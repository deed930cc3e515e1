"""Tests for UI-schema tools and apply_ui_operations()."""

import pytest

from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.block_specs import BLOCK_SPECS
from workspace_agent.agent.tools.ui import apply_ui_operations

pytestmark = pytest.mark.unit

SCHEMA = {
    "app_name": "Team Tasks",
    "default_page": "tasks",
    "navigation": {"type": "sidebar", "items": [{"page_id": "tasks", "label": "Tasks"}]},
    "pages": [
        {
            "id": "tasks",
            "title": "Tasks",
            "route": "/tasks",
            "blocks": [{"id": "t", "type": "data_table", "config": {"table_name": "tasks"}}],
        }
    ],
}


def page_ids(schema):
    return {p["id"] for p in schema["pages"]}


class TestApplyOperations:
    def test_add_then_remove_page_restores_page_ids(self):
        page = {"id": "reports", "title": "Reports"}
        added, applied, _ = apply_ui_operations(SCHEMA, [{"op": "add_page", "page": page}])
        removed, applied_again, _ = apply_ui_operations(added, [{"op": "remove_page", "page_id": "reports"}])

        assert applied == applied_again == 1
        assert page_ids(added) == {"tasks", "reports"}
        assert page_ids(removed) == page_ids(SCHEMA)

    def test_input_schema_is_not_mutated(self):
        apply_ui_operations(SCHEMA, [{"op": "set_app_name", "app_name": "Other"}])
        assert SCHEMA["app_name"] == "Team Tasks"

    def test_remove_page_cleans_navigation_and_default(self):
        schema, applied, _ = apply_ui_operations(SCHEMA, [{"op": "remove_page", "page_id": "tasks"}])
        assert applied == 1
        assert schema["pages"] == []
        assert schema["navigation"]["items"] == []
        assert "default_page" not in schema

    def test_invalid_operations_are_skipped(self):
        operations = [
            {"op": "add_page", "page": {"id": "tasks"}},  # duplicate
            {"op": "update_page", "page_id": "ghost", "page": {"title": "x"}},
            {"op": "update_block", "page_id": "tasks", "block_index": 5, "block": {}},
            {"op": "update_block", "page_id": "tasks", "block_index": True, "block": {}},
            {"op": "set_app_name", "app_name": "  "},
            "not an operation",
            {"op": "update_page", "page_id": "tasks", "page": {"title": "All Tasks", "id": "renamed"}},
        ]
        schema, applied, skipped = apply_ui_operations(SCHEMA, operations)

        assert (applied, skipped) == (1, 6)
        assert schema["pages"][0]["title"] == "All Tasks"
        assert schema["pages"][0]["id"] == "tasks"

    def test_update_block_replaces_in_place(self):
        block = {"id": "md", "type": "markdown", "config": {"content": "hi"}}
        schema, applied, _ = apply_ui_operations(
            SCHEMA, [{"op": "update_block", "page_id": "tasks", "block_index": 0, "block": block}]
        )
        assert applied == 1
        assert schema["pages"][0]["blocks"] == [block]

    def test_missing_schema_starts_empty(self):
        schema, applied, _ = apply_ui_operations(None, [{"op": "add_page", "page": {"id": "home"}}])
        assert applied == 1
        assert schema["pages"] == [{"id": "home", "blocks": []}]


class TestUITools:
    async def test_generate_read_and_modify(self, tool_registry, ctx, workspace_store):
        empty = await tool_registry.execute(ctx, "get_ui_schema", {})
        assert empty.success and empty.data["ui_schema"] is None

        generated = await tool_registry.execute(ctx, "generate_ui_schema", {"ui_schema": SCHEMA})
        assert generated.success
        assert generated.data == {"version": "v1", "page_count": 1}

        modified = await tool_registry.execute(
            ctx, "modify_ui_schema", {"operations": [{"op": "add_page", "page": {"id": "about"}}]}
        )
        assert modified.success
        assert modified.data == {"applied": 1, "skipped": 0, "version": "v2"}

        current = await tool_registry.execute(ctx, "get_ui_schema", {})
        assert page_ids(current.data["ui_schema"]) == {"tasks", "about"}
        assert len(await workspace_store.list_versions(ctx.workspace_id)) == 2

    async def test_modify_with_nothing_applied_fails_without_new_version(self, tool_registry, ctx, workspace_store):
        await tool_registry.execute(ctx, "generate_ui_schema", {"ui_schema": SCHEMA})
        result = await tool_registry.execute(
            ctx, "modify_ui_schema", {"operations": [{"op": "remove_page", "page_id": "ghost"}]}
        )
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_PARAMETERS
        assert len(await workspace_store.list_versions(ctx.workspace_id)) == 1

    async def test_unknown_operation_rejected_by_schema(self, tool_registry, ctx):
        result = await tool_registry.execute(ctx, "modify_ui_schema", {"operations": [{"op": "explode"}]})
        assert not result.success
        assert result.error.startswith("invalid parameters")

    async def test_block_spec_lookup(self, tool_registry, ctx):
        result = await tool_registry.execute(ctx, "get_block_spec", {"block_type": "data_table"})
        assert result.success
        assert "data_table" in result.output

        missing = await tool_registry.execute(ctx, "get_block_spec", {"block_type": "carousel"})
        assert not missing.success
        assert all(name in missing.error for name in BLOCK_SPECS)
