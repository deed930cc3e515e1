"""Tests for attempt_completion's validator checks."""

import pytest

from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.completion import referenced_tables
from workspace_agent.vm.models import ColumnDef, CreateTableRequest

pytestmark = pytest.mark.unit


def employees_page(**overrides):
    page = {
        "id": "employees",
        "title": "Employees",
        "blocks": [{"id": "tbl", "type": "data_table", "data_source": {"table": "employees"}}],
    }
    page.update(overrides)
    return page


def valid_schema():
    return {
        "app_name": "Staff",
        "default_page": "employees",
        "navigation": {"items": [{"page_id": "employees", "label": "Employees"}]},
        "pages": [employees_page()],
    }


async def seed_employees(vm_store, workspace_id, rows=1):
    await vm_store.create_table(
        workspace_id, CreateTableRequest(name="employees", columns=[ColumnDef(name="name")])
    )
    for i in range(rows):
        await vm_store.insert_row(workspace_id, "employees", {"name": f"e{i}"})


async def complete(registry, ctx):
    return await registry.execute(ctx, "attempt_completion", {"summary": "Staff directory"})


def issue_codes(result):
    return [i["code"] for i in result.data["issues"]]


async def test_valid_app_passes(tool_registry, ctx, workspace_store, vm_store):
    await seed_employees(vm_store, ctx.workspace_id)
    await workspace_store.update_ui_schema(ctx.workspace_id, ctx.user_id, valid_schema())

    result = await complete(tool_registry, ctx)

    assert result.success
    assert result.data == {"app_name": "Staff", "page_count": 1, "table_count": 1, "summary": "Staff directory"}


async def test_no_schema(tool_registry, ctx):
    result = await complete(tool_registry, ctx)
    assert not result.success
    assert result.error_kind == ErrorKind.VALIDATION_FAILED
    assert issue_codes(result) == ["NO_UI_SCHEMA"]


async def test_no_pages(tool_registry, ctx, workspace_store):
    await workspace_store.update_ui_schema(ctx.workspace_id, ctx.user_id, {"app_name": "x", "pages": []})
    result = await complete(tool_registry, ctx)
    assert issue_codes(result) == ["NO_PAGES"]


async def test_missing_table_message(tool_registry, ctx, workspace_store):
    await workspace_store.update_ui_schema(ctx.workspace_id, ctx.user_id, valid_schema())
    result = await complete(tool_registry, ctx)

    assert not result.success
    assert issue_codes(result) == ["MISSING_TABLE"]
    assert 'MISSING_TABLE: Block references table "employees"' in result.error


async def test_every_issue_reported(tool_registry, ctx, workspace_store, vm_store):
    await seed_employees(vm_store, ctx.workspace_id, rows=0)
    schema = valid_schema()
    schema["default_page"] = "home"
    schema["navigation"]["items"].append({"page_id": "reports"})
    schema["pages"].append({"id": "empty", "blocks": []})
    await workspace_store.update_ui_schema(ctx.workspace_id, ctx.user_id, schema)

    result = await complete(tool_registry, ctx)

    assert issue_codes(result) == ["EMPTY_PAGES", "NAV_ORPHAN", "INVALID_DEFAULT_PAGE", "EMPTY_TABLE"]
    assert "validation failed with 4 issue(s)" in result.error


async def test_fixing_issues_then_passing(tool_registry, ctx, workspace_store, vm_store):
    await workspace_store.update_ui_schema(ctx.workspace_id, ctx.user_id, valid_schema())
    assert not (await complete(tool_registry, ctx)).success

    await seed_employees(vm_store, ctx.workspace_id)
    assert (await complete(tool_registry, ctx)).success


def test_referenced_tables_walks_tabs_and_dedupes():
    schema = {
        "pages": [
            {
                "id": "p",
                "blocks": [
                    {"config": {"table_name": "a"}, "data_source": {"table": "a"}},
                    {
                        "type": "tabs_container",
                        "config": {"tabs": [{"blocks": [{"data_source": {"table": "b"}}]}]},
                    },
                    "junk",
                ],
            }
        ]
    }
    assert referenced_tables(schema) == ["a", "b"]
