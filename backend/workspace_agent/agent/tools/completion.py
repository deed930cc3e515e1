"""attempt_completion: deterministic validation of the built app, and turn terminator.

Checks, in order:
1. the latest version has a UI schema
2. the schema has pages
3. EMPTY_PAGES: pages without blocks
4. MISSING_TABLE: blocks referencing tables that do not exist
5. NAV_ORPHAN: navigation items pointing at unknown pages
6. INVALID_DEFAULT_PAGE: default_page not matching a page
7. EMPTY_TABLE: referenced tables without any rows

A failed run returns every issue so the LLM can fix them and call again.
A successful run ends the turn.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.db.workspace_store import Store
from workspace_agent.vm.store import VMStore


class Issue(BaseModel):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def _block_tables(block: Any, found: list[str]) -> None:
    if not isinstance(block, dict):
        return
    data_source = block.get("data_source")
    if isinstance(data_source, dict) and isinstance(data_source.get("table"), str):
        found.append(data_source["table"])
    config = block.get("config")
    if isinstance(config, dict):
        if isinstance(config.get("table_name"), str):
            found.append(config["table_name"])
        for tab in config.get("tabs") or []:
            if isinstance(tab, dict):
                for nested in tab.get("blocks") or []:
                    _block_tables(nested, found)


def referenced_tables(ui_schema: dict[str, Any]) -> list[str]:
    """Distinct table names referenced by any block, in first-seen order."""
    found: list[str] = []
    for page in ui_schema.get("pages") or []:
        if isinstance(page, dict):
            for block in page.get("blocks") or []:
                _block_tables(block, found)
    return list(dict.fromkeys(t for t in found if t))


class AttemptCompletionTool(Tool):
    name = "attempt_completion"
    description = (
        "Call when the app is finished. Validates the UI schema against the database "
        "(pages, blocks, navigation, referenced tables and seed data). On failure it lists the "
        "issues; fix them and call again. On success the turn ends."
    )
    parameters = {
        "type": "object",
        "properties": {"summary": {"type": "string", "description": "What was built."}},
        "required": ["summary"],
    }

    def __init__(self, store: Store, vm_store: VMStore) -> None:
        self.store = store
        self.vm_store = vm_store

    async def validate(self, workspace_id: str) -> tuple[list[Issue], dict[str, Any]]:
        current = await self.store.get_current_version(workspace_id)
        schema = current.ui_schema if current else None
        if not schema:
            return [Issue(code="NO_UI_SCHEMA", message="No UI schema has been generated yet")], {}
        pages = [p for p in schema.get("pages") or [] if isinstance(p, dict)]
        if not pages:
            return [Issue(code="NO_PAGES", message="The UI schema has no pages")], {}

        issues: list[Issue] = []
        page_ids = {p.get("id") for p in pages}

        for page in pages:
            if not page.get("blocks"):
                issues.append(Issue(code="EMPTY_PAGES", message=f'Page "{page.get("id")}" has no blocks'))

        tables = referenced_tables(schema)
        existing = {t.name: t for t in await self.vm_store.list_tables(workspace_id)}
        for table in tables:
            if table not in existing:
                issues.append(
                    Issue(
                        code="MISSING_TABLE",
                        message=f'Block references table "{table}" which does not exist; create it with create_table',
                    )
                )

        navigation = schema.get("navigation")
        items = navigation.get("items") if isinstance(navigation, dict) else None
        for item in items or []:
            if isinstance(item, dict) and item.get("page_id") not in page_ids:
                issues.append(
                    Issue(code="NAV_ORPHAN", message=f'Navigation item points to unknown page "{item.get("page_id")}"')
                )

        default_page = schema.get("default_page")
        if default_page and default_page not in page_ids:
            issues.append(
                Issue(code="INVALID_DEFAULT_PAGE", message=f'default_page "{default_page}" does not match any page')
            )

        for table in tables:
            info = existing.get(table)
            if info is not None and info.row_count == 0:
                issues.append(
                    Issue(code="EMPTY_TABLE", message=f'Table "{table}" has no rows; seed it with insert_data')
                )

        stats = {
            "app_name": schema.get("app_name") or "Untitled App",
            "page_count": len(pages),
            "table_count": len(tables),
        }
        return issues, stats

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        issues, stats = await self.validate(ctx.workspace_id)
        if issues:
            listing = "\n".join(f"- {issue}" for issue in issues)
            return ToolResult.fail(
                f"validation failed with {len(issues)} issue(s):\n{listing}",
                ErrorKind.VALIDATION_FAILED,
                data={"issues": [i.model_dump() for i in issues]},
            )
        return ToolResult.ok(
            f"App '{stats['app_name']}' is complete: {stats['page_count']} page(s), "
            f"{stats['table_count']} referenced table(s).\n\n{params['summary']}",
            {**stats, "summary": params["summary"]},
        )
