"""UI-schema tools: generate, modify, read, and the block spec catalog.

Every write goes through ``Store.update_ui_schema`` and so creates a new
WorkspaceVersion.
"""

from __future__ import annotations

import copy
from typing import Any

import structlog

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.base import Tool, ToolResult, dumps
from workspace_agent.agent.tools.block_specs import BLOCK_SPECS, render_block_spec
from workspace_agent.db.workspace_store import Store

logger = structlog.get_logger(__name__)

UI_OPERATIONS = ("add_page", "update_page", "remove_page", "set_app_name", "set_navigation", "update_block")


def _pages(schema: dict[str, Any]) -> list[dict[str, Any]]:
    pages = schema.get("pages")
    if not isinstance(pages, list):
        pages = []
        schema["pages"] = pages
    return pages


def _find_page(schema: dict[str, Any], page_id: Any) -> dict[str, Any] | None:
    return next((p for p in _pages(schema) if isinstance(p, dict) and p.get("id") == page_id), None)


def _apply_one(schema: dict[str, Any], op: dict[str, Any]) -> bool:
    kind = op.get("op")
    if kind == "add_page":
        page = op.get("page")
        if not isinstance(page, dict) or not page.get("id") or _find_page(schema, page["id"]) is not None:
            return False
        page = copy.deepcopy(page)
        page.setdefault("blocks", [])
        _pages(schema).append(page)
        return True

    if kind == "update_page":
        page = _find_page(schema, op.get("page_id"))
        fields = op.get("page")
        if page is None or not isinstance(fields, dict) or not fields:
            return False
        for key, value in fields.items():
            if key != "id":
                page[key] = copy.deepcopy(value)
        return True

    if kind == "remove_page":
        page_id = op.get("page_id")
        page = _find_page(schema, page_id)
        if page is None:
            return False
        schema["pages"] = [p for p in _pages(schema) if p is not page]
        navigation = schema.get("navigation")
        if isinstance(navigation, dict) and isinstance(navigation.get("items"), list):
            navigation["items"] = [
                item for item in navigation["items"]
                if not (isinstance(item, dict) and item.get("page_id") == page_id)
            ]
        if schema.get("default_page") == page_id:
            schema.pop("default_page")
        return True

    if kind == "set_app_name":
        name = op.get("app_name")
        if not isinstance(name, str) or not name.strip():
            return False
        schema["app_name"] = name
        return True

    if kind == "set_navigation":
        navigation = op.get("navigation")
        if not isinstance(navigation, dict):
            return False
        schema["navigation"] = copy.deepcopy(navigation)
        return True

    if kind == "update_block":
        page = _find_page(schema, op.get("page_id"))
        index = op.get("block_index")
        block = op.get("block")
        if page is None or not isinstance(index, int) or isinstance(index, bool) or not isinstance(block, dict):
            return False
        blocks = page.get("blocks")
        if not isinstance(blocks, list) or not 0 <= index < len(blocks):
            return False
        blocks[index] = copy.deepcopy(block)
        return True

    return False


def apply_ui_operations(schema: dict[str, Any] | None, operations: list[Any]) -> tuple[dict[str, Any], int, int]:
    """Apply operations to a copy of *schema*.

    Invalid or no-op entries are skipped. Returns (new_schema, applied, skipped).
    """
    result = copy.deepcopy(schema) if schema else {"pages": []}
    applied = 0
    for op in operations:
        if isinstance(op, dict) and _apply_one(result, op):
            applied += 1
    return result, applied, len(operations) - applied


class UITool(Tool):
    affected_resource = "ui_schema"

    def __init__(self, store: Store) -> None:
        self.store = store


class GenerateUISchemaTool(UITool):
    name = "generate_ui_schema"
    description = (
        "Replace the app's whole UI schema (app_name, pages[{id, title, route, blocks[]}], "
        "navigation{items[{label, page_id, icon}]}, default_page). Creates a new version."
    )
    parameters = {
        "type": "object",
        "properties": {
            "ui_schema": {
                "type": "object",
                "properties": {
                    "app_name": {"type": "string"},
                    "pages": {"type": "array", "items": {"type": "object"}},
                    "navigation": {"type": "object"},
                    "default_page": {"type": "string"},
                },
                "required": ["pages"],
            },
        },
        "required": ["ui_schema"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        schema = params["ui_schema"]
        version = await self.store.update_ui_schema(ctx.workspace_id, ctx.user_id, schema)
        pages = schema.get("pages") or []
        return ToolResult.ok(
            f"UI schema saved as {version.version_tag} with {len(pages)} page(s)",
            {"version": version.version_tag, "page_count": len(pages)},
        )


class ModifyUISchemaTool(UITool):
    name = "modify_ui_schema"
    description = (
        "Apply incremental edits to the current UI schema. Each operation has an `op`: "
        "add_page{page}, update_page{page_id, page}, remove_page{page_id}, set_app_name{app_name}, "
        "set_navigation{navigation}, update_block{page_id, block_index, block}."
    )
    parameters = {
        "type": "object",
        "properties": {
            "operations": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {"op": {"type": "string", "enum": list(UI_OPERATIONS)}},
                    "required": ["op"],
                },
            },
        },
        "required": ["operations"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        current = await self.store.get_current_version(ctx.workspace_id)
        schema, applied, skipped = apply_ui_operations(
            current.ui_schema if current else None, params["operations"]
        )
        if applied == 0:
            return ToolResult.fail(
                "no operations were applied; check page ids, block indexes and operation fields",
                ErrorKind.INVALID_PARAMETERS,
            )
        version = await self.store.update_ui_schema(ctx.workspace_id, ctx.user_id, schema)
        logger.info("ui_schema_modified", workspace_id=ctx.workspace_id, applied=applied, skipped=skipped)
        return ToolResult.ok(
            f"Applied {applied} operation(s), skipped {skipped}; saved as {version.version_tag}",
            {"applied": applied, "skipped": skipped, "version": version.version_tag},
        )


class GetUISchemaTool(UITool):
    name = "get_ui_schema"
    description = "Return the current UI schema, or an empty result when none exists yet."

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        current = await self.store.get_current_version(ctx.workspace_id)
        if current is None or not current.ui_schema:
            return ToolResult.ok("No UI schema has been generated yet.", {"ui_schema": None})
        return ToolResult.ok(dumps(current.ui_schema), {"ui_schema": current.ui_schema})


class GetBlockSpecTool(Tool):
    name = "get_block_spec"
    description = (
        "Get the config specification and example JSON for one block type. "
        f"Available types: {', '.join(BLOCK_SPECS)}."
    )
    parameters = {
        "type": "object",
        "properties": {"block_type": {"type": "string"}},
        "required": ["block_type"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        block_type = params["block_type"]
        spec = render_block_spec(block_type)
        if spec is None:
            return ToolResult.fail(
                f"unknown block type '{block_type}'. Available: {', '.join(BLOCK_SPECS)}",
                ErrorKind.INVALID_PARAMETERS,
            )
        return ToolResult.ok(f"Block specification for '{block_type}':\n\n{spec}")
