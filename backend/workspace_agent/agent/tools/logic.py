"""Logic and app-lifecycle tools: deploy_logic, get_logic, components, publish_app."""

from __future__ import annotations

from typing import Any

import structlog

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind
from workspace_agent.agent.tools.base import Tool, ToolResult
from workspace_agent.db.workspace_store import Store
from workspace_agent.vm.pool import VMPool

logger = structlog.get_logger(__name__)


class DeployLogicTool(Tool):
    name = "deploy_logic"
    description = (
        "Deploy the workspace's JavaScript logic. The script sets "
        '`exports.routes = {"GET /items": (ctx) => db.query("SELECT * FROM items")}`; '
        "handlers get ctx {method, path, params, query, body, headers} and may return "
        "{status, body}. The `db` global offers query, queryOne, exec, insert, update, delete."
    )
    parameters = {
        "type": "object",
        "properties": {"code": {"type": "string"}},
        "required": ["code"],
    }
    affected_resource = "logic"

    def __init__(self, store: Store, pool: VMPool) -> None:
        self.store = store
        self.pool = pool

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        code = params["code"]
        if not code.strip():
            return ToolResult.fail("code must not be empty", ErrorKind.INVALID_PARAMETERS)
        version = await self.store.update_logic_code(ctx.workspace_id, ctx.user_id, code)
        evicted = await self.pool.invalidate(ctx.workspace_id)
        logger.info("logic_deployed", workspace_id=ctx.workspace_id, version=version.version_tag, evicted=evicted)
        return ToolResult.ok(
            f"Logic deployed as {version.version_tag} ({len(code)} chars)",
            {"version": version.version_tag, "evicted_instances": evicted},
        )


class GetLogicTool(Tool):
    name = "get_logic"
    description = "Return the currently deployed JavaScript logic (empty string when none)."

    def __init__(self, store: Store) -> None:
        self.store = store

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        current = await self.store.get_current_version(ctx.workspace_id)
        code = current.logic_code if current else ""
        return ToolResult.ok(code or "No logic deployed yet.", {"code": code})


class DeployComponentTool(Tool):
    name = "deploy_component"
    description = "Store a sandboxed frontend component on the current version, replacing one with the same name."
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "pattern": "^[A-Za-z][A-Za-z0-9_]*$"},
            "code": {"type": "string", "minLength": 1},
        },
        "required": ["name", "code"],
    }
    affected_resource = "ui_schema"

    def __init__(self, store: Store) -> None:
        self.store = store

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        version = await self.store.upsert_component(ctx.workspace_id, ctx.user_id, params["name"], params["code"])
        return ToolResult.ok(
            f"Component '{params['name']}' deployed as {version.version_tag}",
            {"name": params["name"], "version": version.version_tag},
        )


class ListComponentsTool(Tool):
    name = "list_components"
    description = "List the frontend components stored on the current version."

    def __init__(self, store: Store) -> None:
        self.store = store

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        current = await self.store.get_current_version(ctx.workspace_id)
        names = [c.name for c in current.component_codes] if current else []
        if not names:
            return ToolResult.ok("No components deployed.", {"components": []})
        return ToolResult.ok(f"Components: {', '.join(names)}", {"components": names})


class PublishAppTool(Tool):
    name = "publish_app"
    description = "Publish the current version of the app so end users can reach it."
    requires_confirmation = True
    affected_resource = "app"

    def __init__(self, store: Store) -> None:
        self.store = store

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        workspace = await self.store.publish(ctx.workspace_id, ctx.user_id)
        return ToolResult.ok(
            f"Published '{workspace.name}'",
            {
                "app_status": workspace.app_status.value,
                "published_version_id": workspace.published_version_id,
            },
        )
