"""Data-layer tools backed by the per-workspace VMStore.

DDL: create_table, alter_table, delete_table
DML: insert_data, update_data, delete_data
Read: query_data, query_vm_data, get_workspace_info
"""

from __future__ import annotations

from typing import Any

import structlog

from workspace_agent.agent.context import ToolContext
from workspace_agent.agent.error.classifier import ErrorKind, classify_tool_exception
from workspace_agent.agent.tools.base import Tool, ToolResult, dumps
from workspace_agent.core.exceptions import WorkspaceNotFoundError
from workspace_agent.db.workspace_store import Store
from workspace_agent.vm.models import AlterTableRequest, ColumnDef, ColumnRename, CreateTableRequest
from workspace_agent.vm.store import VMStore

logger = structlog.get_logger(__name__)

# Rows returned to the LLM by query_data
QUERY_PREVIEW_ROWS = 20

_COLUMN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Column name (letters, digits, underscore)."},
        "type": {
            "type": "string",
            "description": "One of TEXT, INTEGER, REAL, BLOB, BOOLEAN, DATETIME.",
        },
        "nullable": {"type": "boolean"},
        "default": {},
        "unique": {"type": "boolean"},
    },
    "required": ["name", "type"],
}


class DataTool(Tool):
    """Base for tools that only need the VMStore."""

    affected_resource = "database"

    def __init__(self, vm_store: VMStore) -> None:
        self.vm_store = vm_store


# ------------------------------------------------------------------
# DDL
# ------------------------------------------------------------------


class CreateTableTool(DataTool):
    name = "create_table"
    description = (
        "Create a table in the workspace database. Re-running with the same name is a no-op. "
        "A single INTEGER primary key auto-increments."
    )
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Table name."},
            "columns": {"type": "array", "items": _COLUMN_SCHEMA, "minItems": 1},
            "primary_key": {"type": "array", "items": {"type": "string"}},
            "indexes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "columns": {"type": "array", "items": {"type": "string"}, "minItems": 1},
                        "unique": {"type": "boolean"},
                    },
                    "required": ["columns"],
                },
            },
        },
        "required": ["name", "columns"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        req = CreateTableRequest.model_validate(params)
        created = await self.vm_store.create_table(ctx.workspace_id, req)
        column_names = ", ".join(c.name for c in req.columns)
        if not created:
            return ToolResult.ok(
                f"Table '{req.name}' already exists; nothing changed.",
                {"table": req.name, "created": False},
            )
        return ToolResult.ok(
            f"Created table '{req.name}' with columns: {column_names}",
            {"table": req.name, "created": True, "columns": [c.name for c in req.columns]},
        )


class AlterTableTool(DataTool):
    name = "alter_table"
    description = (
        "Alter a table in one transaction: add columns, rename columns (alter_columns), "
        "drop columns, then optionally rename the table."
    )
    parameters = {
        "type": "object",
        "properties": {
            "table_name": {"type": "string"},
            "add_columns": {"type": "array", "items": _COLUMN_SCHEMA},
            "alter_columns": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"name": {"type": "string"}, "new_name": {"type": "string"}},
                    "required": ["name", "new_name"],
                },
            },
            "drop_columns": {"type": "array", "items": {"type": "string"}},
            "rename_to": {"type": "string"},
        },
        "required": ["table_name"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        req = AlterTableRequest(
            add_columns=[ColumnDef.model_validate(c) for c in params.get("add_columns") or []],
            alter_columns=[ColumnRename.model_validate(c) for c in params.get("alter_columns") or []],
            drop_columns=params.get("drop_columns") or [],
            rename_to=params.get("rename_to"),
        )
        table = params["table_name"]
        await self.vm_store.alter_table(ctx.workspace_id, table, req)
        changes = []
        if req.add_columns:
            changes.append(f"added {', '.join(c.name for c in req.add_columns)}")
        if req.alter_columns:
            changes.append("renamed " + ", ".join(f"{c.name}->{c.new_name}" for c in req.alter_columns))
        if req.drop_columns:
            changes.append(f"dropped {', '.join(req.drop_columns)}")
        if req.rename_to:
            changes.append(f"table renamed to {req.rename_to}")
        return ToolResult.ok(
            f"Altered table '{table}': {'; '.join(changes)}",
            {"table": req.rename_to or table},
        )


class DeleteTableTool(DataTool):
    name = "delete_table"
    description = "Drop a table and all of its rows. Irreversible."
    requires_confirmation = True
    parameters = {
        "type": "object",
        "properties": {"table_name": {"type": "string"}},
        "required": ["table_name"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        table = params["table_name"]
        await self.vm_store.drop_table(ctx.workspace_id, table)
        return ToolResult.ok(f"Deleted table '{table}'", {"table": table})


# ------------------------------------------------------------------
# DML
# ------------------------------------------------------------------


class InsertDataTool(DataTool):
    name = "insert_data"
    description = (
        "Insert rows into a table. Each row is inserted independently; failed rows are "
        "reported but do not stop the others."
    )
    parameters = {
        "type": "object",
        "properties": {
            "table_name": {"type": "string"},
            "rows": {"type": "array", "items": {"type": "object"}, "minItems": 1},
        },
        "required": ["table_name", "rows"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        table = params["table_name"]
        rows = params["rows"]
        inserted = 0
        last_error: str | None = None
        last_error_kind = ErrorKind.TOOL_ERROR
        for index, row in enumerate(rows):
            try:
                await self.vm_store.insert_row(ctx.workspace_id, table, row)
                inserted += 1
            except Exception as e:
                last_error = f"row {index}: {e}"
                last_error_kind = classify_tool_exception(e)
                logger.warning("insert_row_failed", table=table, row_index=index, error=str(e))

        data = {"table": table, "inserted": inserted, "total": len(rows), "last_error": last_error}
        summary = f"Inserted {inserted}/{len(rows)} rows into '{table}'"
        if inserted == 0:
            return ToolResult.fail(last_error or "no rows inserted", last_error_kind, output=summary, data=data)
        if last_error:
            summary += f" (last error: {last_error})"
        return ToolResult.ok(summary, data)


class UpdateDataTool(DataTool):
    name = "update_data"
    description = (
        "Update one row. `data` must include the table's primary key; every other key "
        "becomes part of the SET clause."
    )
    parameters = {
        "type": "object",
        "properties": {
            "table_name": {"type": "string"},
            "data": {"type": "object", "minProperties": 2},
        },
        "required": ["table_name", "data"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        table = params["table_name"]
        data = dict(params["data"])
        schema = await self.vm_store.get_table_schema(ctx.workspace_id, table)
        primary_key = schema.primary_key or ["id"]
        missing = [pk for pk in primary_key if pk not in data]
        if missing:
            return ToolResult.fail(
                f"data must include primary key column(s): {', '.join(missing)}",
                ErrorKind.INVALID_PARAMETERS,
            )
        where = {pk: data.pop(pk) for pk in primary_key}
        if not data:
            return ToolResult.fail("no columns to update", ErrorKind.INVALID_PARAMETERS)
        result = await self.vm_store.update_row(ctx.workspace_id, table, data, where)
        return ToolResult.ok(
            f"Updated {result.affected_rows} row(s) in '{table}'",
            {"table": table, "affected_rows": result.affected_rows},
        )


class DeleteDataTool(DataTool):
    name = "delete_data"
    description = "Delete rows by primary key value. Irreversible."
    requires_confirmation = True
    parameters = {
        "type": "object",
        "properties": {
            "table_name": {"type": "string"},
            "ids": {"type": "array", "minItems": 1},
        },
        "required": ["table_name", "ids"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        table = params["table_name"]
        schema = await self.vm_store.get_table_schema(ctx.workspace_id, table)
        if len(schema.primary_key) > 1:
            return ToolResult.fail(
                f"table '{table}' has a composite primary key; use query_data with DELETE instead",
                ErrorKind.INVALID_PARAMETERS,
            )
        primary_key = schema.primary_key[0] if schema.primary_key else "id"
        result = await self.vm_store.delete_rows(ctx.workspace_id, table, params["ids"], primary_key)
        return ToolResult.ok(
            f"Deleted {result.affected_rows} row(s) from '{table}'",
            {"table": table, "affected_rows": result.affected_rows},
        )


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


class QueryDataTool(DataTool):
    name = "query_data"
    description = (
        f"Run SQL against the workspace database. Only the first {QUERY_PREVIEW_ROWS} rows "
        "are returned; `truncated` tells you whether more exist."
    )
    parameters = {
        "type": "object",
        "properties": {
            "sql": {"type": "string", "minLength": 1},
            "params": {"type": "array"},
        },
        "required": ["sql"],
    }

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        result = await self.vm_store.execute_sql(ctx.workspace_id, params["sql"], params.get("params"))
        if not result.columns:
            return ToolResult.ok(
                f"Statement executed; {result.affected_rows} row(s) affected",
                {"affected_rows": result.affected_rows, "last_insert_id": result.last_insert_id},
            )
        preview = result.rows[:QUERY_PREVIEW_ROWS]
        truncated = result.truncated or result.total_count > len(preview)
        data = {
            "columns": result.columns,
            "rows": preview,
            "total_count": result.total_count,
            "truncated": truncated,
            "duration_ms": result.duration_ms,
        }
        return ToolResult.ok(dumps(data), data)


class QueryVMDataTool(QueryDataTool):
    name = "query_vm_data"
    description = "Alias of query_data for the data served by the workspace logic runtime."


class GetWorkspaceInfoTool(Tool):
    name = "get_workspace_info"
    description = "Describe the workspace: app status, tables with row counts and optionally database stats."
    parameters = {
        "type": "object",
        "properties": {
            "include_tables": {"type": "boolean", "default": True},
            "include_stats": {"type": "boolean", "default": False},
        },
    }

    def __init__(self, vm_store: VMStore, store: Store) -> None:
        self.vm_store = vm_store
        self.store = store

    async def execute(self, ctx: ToolContext, params: dict[str, Any]) -> ToolResult:
        info: dict[str, Any] = {"workspace_id": ctx.workspace_id}
        try:
            workspace = await self.store.get_workspace(ctx.workspace_id)
        except WorkspaceNotFoundError:
            workspace = None
        if workspace is not None:
            current = await self.store.get_current_version(ctx.workspace_id)
            pages = ((current.ui_schema or {}).get("pages") or []) if current else []
            info.update(
                name=workspace.name,
                app_status=workspace.app_status.value,
                version=current.version_tag if current else None,
                page_count=len(pages),
                has_logic=bool(current and current.logic_code.strip()),
                components=[c.name for c in current.component_codes] if current else [],
            )

        if params.get("include_tables", True):
            tables = await self.vm_store.list_tables(ctx.workspace_id)
            info["tables"] = [t.model_dump() for t in tables]
        if params.get("include_stats", False):
            info["stats"] = (await self.vm_store.get_stats(ctx.workspace_id)).model_dump()
        return ToolResult.ok(dumps(info), info)
