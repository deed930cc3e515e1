"""VMStore: per-workspace SQLite lifecycle and SQL execution.

Every workspace owns exactly one SQLite file at ``<root>/<workspace_id>.sqlite``.
The store keeps one process-wide aiosqlite connection per workspace, opened
lazily in WAL mode, plus a per-workspace lock that serializes statements and
multi-statement transactions (create_table with indexes, alter_table).

Provides:
- DDL: ``create_table`` (idempotent), ``alter_table`` (transactional), ``drop_table``
- Introspection: ``list_tables``, ``get_table_schema``, ``get_schema_graph``, ``get_stats``
- DML: ``insert_row``, ``update_row``, ``delete_rows``, ``delete_where``, ``query_rows``
- Raw SQL: ``execute_sql`` (row-returning or exec, rows capped at 1000)
- Lifecycle: ``db_path``, ``exists``, ``close_db``, ``delete`` (explicit purge), ``close``

Nothing is retried. Driver errors (``sqlite3.Error``) propagate verbatim so the
calling tool can surface them to the LLM.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from workspace_agent.core.exceptions import (
    ColumnExistsError,
    InvalidSchemaError,
    InvalidWorkspaceIdError,
    TableNotFoundError,
)
from workspace_agent.vm.models import (
    ACCEPTED_COLUMN_TYPES,
    MAX_RESULT_ROWS,
    STORAGE_TYPES,
    AlterTableRequest,
    ColumnDef,
    ColumnInfo,
    CreateTableRequest,
    DatabaseStats,
    ExecResult,
    ForeignKeyInfo,
    IndexInfo,
    QueryResult,
    QueryRowsParams,
    SchemaGraph,
    SchemaGraphEdge,
    SchemaGraphNode,
    TableInfo,
    TableSchema,
)

logger = structlog.get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_KEYWORD_DEFAULTS = frozenset({"CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME", "NULL"})

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


# ------------------------------------------------------------------
# SQL helpers
# ------------------------------------------------------------------


def validate_identifier(name: str, what: str = "identifier") -> str:
    """Return *name* unchanged if it is a plain SQL identifier, else raise."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise InvalidSchemaError(f"invalid {what} '{name}': must match ^[A-Za-z_][A-Za-z0-9_]*$")
    return name


def quote_identifier(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def _default_literal(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if text.upper() in _KEYWORD_DEFAULTS:
        return text.upper()
    return "'" + text.replace("'", "''") + "'"


def _bind_value(value: Any) -> Any:
    """Coerce a JSON value into something sqlite3 can bind."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _decode_row(columns: list[str], row: Any) -> dict[str, Any]:
    return {col: _decode_value(val) for col, val in zip(columns, row)}


def _column_type(column: ColumnDef) -> str:
    declared = (column.type or "").strip().upper()
    if declared not in ACCEPTED_COLUMN_TYPES:
        raise InvalidSchemaError(
            f"unknown type '{column.type}' for column '{column.name}'; "
            f"accepted: {', '.join(sorted(ACCEPTED_COLUMN_TYPES))}"
        )
    return declared


def _column_sql(column: ColumnDef, inline_pk: bool = False) -> str:
    declared = _column_type(column)
    parts = [quote_identifier(column.name), STORAGE_TYPES[declared]]
    if inline_pk:
        parts.append("PRIMARY KEY")
        if declared == "INTEGER":
            parts.append("AUTOINCREMENT")
    elif not column.nullable:
        parts.append("NOT NULL")
    if column.unique and not inline_pk:
        parts.append("UNIQUE")
    default = _default_literal(column.default)
    if default is not None:
        parts.append(f"DEFAULT {default}")
    return " ".join(parts)


def build_create_table_sql(req: CreateTableRequest) -> list[str]:
    """Validate *req* and return the DDL statements that create it.

    Raises:
        InvalidSchemaError: bad identifier, no columns, unknown type,
            duplicate column or primary key referencing a missing column.
    """
    validate_identifier(req.name, "table name")
    if not req.columns:
        raise InvalidSchemaError(f"table '{req.name}' needs at least one column")

    seen: set[str] = set()
    for column in req.columns:
        validate_identifier(column.name, "column name")
        key = column.name.lower()
        if key in seen:
            raise InvalidSchemaError(f"duplicate column '{column.name}' in table '{req.name}'")
        seen.add(key)
        _column_type(column)

    for pk in req.primary_key:
        if pk.lower() not in seen:
            raise InvalidSchemaError(f"primary key column '{pk}' is not defined in table '{req.name}'")

    single_pk = req.primary_key[0].lower() if len(req.primary_key) == 1 else None
    column_lines = [
        _column_sql(column, inline_pk=column.name.lower() == single_pk) for column in req.columns
    ]
    if len(req.primary_key) > 1:
        column_lines.append(
            "PRIMARY KEY (" + ", ".join(quote_identifier(pk) for pk in req.primary_key) + ")"
        )

    statements = [
        f"CREATE TABLE IF NOT EXISTS {quote_identifier(req.name)} (\n  "
        + ",\n  ".join(column_lines)
        + "\n)"
    ]

    for index in req.indexes:
        if not index.columns:
            raise InvalidSchemaError("index needs at least one column")
        for col in index.columns:
            if col.lower() not in seen:
                raise InvalidSchemaError(f"index column '{col}' is not defined in table '{req.name}'")
        name = index.name or f"idx_{req.name}_{'_'.join(index.columns)}"
        validate_identifier(name, "index name")
        unique = "UNIQUE " if index.unique else ""
        statements.append(
            f"CREATE {unique}INDEX IF NOT EXISTS {quote_identifier(name)} "
            f"ON {quote_identifier(req.name)} ("
            + ", ".join(quote_identifier(c) for c in index.columns)
            + ")"
        )
    return statements


# ------------------------------------------------------------------
# Store
# ------------------------------------------------------------------


class VMStore:
    """Owns every workspace SQLite handle in the process."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._dbs: dict[str, aiosqlite.Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Guards the workspace -> connection map
        self._mutex = asyncio.Lock()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def db_path(self, workspace_id: str) -> Path:
        if not isinstance(workspace_id, str) or not _WORKSPACE_ID_RE.match(workspace_id):
            raise InvalidWorkspaceIdError(f"invalid workspace id '{workspace_id}'")
        return self._root / f"{workspace_id}.sqlite"

    def exists(self, workspace_id: str) -> bool:
        return self.db_path(workspace_id).exists()

    async def _open(self, workspace_id: str) -> tuple[aiosqlite.Connection, asyncio.Lock]:
        path = self.db_path(workspace_id)
        async with self._mutex:
            db = self._dbs.get(workspace_id)
            if db is not None:
                return db, self._locks[workspace_id]

            self._root.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly with BEGIN
            db = await aiosqlite.connect(path, isolation_level=None)
            for pragma in _PRAGMAS:
                await db.execute(pragma)
            self._dbs[workspace_id] = db
            self._locks[workspace_id] = asyncio.Lock()
            logger.info("vm_db_opened", workspace_id=workspace_id, path=str(path))
            return db, self._locks[workspace_id]

    async def close_db(self, workspace_id: str) -> None:
        """Close the workspace connection once the statement holding its lock finishes."""
        async with self._mutex:
            lock = self._locks.get(workspace_id)
        if lock is None:
            return
        # Workspace lock before the map mutex; _open never holds both
        async with lock:
            async with self._mutex:
                db = self._dbs.pop(workspace_id, None)
                if self._locks.get(workspace_id) is lock:
                    del self._locks[workspace_id]
            if db is not None:
                await db.close()
                logger.info("vm_db_closed", workspace_id=workspace_id)

    async def delete(self, workspace_id: str) -> None:
        """Purge the workspace database, including its WAL side files."""
        await self.close_db(workspace_id)
        path = self.db_path(workspace_id)
        for suffix in ("", "-wal", "-shm"):
            Path(f"{path}{suffix}").unlink(missing_ok=True)
        logger.info("vm_db_purged", workspace_id=workspace_id)

    async def close(self) -> None:
        async with self._mutex:
            workspace_ids = list(self._dbs)
        for workspace_id in workspace_ids:
            try:
                await self.close_db(workspace_id)
            except Exception as exc:
                logger.warning("vm_db_close_failed", workspace_id=workspace_id, error=str(exc))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _table_exists(db: aiosqlite.Connection, table: str) -> bool:
        async with db.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ) as cursor:
            return await cursor.fetchone() is not None

    @staticmethod
    async def _column_names(db: aiosqlite.Connection, table: str) -> list[str]:
        async with db.execute(f"PRAGMA table_info({quote_identifier(table)})") as cursor:
            return [row[1] for row in await cursor.fetchall()]

    @staticmethod
    async def _scalar(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> Any:
        async with db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def _require_table(self, db: aiosqlite.Connection, table: str) -> None:
        validate_identifier(table, "table name")
        if not await self._table_exists(db, table):
            raise TableNotFoundError(table)

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    async def create_table(self, workspace_id: str, req: CreateTableRequest) -> bool:
        """Create a table; returns False when it already existed (no-op)."""
        statements = build_create_table_sql(req)
        db, lock = await self._open(workspace_id)
        async with lock:
            existed = await self._table_exists(db, req.name)
            await db.execute("BEGIN")
            try:
                for statement in statements:
                    await db.execute(statement)
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        logger.info("vm_table_created", workspace_id=workspace_id, table=req.name, existed=existed)
        return not existed

    async def alter_table(self, workspace_id: str, table: str, req: AlterTableRequest) -> None:
        """Apply add, rename and drop column changes in one transaction."""
        if not (req.add_columns or req.alter_columns or req.drop_columns or req.rename_to):
            raise InvalidSchemaError("alter_table needs at least one change")
        for column in req.add_columns:
            validate_identifier(column.name, "column name")
            _column_type(column)
        for rename in req.alter_columns:
            validate_identifier(rename.name, "column name")
            validate_identifier(rename.new_name, "column name")
        for name in req.drop_columns:
            validate_identifier(name, "column name")
        if req.rename_to:
            validate_identifier(req.rename_to, "table name")

        db, lock = await self._open(workspace_id)
        quoted = quote_identifier(table)
        async with lock:
            await self._require_table(db, table)
            await db.execute("BEGIN")
            try:
                for column in req.add_columns:
                    await db.execute(f"ALTER TABLE {quoted} ADD COLUMN {_column_sql(column)}")

                for rename in req.alter_columns:
                    current = {c.lower() for c in await self._column_names(db, table)}
                    if rename.new_name.lower() in current:
                        raise ColumnExistsError(table, rename.new_name)
                    if rename.name.lower() not in current:
                        raise InvalidSchemaError(f"column '{rename.name}' not found in table '{table}'")
                    await db.execute(
                        f"ALTER TABLE {quoted} RENAME COLUMN "
                        f"{quote_identifier(rename.name)} TO {quote_identifier(rename.new_name)}"
                    )

                for name in req.drop_columns:
                    await db.execute(f"ALTER TABLE {quoted} DROP COLUMN {quote_identifier(name)}")

                if req.rename_to:
                    await db.execute(f"ALTER TABLE {quoted} RENAME TO {quote_identifier(req.rename_to)}")

                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        logger.info(
            "vm_table_altered",
            workspace_id=workspace_id,
            table=table,
            added=len(req.add_columns),
            renamed=len(req.alter_columns),
            dropped=len(req.drop_columns),
        )

    async def drop_table(self, workspace_id: str, table: str) -> None:
        validate_identifier(table, "table name")
        db, lock = await self._open(workspace_id)
        async with lock:
            await db.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
        logger.info("vm_table_dropped", workspace_id=workspace_id, table=table)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def list_tables(self, workspace_id: str) -> list[TableInfo]:
        db, lock = await self._open(workspace_id)
        tables: list[TableInfo] = []
        async with lock:
            async with db.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ) as cursor:
                names = [row[0] for row in await cursor.fetchall()]
            for name in names:
                row_count = await self._scalar(db, f"SELECT COUNT(*) FROM {quote_identifier(name)}")
                columns = await self._column_names(db, name)
                tables.append(TableInfo(name=name, row_count=row_count or 0, column_count=len(columns)))
        return tables

    async def get_table_schema(self, workspace_id: str, table: str) -> TableSchema:
        db, lock = await self._open(workspace_id)
        quoted = quote_identifier(table)
        async with lock:
            await self._require_table(db, table)
            async with db.execute(f"PRAGMA table_info({quoted})") as cursor:
                info = await cursor.fetchall()
            async with db.execute(f"PRAGMA index_list({quoted})") as cursor:
                index_rows = await cursor.fetchall()
            indexes: list[IndexInfo] = []
            for index_row in index_rows:
                index_name = index_row[1]
                async with db.execute(f"PRAGMA index_info({quote_identifier(index_name)})") as cursor:
                    index_columns = [r[2] for r in await cursor.fetchall()]
                indexes.append(IndexInfo(name=index_name, columns=index_columns, unique=bool(index_row[2])))
            async with db.execute(f"PRAGMA foreign_key_list({quoted})") as cursor:
                fk_rows = await cursor.fetchall()
            ddl = await self._scalar(
                db, "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
            )

        # PRAGMA table_info: (cid, name, type, notnull, dflt_value, pk)
        columns = [
            ColumnInfo(
                name=row[1],
                type=row[2],
                nullable=not row[3] and not row[5],
                default=row[4],
                primary_key=bool(row[5]),
            )
            for row in info
        ]
        primary_key = [row[1] for row in sorted((r for r in info if r[5]), key=lambda r: r[5])]
        # PRAGMA foreign_key_list: (id, seq, table, from, to, on_update, on_delete, match)
        foreign_keys = [ForeignKeyInfo(column=r[3], ref_table=r[2], ref_column=r[4]) for r in fk_rows]
        return TableSchema(
            name=table,
            columns=columns,
            primary_key=primary_key,
            indexes=indexes,
            foreign_keys=foreign_keys,
            ddl=ddl or "",
        )

    async def get_schema_graph(self, workspace_id: str) -> SchemaGraph:
        """Tables as nodes and foreign keys as edges, for the schema diagram."""
        graph = SchemaGraph()
        for table in await self.list_tables(workspace_id):
            try:
                schema = await self.get_table_schema(workspace_id, table.name)
            except TableNotFoundError:
                # dropped between listing and introspection
                continue
            graph.nodes.append(SchemaGraphNode(id=table.name, name=table.name, columns=schema.columns))
            for index, fk in enumerate(schema.foreign_keys):
                target_column = fk.ref_column or ""
                graph.edges.append(
                    SchemaGraphEdge(
                        id=f"{table.name}.{fk.column}->{fk.ref_table}.{target_column}",
                        source=table.name,
                        target=fk.ref_table,
                        source_column=fk.column,
                        target_column=fk.ref_column,
                        constraint_name=f"fk_{table.name}_{index}",
                    )
                )
        return graph

    async def get_stats(self, workspace_id: str) -> DatabaseStats:
        tables = await self.list_tables(workspace_id)
        db, lock = await self._open(workspace_id)
        async with lock:
            index_count = await self._scalar(
                db,
                "SELECT COUNT(*) FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'",
            )
            journal_mode = await self._scalar(db, "PRAGMA journal_mode")
        path = self.db_path(workspace_id)
        size = path.stat().st_size if path.exists() else 0
        return DatabaseStats(
            table_count=len(tables),
            total_rows=sum(t.row_count for t in tables),
            index_count=index_count or 0,
            file_size_kb=round(size / 1024, 2),
            journal_mode=str(journal_mode or ""),
        )

    # ------------------------------------------------------------------
    # DML
    # ------------------------------------------------------------------

    async def execute_sql(
        self,
        workspace_id: str,
        sql: str,
        params: list[Any] | dict[str, Any] | None = None,
    ) -> QueryResult:
        """Run arbitrary SQL.

        Row-returning statements keep at most ``MAX_RESULT_ROWS`` decoded rows but
        still count every row for ``total_count``. Other statements report
        ``affected_rows`` and ``last_insert_id``.
        """
        if isinstance(params, dict):
            bound: Any = {k: _bind_value(v) for k, v in params.items()}
        else:
            bound = tuple(_bind_value(v) for v in (params or ()))

        db, lock = await self._open(workspace_id)
        started = time.perf_counter()
        async with lock:
            async with db.execute(sql, bound) as cursor:
                if cursor.description is None:
                    result = QueryResult(
                        affected_rows=max(cursor.rowcount, 0),
                        last_insert_id=cursor.lastrowid,
                    )
                else:
                    columns = [d[0] for d in cursor.description]
                    rows: list[dict[str, Any]] = []
                    total = 0
                    async for row in cursor:
                        total += 1
                        if total <= MAX_RESULT_ROWS:
                            rows.append(_decode_row(columns, row))
                    result = QueryResult(
                        columns=columns,
                        rows=rows,
                        total_count=total,
                        truncated=total > MAX_RESULT_ROWS,
                    )
        result.duration_ms = round((time.perf_counter() - started) * 1000, 3)
        return result

    async def insert_row(self, workspace_id: str, table: str, data: dict[str, Any]) -> ExecResult:
        validate_identifier(table, "table name")
        if not data:
            raise InvalidSchemaError("insert requires at least one column")
        columns = ", ".join(quote_identifier(c) for c in data)
        placeholders = ", ".join("?" for _ in data)
        result = await self.execute_sql(
            workspace_id,
            f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})",
            list(data.values()),
        )
        return ExecResult(affected_rows=result.affected_rows, last_insert_id=result.last_insert_id)

    async def update_row(
        self,
        workspace_id: str,
        table: str,
        data: dict[str, Any],
        where: dict[str, Any],
    ) -> ExecResult:
        validate_identifier(table, "table name")
        if not data:
            raise InvalidSchemaError("update requires at least one column to set")
        if not where:
            raise InvalidSchemaError("update requires a where clause")
        assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in data)
        conditions = " AND ".join(f"{quote_identifier(c)} = ?" for c in where)
        result = await self.execute_sql(
            workspace_id,
            f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {conditions}",
            list(data.values()) + list(where.values()),
        )
        return ExecResult(affected_rows=result.affected_rows)

    async def delete_where(self, workspace_id: str, table: str, where: dict[str, Any]) -> ExecResult:
        validate_identifier(table, "table name")
        if not where:
            raise InvalidSchemaError("delete requires a where clause")
        conditions = " AND ".join(f"{quote_identifier(c)} = ?" for c in where)
        result = await self.execute_sql(
            workspace_id,
            f"DELETE FROM {quote_identifier(table)} WHERE {conditions}",
            list(where.values()),
        )
        return ExecResult(affected_rows=result.affected_rows)

    async def delete_rows(
        self,
        workspace_id: str,
        table: str,
        ids: list[Any],
        primary_key: str = "id",
    ) -> ExecResult:
        validate_identifier(table, "table name")
        validate_identifier(primary_key, "column name")
        if not ids:
            raise InvalidSchemaError("delete requires at least one id")
        placeholders = ", ".join("?" for _ in ids)
        result = await self.execute_sql(
            workspace_id,
            f"DELETE FROM {quote_identifier(table)} WHERE {quote_identifier(primary_key)} IN ({placeholders})",
            list(ids),
        )
        return ExecResult(affected_rows=result.affected_rows)

    async def query_rows(
        self,
        workspace_id: str,
        table: str,
        params: QueryRowsParams | None = None,
    ) -> QueryResult:
        """Paginated equality-filtered read of one table."""
        params = params or QueryRowsParams()
        validate_identifier(table, "table name")
        limit = min(max(params.limit, 1), MAX_RESULT_ROWS)
        offset = max(params.offset, 0)

        where_sql = ""
        values: list[Any] = []
        if params.filters:
            for column in params.filters:
                validate_identifier(column, "column name")
            where_sql = " WHERE " + " AND ".join(f"{quote_identifier(c)} = ?" for c in params.filters)
            values = list(params.filters.values())

        order_sql = ""
        if params.order_by:
            validate_identifier(params.order_by, "column name")
            order_sql = f" ORDER BY {quote_identifier(params.order_by)} {'DESC' if params.descending else 'ASC'}"

        quoted = quote_identifier(table)
        count = await self.execute_sql(workspace_id, f"SELECT COUNT(*) AS n FROM {quoted}{where_sql}", values)
        page = await self.execute_sql(
            workspace_id,
            f"SELECT * FROM {quoted}{where_sql}{order_sql} LIMIT ? OFFSET ?",
            values + [limit, offset],
        )
        page.total_count = count.rows[0]["n"] if count.rows else 0
        return page
