"""Request/response models for the per-workspace SQLite store."""

from typing import Any

from pydantic import BaseModel, Field

# Column types accepted by create_table / alter_table (case-folded)
ACCEPTED_COLUMN_TYPES = frozenset({"TEXT", "INTEGER", "REAL", "BLOB", "BOOLEAN", "DATETIME"})

# Declared type -> SQLite storage affinity used in the DDL
STORAGE_TYPES = {
    "TEXT": "TEXT",
    "INTEGER": "INTEGER",
    "REAL": "REAL",
    "BLOB": "BLOB",
    "BOOLEAN": "INTEGER",
    "DATETIME": "TEXT",
}

# ExecuteSQL keeps at most this many rows in memory
MAX_RESULT_ROWS = 1000


class ColumnDef(BaseModel):
    name: str
    type: str = "TEXT"
    nullable: bool = True
    default: Any = None
    unique: bool = False


class IndexDef(BaseModel):
    name: str | None = None
    columns: list[str]
    unique: bool = False


class CreateTableRequest(BaseModel):
    name: str
    columns: list[ColumnDef]
    primary_key: list[str] = Field(default_factory=list)
    indexes: list[IndexDef] = Field(default_factory=list)


class ColumnRename(BaseModel):
    """Rename-only column alteration."""

    name: str
    new_name: str


class AlterTableRequest(BaseModel):
    add_columns: list[ColumnDef] = Field(default_factory=list)
    alter_columns: list[ColumnRename] = Field(default_factory=list)
    drop_columns: list[str] = Field(default_factory=list)
    rename_to: str | None = None


class TableInfo(BaseModel):
    name: str
    row_count: int
    column_count: int


class ColumnInfo(BaseModel):
    name: str
    type: str
    nullable: bool
    default: str | None = None
    primary_key: bool = False


class IndexInfo(BaseModel):
    name: str
    columns: list[str]
    unique: bool


class ForeignKeyInfo(BaseModel):
    column: str
    ref_table: str
    ref_column: str | None = None


class TableSchema(BaseModel):
    name: str
    columns: list[ColumnInfo]
    primary_key: list[str]
    indexes: list[IndexInfo] = Field(default_factory=list)
    foreign_keys: list[ForeignKeyInfo] = Field(default_factory=list)
    ddl: str = ""


class SchemaGraphNode(BaseModel):
    id: str
    name: str
    columns: list[ColumnInfo]


class SchemaGraphEdge(BaseModel):
    """One foreign key: ``source.source_column -> target.target_column``."""

    id: str
    source: str
    target: str
    source_column: str
    target_column: str | None = None
    constraint_name: str = ""


class SchemaGraph(BaseModel):
    nodes: list[SchemaGraphNode] = Field(default_factory=list)
    edges: list[SchemaGraphEdge] = Field(default_factory=list)


class QueryResult(BaseModel):
    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    affected_rows: int = 0
    total_count: int = 0
    duration_ms: float = 0.0
    truncated: bool = False
    last_insert_id: int | None = None


class ExecResult(BaseModel):
    affected_rows: int
    last_insert_id: int | None = None


class QueryRowsParams(BaseModel):
    limit: int = 50
    offset: int = 0
    order_by: str | None = None
    descending: bool = False
    filters: dict[str, Any] = Field(default_factory=dict)


class DatabaseStats(BaseModel):
    table_count: int
    total_rows: int
    index_count: int
    file_size_kb: float
    journal_mode: str
