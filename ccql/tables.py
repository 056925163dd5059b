"""Logical table declarations and the file catalog that backs them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import QueryError


class ColumnType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    TIMESTAMP = "timestamp"
    JSON = "json"


class ParseMode(str, Enum):
    JSON_LINES = "jsonl"
    JSON_DOCUMENT = "json"
    VIEW = "view"


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    type: ColumnType = ColumnType.TEXT


@dataclass(frozen=True, slots=True)
class TableDef:
    name: str
    description: str
    columns: tuple[Column, ...]
    parse_mode: ParseMode
    pattern: str = ""
    single_file: bool = True
    provenance: tuple[str, ...] = ("_source_file",)
    order_by: str | None = None
    mutable: bool = False
    # Key of the record array inside a JSON document; None means the
    # document itself is the array.
    document_path: str | None = None
    view_sql: str | None = None
    depends_on: tuple[str, ...] = ()

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    @property
    def row_columns(self) -> list[str]:
        return self.column_names + list(self.provenance)

    def column(self, name: str) -> Column | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None


@dataclass(frozen=True, slots=True)
class SourceFile:
    path: Path
    parse_mode: ParseMode
    provenance: dict[str, Any] = field(default_factory=dict)


HISTORY = TableDef(
    name="history",
    description="Prompt history, one entry per submitted prompt",
    columns=(
        Column("display"),
        Column("timestamp", ColumnType.TIMESTAMP),
        Column("project"),
        Column("sessionId"),
        Column("pastedContents", ColumnType.JSON),
    ),
    parse_mode=ParseMode.JSON_LINES,
    pattern="history.jsonl",
    mutable=True,
)

TRANSCRIPTS = TableDef(
    name="transcripts",
    description="Conversation events from every per-session transcript",
    columns=(
        Column("type"),
        Column("uuid"),
        Column("parentUuid"),
        Column("sessionId"),
        Column("timestamp", ColumnType.TIMESTAMP),
        Column("cwd"),
        Column("gitBranch"),
        Column("version"),
        Column("message", ColumnType.JSON),
        Column("summary"),
    ),
    parse_mode=ParseMode.JSON_LINES,
    pattern="projects/*/*.jsonl",
    single_file=False,
    provenance=("_source_file", "_session_id", "_project"),
    order_by="timestamp",
    mutable=True,
)

TODOS = TableDef(
    name="todos",
    description="Todo items per workspace and agent",
    columns=(
        Column("id"),
        Column("content"),
        Column("status"),
        Column("priority"),
        Column("activeForm"),
    ),
    parse_mode=ParseMode.JSON_DOCUMENT,
    pattern="todos/*.json",
    single_file=False,
    provenance=("_source_file", "_workspace_id", "_agent_id"),
    mutable=True,
)

STATS = TableDef(
    name="stats",
    description="Cached daily activity statistics (derived, read-only)",
    columns=(
        Column("date"),
        Column("messageCount", ColumnType.INTEGER),
        Column("sessionCount", ColumnType.INTEGER),
        Column("toolCallCount", ColumnType.INTEGER),
    ),
    parse_mode=ParseMode.JSON_DOCUMENT,
    pattern="stats-cache.json",
    document_path="dailyActivity",
)

MODEL_TOKENS = TableDef(
    name="model_tokens",
    description="Cached daily token totals per model (derived, read-only)",
    columns=(
        Column("date"),
        Column("tokensByModel", ColumnType.JSON),
    ),
    parse_mode=ParseMode.JSON_DOCUMENT,
    pattern="stats-cache.json",
    document_path="dailyModelTokens",
)

SESSIONS = TableDef(
    name="sessions",
    description="One row per transcript file (derived, read-only)",
    columns=(
        Column("session_id"),
        Column("project"),
        Column("first_timestamp", ColumnType.TIMESTAMP),
        Column("last_timestamp", ColumnType.TIMESTAMP),
        Column("message_count", ColumnType.INTEGER),
        Column("user_messages", ColumnType.INTEGER),
        Column("source_file"),
    ),
    parse_mode=ParseMode.VIEW,
    provenance=(),
    view_sql="""
        SELECT _session_id AS session_id,
               _project AS project,
               MIN(timestamp) AS first_timestamp,
               MAX(timestamp) AS last_timestamp,
               COUNT(*) AS message_count,
               SUM(CASE WHEN type = 'user' THEN 1 ELSE 0 END) AS user_messages,
               _source_file AS source_file
        FROM transcripts
        GROUP BY _source_file
    """,
    depends_on=("transcripts",),
)

TABLES: dict[str, TableDef] = {
    table.name: table for table in (HISTORY, TRANSCRIPTS, TODOS, STATS, MODEL_TOKENS, SESSIONS)
}


def get_table(name: str) -> TableDef:
    table = TABLES.get(name)
    if table is None:
        raise QueryError(f"unknown table: {name}", {"known": ", ".join(TABLES)})
    return table


def _provenance(table: TableDef, path: Path) -> dict[str, Any]:
    values: dict[str, Any] = {"_source_file": str(path)}
    if table.name == "transcripts":
        values["_session_id"] = path.stem
        values["_project"] = path.parent.name
    elif table.name == "todos":
        workspace, sep, agent = path.stem.partition("-agent-")
        values["_workspace_id"] = workspace
        values["_agent_id"] = agent if sep else None
    return values


def catalog(table: TableDef | str, data_dir: Path) -> list[SourceFile]:
    """List the files backing ``table`` in discovery order.

    A missing single file yields an empty list; the materializer reports it.
    """

    table_def = get_table(table) if isinstance(table, str) else table
    if table_def.parse_mode is ParseMode.VIEW:
        return []
    base = Path(data_dir).expanduser()
    if table_def.single_file:
        candidates = [base / table_def.pattern]
    else:
        candidates = sorted(base.glob(table_def.pattern))
    return [
        SourceFile(path, table_def.parse_mode, _provenance(table_def, path))
        for path in candidates
        if path.is_file()
    ]
