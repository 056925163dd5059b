"""SQLite-backed relational engine for the logical tables.

Each statement gets a fresh in-memory database. Tables are created for the
whole catalog but only the ones a statement touches are filled, each row
carrying its position in the scan as the hidden SQLite ``rowid`` so writes
can be traced back to physical files.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import QueryError, ReadOnlyTableError
from .materialize import materialize
from .normalize import Record, ScanReport
from .tables import TABLES, ColumnType, ParseMode, SourceFile, TableDef, catalog, get_table

logger = logging.getLogger(__name__)

_WRITE_ACTIONS = {sqlite3.SQLITE_INSERT, sqlite3.SQLITE_UPDATE, sqlite3.SQLITE_DELETE}
_SCHEMA_ACTION_NAMES = (
    "SQLITE_ALTER_TABLE",
    "SQLITE_ANALYZE",
    "SQLITE_ATTACH",
    "SQLITE_CREATE_INDEX",
    "SQLITE_CREATE_TABLE",
    "SQLITE_CREATE_TEMP_INDEX",
    "SQLITE_CREATE_TEMP_TABLE",
    "SQLITE_CREATE_TEMP_TRIGGER",
    "SQLITE_CREATE_TEMP_VIEW",
    "SQLITE_CREATE_TRIGGER",
    "SQLITE_CREATE_VIEW",
    "SQLITE_CREATE_VTABLE",
    "SQLITE_DETACH",
    "SQLITE_DROP_INDEX",
    "SQLITE_DROP_TABLE",
    "SQLITE_DROP_TEMP_INDEX",
    "SQLITE_DROP_TEMP_TABLE",
    "SQLITE_DROP_TEMP_TRIGGER",
    "SQLITE_DROP_TEMP_VIEW",
    "SQLITE_DROP_TRIGGER",
    "SQLITE_DROP_VIEW",
    "SQLITE_DROP_VTABLE",
    "SQLITE_REINDEX",
    "SQLITE_SAVEPOINT",
    "SQLITE_TRANSACTION",
)
_SCHEMA_ACTIONS = {getattr(sqlite3, name) for name in _SCHEMA_ACTION_NAMES if hasattr(sqlite3, name)}

_SQL_TYPES = {
    ColumnType.TEXT: "TEXT",
    ColumnType.INTEGER: "INTEGER",
    ColumnType.TIMESTAMP: "INTEGER",
    ColumnType.JSON: "TEXT",
}


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


_DML_TARGET_RE = re.compile(
    r"^\s*(?:DELETE\s+FROM|UPDATE(?:\s+OR\s+\w+)?|(?:INSERT(?:\s+OR\s+\w+)?|REPLACE)\s+INTO)\s+[\"`\[]?(\w+)",
    re.IGNORECASE,
)


def _raise_if_view_write(sql: str) -> None:
    # SQLite refuses to compile writes against views before the authorizer
    # sees them, so name the target from the statement text instead.
    match = _DML_TARGET_RE.match(sql)
    if match is None:
        return
    table = TABLES.get(match.group(1))
    if table is not None and table.parse_mode is ParseMode.VIEW:
        raise ReadOnlyTableError(f"{table.name} is a read-only derived table", table=table.name)


@dataclass(frozen=True, slots=True)
class StatementInfo:
    write_table: str | None
    read_tables: frozenset[str]

    @property
    def is_write(self) -> bool:
        return self.write_table is not None

    @property
    def kind(self) -> str:
        return "write" if self.is_write else "read"


@dataclass
class QueryResult:
    columns: list[str]
    rows: list[tuple[Any, ...]]

    def as_dicts(self) -> list[dict[str, Any]]:
        return [dict(zip(self.columns, row, strict=True)) for row in self.rows]


@dataclass
class LoadedTable:
    table: TableDef
    sources: list[SourceFile]
    # (mtime_ns, size) per file at load time.
    snapshot: dict[Path, tuple[int, int]] = field(default_factory=dict)
    records: dict[int, Record] = field(default_factory=dict)


def to_sql_value(record: Record, name: str) -> Any:
    value = record.get(name)
    column = record.table.column(name)
    if value is not None and column is not None and column.type is ColumnType.JSON:
        return json.dumps(value, ensure_ascii=False)
    return value


class QueryEngine:
    def __init__(self, data_dir: Path, *, report: ScanReport | None = None):
        self.data_dir = Path(data_dir).expanduser()
        self.report = report if report is not None else ScanReport()
        self.conn = sqlite3.connect(":memory:", isolation_level=None)
        self.loaded: dict[str, LoadedTable] = {}
        self._register_all()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> QueryEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _register_all(self) -> None:
        tables = list(TABLES.values())
        for table in tables:
            if table.parse_mode is not ParseMode.VIEW:
                self.register(table)
        for table in tables:
            if table.parse_mode is ParseMode.VIEW:
                self.register(table)

    def register(self, table: TableDef) -> None:
        if table.view_sql is not None:
            self.conn.execute(f"CREATE VIEW {quote_ident(table.name)} AS {table.view_sql}")
            return
        columns = [f"{quote_ident(c.name)} {_SQL_TYPES[c.type]}" for c in table.columns]
        columns.extend(f"{quote_ident(name)} TEXT" for name in table.provenance)
        self.conn.execute(f"CREATE TABLE {quote_ident(table.name)} ({', '.join(columns)})")

    def classify(self, sql: str, params: Sequence[Any] = ()) -> StatementInfo:
        """Compile ``sql`` without running it and report what it touches."""

        writes: set[str] = set()
        reads: set[str] = set()
        schema_changes: list[int] = []

        def authorizer(action: int, arg1: str | None, arg2: str | None, *_: object) -> int:
            if action in _WRITE_ACTIONS:
                if arg1 and not arg1.startswith("sqlite_"):
                    writes.add(arg1)
            elif action == sqlite3.SQLITE_READ:
                if arg1 and arg1 in TABLES:
                    reads.add(arg1)
            elif action in _SCHEMA_ACTIONS:
                schema_changes.append(action)
            return sqlite3.SQLITE_OK

        self.conn.set_authorizer(authorizer)
        try:
            self.conn.execute(f"EXPLAIN {sql}", params).fetchall()
        except (sqlite3.Error, sqlite3.Warning) as exc:
            _raise_if_view_write(sql)
            raise QueryError(f"invalid statement: {exc}") from exc
        finally:
            self.conn.set_authorizer(None)

        if schema_changes:
            raise QueryError("schema and transaction statements are not supported")
        if len(writes) > 1:
            raise QueryError("statement writes to more than one table", {"tables": ", ".join(sorted(writes))})
        write_table = next(iter(writes), None)
        return StatementInfo(write_table=write_table, read_tables=frozenset(reads))

    def load(self, name: str, *, keep_records: bool = False) -> LoadedTable | None:
        table = get_table(name)
        if table.parse_mode is ParseMode.VIEW:
            for dependency in table.depends_on:
                self.load(dependency, keep_records=keep_records)
            return None
        existing = self.loaded.get(name)
        if existing is not None:
            return existing

        sources = catalog(table, self.data_dir)
        loaded = LoadedTable(table=table, sources=sources)
        for source in sources:
            try:
                stat = source.path.stat()
            except OSError:
                continue
            loaded.snapshot[source.path] = (stat.st_mtime_ns, stat.st_size)
        self.loaded[name] = loaded

        names = table.row_columns
        placeholders = ", ".join("?" for _ in range(len(names) + 1))
        statement = (
            f"INSERT INTO {quote_ident(name)} (rowid, {', '.join(quote_ident(n) for n in names)}) "
            f"VALUES ({placeholders})"
        )

        def rows() -> Iterator[tuple[Any, ...]]:
            records = materialize(table, data_dir=self.data_dir, report=self.report, sources=sources)
            for rowid, record in enumerate(records, start=1):
                if keep_records:
                    loaded.records[rowid] = record
                yield (rowid, *(to_sql_value(record, n) for n in names))

        self.conn.execute("BEGIN")
        try:
            self.conn.executemany(statement, rows())
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")
        logger.debug("loaded %s from %d file(s)", name, len(sources))
        return loaded

    def prepare(self, info: StatementInfo, *, keep_records: bool = False) -> None:
        # The write target goes first: a view read later would otherwise load
        # it without records and the cached table would be reused.
        if info.write_table is not None and info.write_table in TABLES:
            self.load(info.write_table, keep_records=keep_records)
        for name in sorted(info.read_tables):
            self.load(name)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        try:
            cursor = self.conn.execute(sql, params)
            rows = cursor.fetchall()
        except (sqlite3.Error, sqlite3.Warning) as exc:
            raise QueryError(f"query failed: {exc}") from exc
        columns = [description[0] for description in cursor.description or ()]
        return QueryResult(columns=columns, rows=[tuple(row) for row in rows])

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Run a read-only statement after loading the tables it reads."""

        info = self.classify(sql, params)
        if info.is_write:
            raise QueryError("write statements must go through the write-back mediator")
        self.prepare(info)
        return self.execute(sql, params)
