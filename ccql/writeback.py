"""Guarded write path from SQL mutations back to the JSON files.

A mutating statement runs against the throwaway in-memory engine; the target
table is diffed before and after by ``rowid`` to find which records were
deleted, updated or inserted. A preview stops there. An apply backs up every
touched file, writes new bodies to temp files and renames them into place,
restoring from backup if any rename fails.
"""

from __future__ import annotations

import datetime as dt
import io
import json
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .engine import LoadedTable, QueryEngine, QueryResult, quote_ident
from .errors import (
    ApplyError,
    BackupError,
    ReadOnlyTableError,
    StaleSourceError,
    UnauthorizedWriteError,
    WriteError,
)
from .normalize import Record, RowCoordinate, ScanReport, load_document_items
from .tables import Column, ColumnType, ParseMode, TableDef, get_table
from .utils import format_iso_ms

logger = logging.getLogger(__name__)


class WriteMode(str, Enum):
    PREVIEW = "preview"
    APPLY = "apply"


@dataclass
class RowChange:
    action: str
    coordinate: RowCoordinate | None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    # File that receives an inserted row.
    target: Path | None = None

    @property
    def path(self) -> Path | None:
        if self.coordinate is not None:
            return self.coordinate.path
        return self.target

    @property
    def diff(self) -> dict[str, tuple[Any, Any]]:
        before = self.before or {}
        after = self.after or {}
        keys = list(dict.fromkeys([*before, *after]))
        return {k: (before.get(k), after.get(k)) for k in keys if before.get(k) != after.get(k)}


@dataclass
class PreviewReport:
    table: str
    changes: list[RowChange]

    @property
    def affected_rows(self) -> int:
        return len(self.changes)

    @property
    def files(self) -> list[Path]:
        return sorted({c.path for c in self.changes if c.path is not None})


@dataclass
class ApplyResult:
    table: str
    applied_rows: int
    files: list[Path]
    backup_paths: list[Path] = field(default_factory=list)


class JsonLinesCodec:
    """Rewrites a JSON Lines file; untouched lines are copied byte for byte."""

    def render(
        self, path: Path, edits: dict[int, dict[str, Any] | None], appends: list[dict[str, Any]]
    ) -> bytes:
        out = io.BytesIO()
        with path.open("rb") as handle:
            for index, line in enumerate(handle):
                if index not in edits:
                    out.write(line)
                    continue
                replacement = edits[index]
                if replacement is None:
                    continue
                ending = b"\n" if line.endswith(b"\n") else b""
                out.write(self.dumps(replacement) + ending)
        body = out.getvalue()
        if appends and body and not body.endswith(b"\n"):
            body += b"\n"
        return body + b"".join(self.dumps(obj) + b"\n" for obj in appends)

    @staticmethod
    def dumps(obj: dict[str, Any]) -> bytes:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class JsonArrayCodec:
    """Rewrites a JSON document whose top level is the record array."""

    def render(
        self, path: Path, edits: dict[int, dict[str, Any] | None], appends: list[dict[str, Any]]
    ) -> bytes:
        items = load_document_items(path, None)
        kept: list[Any] = []
        for index, item in enumerate(items):
            if index not in edits:
                kept.append(item)
            elif edits[index] is not None:
                kept.append(edits[index])
        kept.extend(appends)
        return json.dumps(kept, ensure_ascii=False, indent=2).encode("utf-8")


def codec_for(table: TableDef) -> JsonLinesCodec | JsonArrayCodec:
    if table.parse_mode is ParseMode.JSON_LINES:
        return JsonLinesCodec()
    if table.parse_mode is ParseMode.JSON_DOCUMENT and table.document_path is None:
        return JsonArrayCodec()
    raise ReadOnlyTableError(f"{table.name} cannot be written back", table=table.name)


def from_sql_value(column: Column, value: Any, *, original: Any = None) -> Any:
    if value is None:
        return None
    if column.type is ColumnType.JSON:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value
    if column.type is ColumnType.TIMESTAMP:
        if isinstance(value, (int, float)) and isinstance(original, str):
            return format_iso_ms(int(value))
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value
    if column.type is ColumnType.INTEGER and isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _backup_name(path: Path) -> str:
    stamp = dt.datetime.now(dt.UTC).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{path.name}.{stamp}-{os.getpid()}-{secrets.token_hex(4)}.bak"


class WriteTransaction:
    """Backup, stage and commit a set of file rewrites.

    Leaving the ``with`` block normally deletes the backups. Leaving it with
    an exception removes staged temp files, restores any file that was
    already replaced, keeps the backups and raises ``ApplyError`` naming them.
    A ``BackupError`` discards the partial backups since nothing was touched.
    """

    def __init__(self, table: str, *, backup_dir: Path | None = None):
        self.table = table
        self.backup_dir = backup_dir
        self.backups: dict[Path, Path] = {}
        self.staged: dict[Path, Path] = {}
        self.committed: list[Path] = []

    def __enter__(self) -> WriteTransaction:
        return self

    def backup(self, path: Path) -> Path:
        target_dir = self.backup_dir or path.parent
        target = target_dir / _backup_name(path)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
        except OSError as exc:
            raise BackupError(f"could not back up {path}: {exc}", table=self.table, path=path) from exc
        self.backups[path] = target
        logger.info("backed up %s to %s", path, target)
        return target

    def stage(self, path: Path, body: bytes) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        self.staged[path] = Path(temp_name)
        with os.fdopen(fd, "wb") as handle:
            handle.write(body)
            handle.flush()
            os.fsync(handle.fileno())
        shutil.copymode(path, temp_name)

    def commit(self) -> None:
        for path, temp in list(self.staged.items()):
            os.replace(temp, path)
            del self.staged[path]
            self.committed.append(path)
            logger.info("rewrote %s", path)

    def _discard_staged(self) -> None:
        for temp in self.staged.values():
            temp.unlink(missing_ok=True)
        self.staged.clear()

    def _restore_committed(self) -> None:
        for path in self.committed:
            backup = self.backups[path]
            fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".restore", dir=path.parent)
            os.close(fd)
            shutil.copy2(backup, temp_name)
            os.replace(temp_name, path)
            logger.warning("restored %s from %s", path, backup)

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            for backup in self.backups.values():
                backup.unlink(missing_ok=True)
            return False
        self._discard_staged()
        if isinstance(exc, BackupError):
            for backup in self.backups.values():
                backup.unlink(missing_ok=True)
            return False
        try:
            self._restore_committed()
        except OSError:
            logger.exception("restore after failed write did not complete")
        retained = list(self.backups.values())
        for backup in retained:
            logger.warning("kept backup %s", backup)
        if isinstance(exc, ApplyError):
            return False
        raise ApplyError(f"write to {self.table} failed: {exc}", table=self.table, backup_paths=retained) from exc


class WriteBackMediator:
    def __init__(
        self,
        data_dir: Path,
        *,
        backup_dir: Path | None = None,
        report: ScanReport | None = None,
    ):
        self.data_dir = Path(data_dir).expanduser()
        self.backup_dir = Path(backup_dir).expanduser() if backup_dir else None
        self.report = report if report is not None else ScanReport()

    def execute(
        self,
        sql: str,
        mode: WriteMode | None = None,
        params: Sequence[Any] = (),
    ) -> QueryResult | PreviewReport | ApplyResult:
        with QueryEngine(self.data_dir, report=self.report) as engine:
            info = engine.classify(sql, params)
            if not info.is_write:
                engine.prepare(info)
                return engine.execute(sql, params)

            table = get_table(info.write_table or "")
            if not table.mutable:
                raise ReadOnlyTableError(f"{table.name} is a read-only derived table", table=table.name)
            if mode is None:
                raise UnauthorizedWriteError(
                    f"statement modifies {table.name}; pass --dry-run to preview or --write to apply",
                    table=table.name,
                )

            engine.prepare(info, keep_records=True)
            loaded = engine.loaded[table.name]
            changes = self._compute_changes(engine, loaded, sql, params)
            if mode is WriteMode.PREVIEW:
                logger.info("preview of %s: %d row(s) affected", table.name, len(changes))
                return PreviewReport(table=table.name, changes=changes)
            return self._apply(loaded, changes)

    def _snapshot(self, engine: QueryEngine, table: TableDef) -> dict[int, dict[str, Any]]:
        names = table.row_columns
        columns = ", ".join(quote_ident(n) for n in names)
        result = engine.execute(f"SELECT rowid, {columns} FROM {quote_ident(table.name)}")
        return {row[0]: dict(zip(names, row[1:], strict=True)) for row in result.rows}

    def _compute_changes(
        self, engine: QueryEngine, loaded: LoadedTable, sql: str, params: Sequence[Any]
    ) -> list[RowChange]:
        table = loaded.table
        before = self._snapshot(engine, table)
        engine.execute("SAVEPOINT ccql_write")
        try:
            engine.execute(sql, params)
            after = self._snapshot(engine, table)
        finally:
            engine.execute("ROLLBACK TO ccql_write")
            engine.execute("RELEASE ccql_write")

        changes: list[RowChange] = []
        for rowid, old in before.items():
            record = loaded.records.get(rowid)
            if record is None:
                raise WriteError(f"row {rowid} has no source record", table=table.name)
            new = after.get(rowid)
            if new is None:
                changes.append(RowChange("delete", record.coordinate, before=old))
            elif new != old:
                moved = [p for p in table.provenance if new.get(p) != old.get(p)]
                if moved:
                    raise WriteError(
                        "provenance columns cannot be updated",
                        table=table.name,
                        details={"columns": ", ".join(moved)},
                    )
                changes.append(RowChange("update", record.coordinate, before=old, after=new))
        for rowid, new in after.items():
            if rowid not in before:
                changes.append(
                    RowChange("insert", None, after=new, target=self._insert_target(loaded, new))
                )
        return changes

    def _insert_target(self, loaded: LoadedTable, row: dict[str, Any]) -> Path:
        known = {source.path: source for source in loaded.sources}
        requested = row.get("_source_file")
        if requested:
            path = Path(requested)
            if path not in known:
                raise WriteError(
                    "inserted row names a file outside this table",
                    table=loaded.table.name,
                    details={"_source_file": requested},
                )
            return path
        if loaded.table.single_file and len(loaded.sources) == 1:
            return loaded.sources[0].path
        raise WriteError(
            "set _source_file to choose which file receives the inserted row",
            table=loaded.table.name,
        )

    def _plan(
        self, loaded: LoadedTable, changes: list[RowChange]
    ) -> dict[Path, tuple[dict[int, dict[str, Any] | None], list[dict[str, Any]]]]:
        table = loaded.table
        records_by_coordinate: dict[RowCoordinate, Record] = {
            record.coordinate: record
            for record in loaded.records.values()
            if record.coordinate is not None
        }
        plan: dict[Path, tuple[dict[int, dict[str, Any] | None], list[dict[str, Any]]]] = {}
        for change in changes:
            if change.action == "insert":
                if change.after is None or change.target is None:
                    raise WriteError("inserted row has no target file", table=table.name)
                path = change.target
                obj = {}
                for column in table.columns:
                    value = from_sql_value(column, change.after.get(column.name))
                    if value is not None:
                        obj[column.name] = value
                plan.setdefault(path, ({}, []))[1].append(obj)
                continue
            if change.coordinate is None:
                raise WriteError(f"{change.action} has no row coordinate", table=table.name)
            edits = plan.setdefault(change.coordinate.path, ({}, []))[0]
            if change.action == "delete":
                edits[change.coordinate.index] = None
                continue
            record = records_by_coordinate.get(change.coordinate)
            if record is None or change.before is None or change.after is None:
                raise WriteError("updated row has no source record", table=table.name)
            obj = dict(record.raw)
            for column in table.columns:
                old_value = change.before.get(column.name)
                new_value = change.after.get(column.name)
                if new_value == old_value:
                    continue
                obj[column.name] = from_sql_value(column, new_value, original=record.raw.get(column.name))
            edits[change.coordinate.index] = obj
        return plan

    def _check_fresh(self, loaded: LoadedTable, paths: list[Path]) -> None:
        for path in paths:
            expected = loaded.snapshot.get(path)
            try:
                stat = path.stat()
            except OSError as exc:
                raise StaleSourceError(
                    f"{path} disappeared before the write", table=loaded.table.name
                ) from exc
            if expected != (stat.st_mtime_ns, stat.st_size):
                raise StaleSourceError(
                    f"{path} changed since it was read; rerun the statement",
                    table=loaded.table.name,
                )

    def _apply(self, loaded: LoadedTable, changes: list[RowChange]) -> ApplyResult:
        table = loaded.table
        if not changes:
            return ApplyResult(table=table.name, applied_rows=0, files=[])
        plan = self._plan(loaded, changes)
        paths = sorted(plan)
        self._check_fresh(loaded, paths)
        codec = codec_for(table)

        with WriteTransaction(table.name, backup_dir=self.backup_dir) as txn:
            for path in paths:
                txn.backup(path)
            for path in paths:
                edits, appends = plan[path]
                txn.stage(path, codec.render(path, edits, appends))
            txn.commit()
        logger.info("applied %d change(s) to %s across %d file(s)", len(changes), table.name, len(paths))
        return ApplyResult(table=table.name, applied_rows=len(changes), files=paths)
