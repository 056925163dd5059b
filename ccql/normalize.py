"""Parse one backing file into loosely-typed records.

Records keep the decoded JSON object as-is and coerce declared columns only
when they are read, so a file with missing or extra fields never fails the
scan. Bad lines and elements are skipped and counted in a ``ScanReport``.
"""

from __future__ import annotations

import json
import logging
import math
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .tables import Column, ColumnType, ParseMode, SourceFile, TableDef
from .utils import parse_iso8601, to_epoch_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RowCoordinate:
    path: Path
    # Physical line number for JSON Lines, array element index for documents.
    index: int


@dataclass(frozen=True, slots=True)
class ParseIssue:
    path: Path
    index: int | None
    message: str


@dataclass(frozen=True, slots=True)
class SchemaMismatch:
    table: str
    path: Path


@dataclass
class ScanReport:
    issues: list[ParseIssue] = field(default_factory=list)
    missing: list[SchemaMismatch] = field(default_factory=list)
    skipped_by_file: Counter[str] = field(default_factory=Counter)

    def add_issue(self, path: Path, index: int | None, message: str) -> None:
        self.issues.append(ParseIssue(path, index, message))
        self.skipped_by_file[str(path)] += 1
        logger.debug("skipping %s:%s: %s", path, index, message)

    def add_missing(self, table: str, path: Path) -> None:
        self.missing.append(SchemaMismatch(table, path))
        logger.warning("table %s: backing file %s not found, treating as empty", table, path)

    @property
    def skipped(self) -> int:
        return len(self.issues)

    def summary(self) -> str | None:
        if not self.issues:
            return None
        files = len(self.skipped_by_file)
        noun = "file" if files == 1 else "files"
        return f"skipped {self.skipped} malformed record(s) in {files} {noun}"


@dataclass(slots=True)
class Record:
    table: TableDef
    raw: dict[str, Any]
    coordinate: RowCoordinate | None = None
    provenance: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str) -> Any:
        if name in self.table.provenance:
            return self.provenance.get(name)
        column = self.table.column(name)
        if column is None:
            return None
        return coerce_value(column, self.raw.get(name))

    def as_row(self) -> dict[str, Any]:
        return {name: self.get(name) for name in self.table.row_columns}


def coerce_timestamp(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        parsed = parse_iso8601(text)
        return to_epoch_ms(parsed) if parsed is not None else None
    return int(number) if math.isfinite(number) else None


def coerce_integer(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def coerce_value(column: Column, value: Any) -> Any:
    if value is None:
        return None
    if column.type is ColumnType.TIMESTAMP:
        return coerce_timestamp(value)
    if column.type is ColumnType.INTEGER:
        return coerce_integer(value)
    if column.type is ColumnType.JSON:
        return value
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _parse_json_lines(source: SourceFile, table: TableDef, report: ScanReport) -> Iterator[Record]:
    try:
        handle = source.path.open("rb")
    except OSError as exc:
        report.add_issue(source.path, None, f"unreadable: {exc}")
        return
    with handle:
        for index, line in enumerate(handle):
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
            except ValueError as exc:
                report.add_issue(source.path, index, f"invalid json: {exc}")
                continue
            if not isinstance(obj, dict):
                report.add_issue(source.path, index, "expected a JSON object")
                continue
            yield Record(table, obj, RowCoordinate(source.path, index))


def load_document_items(path: Path, document_path: str | None) -> list[Any]:
    """Return the record array of a JSON document.

    Raises ``ValueError`` when the document cannot be decoded or has no array
    where one is expected.
    """

    document = json.loads(path.read_bytes())
    if document_path is not None:
        if not isinstance(document, dict):
            raise ValueError(f"expected an object with key {document_path!r}")
        document = document.get(document_path, [])
    if not isinstance(document, list):
        raise ValueError("expected a JSON array")
    return document


def _parse_json_document(
    source: SourceFile, table: TableDef, report: ScanReport
) -> Iterator[Record]:
    try:
        items = load_document_items(source.path, table.document_path)
    except OSError as exc:
        report.add_issue(source.path, None, f"unreadable: {exc}")
        return
    except ValueError as exc:
        report.add_issue(source.path, None, f"invalid document: {exc}")
        return
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            report.add_issue(source.path, index, "expected a JSON object")
            continue
        yield Record(table, item, RowCoordinate(source.path, index))


def parse_source(source: SourceFile, table: TableDef, report: ScanReport) -> Iterator[Record]:
    if source.parse_mode is ParseMode.JSON_LINES:
        return _parse_json_lines(source, table, report)
    if source.parse_mode is ParseMode.JSON_DOCUMENT:
        return _parse_json_document(source, table, report)
    raise ValueError(f"cannot parse {source.parse_mode.value} source {source.path}")
