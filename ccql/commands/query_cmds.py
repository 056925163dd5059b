from __future__ import annotations

import json

import typer
from rich import print
from rich.markup import escape

from ccql.config import CcqlConfig
from ccql.engine import QueryResult
from ccql.errors import ApplyError, CcqlError
from ccql.normalize import ScanReport
from ccql.render import render_rows
from ccql.tables import TABLES, catalog
from ccql.writeback import ApplyResult, PreviewReport, WriteBackMediator, WriteMode

from .common import fail, fail_on_error, print_scan_summary


def _print_preview(preview: PreviewReport, fmt: str) -> None:
    rows = []
    for change in preview.changes:
        index = change.coordinate.index if change.coordinate is not None else None
        diff = {name: {"before": old, "after": new} for name, (old, new) in change.diff.items()}
        if change.action == "delete":
            diff = {}
        rows.append((change.action, str(change.path or ""), index, diff))
    if fmt in {"json", "jsonl"}:
        render_rows(("action", "file", "index", "changes"), rows, fmt)
        return
    print(
        f"[yellow]Dry run - {preview.affected_rows} row(s) in {preview.table} would be affected; "
        "no files were modified[/yellow]"
    )
    if rows:
        render_rows(("action", "file", "index", "changes"), rows, fmt)


def sql_cmd(*, config: CcqlConfig, query: str, write: bool, dry_run: bool, fmt: str) -> None:
    """Run a SQL statement against the logical tables."""

    if dry_run:
        mode: WriteMode | None = WriteMode.PREVIEW
    elif write:
        mode = WriteMode.APPLY
    else:
        mode = None

    report = ScanReport()
    mediator = WriteBackMediator(config.data_dir, backup_dir=config.backup_dir, report=report)
    try:
        result = mediator.execute(query, mode)
    except ApplyError as exc:
        print_scan_summary(report, max_issues=config.max_reported_parse_issues)
        lines = [f"Error: {exc.message}"]
        lines.extend(f"  backup kept at {path}" for path in exc.backup_paths)
        fail("\n".join(lines))
    except CcqlError as exc:
        print_scan_summary(report, max_issues=config.max_reported_parse_issues)
        fail_on_error(exc)
    print_scan_summary(report, max_issues=config.max_reported_parse_issues)

    if isinstance(result, QueryResult):
        render_rows(result.columns, result.rows, fmt)
    elif isinstance(result, PreviewReport):
        _print_preview(result, fmt)
    elif isinstance(result, ApplyResult):
        if fmt in {"json", "jsonl"}:
            payload = {
                "table": result.table,
                "applied_rows": result.applied_rows,
                "files": [str(path) for path in result.files],
            }
            typer.echo(json.dumps(payload))
            return
        print(f"[green]✓ Applied {result.applied_rows} change(s) to {result.table}[/green]")
        for path in result.files:
            print(f"  - {escape(str(path))}")


def tables_cmd(*, config: CcqlConfig, fmt: str) -> None:
    """List the logical tables and the files behind them."""

    rows = []
    for table in TABLES.values():
        files = len(catalog(table, config.data_dir))
        rows.append(
            (
                table.name,
                ", ".join(table.row_columns),
                files,
                "yes" if table.mutable else "no",
                table.description,
            )
        )
    render_rows(("table", "columns", "files", "writable", "description"), rows, fmt)
