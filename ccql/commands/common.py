from __future__ import annotations

import datetime as dt
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from ccql.errors import CcqlError
from ccql.normalize import ScanReport

stderr = Console(stderr=True)


def fail(message: str, *, code: int = 1) -> NoReturn:
    stderr.print(f"[red]{escape(message)}[/red]", markup=True, highlight=False)
    raise typer.Exit(code=code)


def fail_on_error(exc: CcqlError) -> NoReturn:
    fail(f"Error: {exc}")


def print_scan_summary(report: ScanReport, *, max_issues: int = 5) -> None:
    summary = report.summary()
    if summary is None:
        return
    stderr.print(f"[yellow]Warning: {summary}[/yellow]")
    for issue in report.issues[:max_issues]:
        where = f"{issue.path}:{issue.index + 1}" if issue.index is not None else str(issue.path)
        stderr.print(f"[dim]  {escape(where)}: {escape(issue.message)}[/dim]", highlight=False)


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{int(size)} B"


def format_timestamp(epoch_ms: int | None) -> str:
    if epoch_ms is None:
        return ""
    moment = dt.datetime.fromtimestamp(epoch_ms / 1000, tz=dt.UTC)
    return moment.strftime("%Y-%m-%d %H:%M")
