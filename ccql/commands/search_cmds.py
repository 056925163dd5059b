from __future__ import annotations

import json

import typer
from rich import print
from rich.markup import escape

from ccql.config import CcqlConfig
from ccql.errors import CcqlError
from ccql.search import SCOPES, search

from .common import fail, fail_on_error

MAX_LINE_CHARS = 200


def _clip(line: str) -> str:
    return line if len(line) <= MAX_LINE_CHARS else line[: MAX_LINE_CHARS - 1] + "…"


def search_cmd(
    *,
    config: CcqlConfig,
    term: str,
    scope: str,
    case_sensitive: bool,
    regex: bool,
    before: int,
    after: int,
    fmt: str,
) -> None:
    """Search raw prompt and transcript lines."""

    if scope not in SCOPES:
        fail(f"Invalid scope {scope!r}; expected one of {', '.join(SCOPES)}")
    if before < 0 or after < 0:
        fail("Context line counts must be non-negative")

    hits = 0
    collected: list[dict] = []
    try:
        for hit in search(
            config.data_dir,
            term,
            scope=scope,
            case_sensitive=case_sensitive,
            regex=regex,
            before=before,
            after=after,
        ):
            hits += 1
            if fmt in {"json", "jsonl"}:
                payload = {
                    "file": str(hit.path),
                    "line": hit.line_number,
                    "text": hit.line,
                    "before": hit.before,
                    "after": hit.after,
                }
                if fmt == "json":
                    collected.append(payload)
                else:
                    typer.echo(json.dumps(payload, ensure_ascii=False))
                continue
            if fmt == "raw":
                typer.echo(f"{hit.path}:{hit.line_number}:{hit.line}")
                continue
            print(f"[cyan]{escape(str(hit.path))}[/cyan]:[bold]{hit.line_number}[/bold]")
            for line in hit.before:
                print(f"[dim]  {escape(_clip(line))}[/dim]")
            print(f"  {escape(_clip(hit.line))}")
            for line in hit.after:
                print(f"[dim]  {escape(_clip(line))}[/dim]")
    except CcqlError as exc:
        fail_on_error(exc)

    if fmt == "json":
        typer.echo(json.dumps(collected, ensure_ascii=False, indent=2))
    elif fmt == "table":
        print(f"[dim]{hits} match(es)[/dim]")
