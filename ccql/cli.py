from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich import print

from . import __version__
from .commands.browse_cmds import prompts_cmd, sessions_cmd, stats_cmd, todos_cmd
from .commands.common import fail
from .commands.duplicates_cmds import duplicates_cmd
from .commands.query_cmds import sql_cmd, tables_cmd
from .commands.search_cmds import search_cmd
from .config import OUTPUT_FORMATS, CcqlConfig, load_config

app = typer.Typer(help="ccql: query Claude Code history, transcripts and todos with SQL")


def _config(ctx: typer.Context) -> CcqlConfig:
    return ctx.obj


@app.callback()
def main_callback(
    ctx: typer.Context,
    data_dir: Path | None = typer.Option(
        None, "--data-dir", help="Claude Code data directory (defaults to ~/.claude)"
    ),
    fmt: str | None = typer.Option(
        None, "--format", "-f", help="Output format: table, json, jsonl or raw"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    config = load_config()
    if data_dir is not None:
        config.data_dir = data_dir.expanduser()
    if fmt is not None:
        if fmt not in OUTPUT_FORMATS:
            fail(f"Invalid format {fmt!r}; expected one of {', '.join(OUTPUT_FORMATS)}")
        config.output_format = fmt
    ctx.obj = config


@app.command()
def sql(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="SQL statement to run"),
    write: bool = typer.Option(False, "--write", help="Apply INSERT/UPDATE/DELETE to the source files"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview a write without touching any file"),
) -> None:
    """Run SQL against the logical tables."""

    config = _config(ctx)
    sql_cmd(config=config, query=query, write=write, dry_run=dry_run, fmt=config.output_format)


@app.command()
def tables(ctx: typer.Context) -> None:
    """List logical tables."""

    config = _config(ctx)
    tables_cmd(config=config, fmt=config.output_format)


@app.command()
def duplicates(
    ctx: typer.Context,
    threshold: float | None = typer.Option(None, help="Similarity threshold between 0 and 1"),
    min_count: int | None = typer.Option(None, help="Minimum occurrences per cluster"),
    limit: int | None = typer.Option(None, help="Max clusters to show"),
    show_variants: bool = typer.Option(False, help="Show every variant in each cluster"),
    sort: str = typer.Option("count", help="Sort clusters by count or latest"),
    min_length: int | None = typer.Option(None, help="Ignore prompts shorter than this"),
    greedy: bool = typer.Option(False, help="Use greedy first-seen clustering"),
) -> None:
    """Find near-duplicate prompts in history."""

    config = _config(ctx)
    duplicates_cmd(
        config=config,
        threshold=threshold,
        min_count=min_count,
        limit=limit,
        show_variants=show_variants,
        sort=sort,
        min_length=min_length,
        greedy=greedy,
        fmt=config.output_format,
    )


@app.command()
def prompts(
    ctx: typer.Context,
    session: str | None = typer.Option(None, help="Filter by session id"),
    project: str | None = typer.Option(None, help="Filter by project path substring"),
    since: str | None = typer.Option(None, help="Only prompts on or after YYYY-MM-DD"),
    until: str | None = typer.Option(None, help="Only prompts on or before YYYY-MM-DD"),
    limit: int | None = typer.Option(None, help="Max prompts"),
) -> None:
    """List prompts from history, newest first."""

    config = _config(ctx)
    prompts_cmd(
        config=config,
        session=session,
        project=project,
        since=since,
        until=until,
        limit=limit,
        fmt=config.output_format,
    )


@app.command()
def sessions(
    ctx: typer.Context,
    project: str | None = typer.Option(None, help="Filter by project directory substring"),
    sort_by: str = typer.Option("time", help="Sort by time or size"),
    detailed: bool = typer.Option(False, help="Show extra columns"),
) -> None:
    """List transcript sessions."""

    config = _config(ctx)
    sessions_cmd(
        config=config,
        project=project,
        sort_by=sort_by,
        detailed=detailed,
        fmt=config.output_format,
    )


@app.command()
def todos(
    ctx: typer.Context,
    status: str | None = typer.Option(None, help="pending, in_progress or completed"),
    agent: str | None = typer.Option(None, help="Filter by agent id"),
) -> None:
    """List todo items."""

    config = _config(ctx)
    todos_cmd(config=config, status=status, agent=agent, fmt=config.output_format)


@app.command()
def stats(
    ctx: typer.Context,
    group_by: str = typer.Option("date", help="Group by date or model"),
    since: str | None = typer.Option(None, help="First day, YYYY-MM-DD"),
    until: str | None = typer.Option(None, help="Last day, YYYY-MM-DD"),
) -> None:
    """Show usage statistics per day or per model."""

    config = _config(ctx)
    stats_cmd(
        config=config,
        group_by=group_by,
        since=since,
        until=until,
        fmt=config.output_format,
    )


@app.command()
def search(
    ctx: typer.Context,
    term: str = typer.Argument(..., help="Text or pattern to find"),
    scope: str = typer.Option("all", help="all, prompts or transcripts"),
    case_sensitive: bool = typer.Option(False, help="Match case exactly"),
    regex: bool = typer.Option(False, help="Treat TERM as a regular expression"),
    before: int = typer.Option(0, "--before", "-B", help="Context lines before each match"),
    after: int = typer.Option(0, "--after", "-A", help="Context lines after each match"),
) -> None:
    """Search raw prompt and transcript lines."""

    config = _config(ctx)
    search_cmd(
        config=config,
        term=term,
        scope=scope,
        case_sensitive=case_sensitive,
        regex=regex,
        before=before,
        after=after,
        fmt=config.output_format,
    )


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
