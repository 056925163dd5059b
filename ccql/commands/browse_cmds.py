from __future__ import annotations

from pathlib import Path
from typing import Any

from ccql.config import CcqlConfig
from ccql.engine import QueryEngine, QueryResult
from ccql.errors import CcqlError
from ccql.normalize import ScanReport
from ccql.render import render_rows
from ccql.utils import parse_day

from .common import fail, fail_on_error, format_bytes, format_timestamp, print_scan_summary

TODO_STATUSES = ("pending", "in_progress", "completed")
STATS_GROUPS = ("date", "model")


def _run_query(config: CcqlConfig, sql: str, params: list[Any]) -> QueryResult:
    report = ScanReport()
    try:
        with QueryEngine(config.data_dir, report=report) as engine:
            return engine.query(sql, params)
    except CcqlError as exc:
        fail_on_error(exc)
    finally:
        print_scan_summary(report, max_issues=config.max_reported_parse_issues)


def _day_bound(value: str, *, end_of_day: bool = False) -> int:
    try:
        return parse_day(value, end_of_day=end_of_day)
    except ValueError:
        fail(f"Invalid date {value!r}; expected YYYY-MM-DD")


def _where(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def prompts_cmd(
    *,
    config: CcqlConfig,
    session: str | None,
    project: str | None,
    since: str | None,
    until: str | None,
    limit: int | None,
    fmt: str,
) -> None:
    """List prompts from the history table."""

    clauses: list[str] = []
    params: list[Any] = []
    if session:
        clauses.append("sessionId = ?")
        params.append(session)
    if project:
        clauses.append("project LIKE ?")
        params.append(f"%{project}%")
    if since:
        clauses.append("timestamp >= ?")
        params.append(_day_bound(since))
    if until:
        clauses.append("timestamp <= ?")
        params.append(_day_bound(until, end_of_day=True))
    sql = f"SELECT timestamp, project, display FROM history{_where(clauses)} ORDER BY timestamp DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)

    result = _run_query(config, sql, params)
    rows = result.rows
    if fmt == "table":
        rows = [(format_timestamp(ts), proj, display) for ts, proj, display in rows]
    render_rows(result.columns, rows, fmt, title="Prompts")


def sessions_cmd(
    *,
    config: CcqlConfig,
    project: str | None,
    sort_by: str,
    detailed: bool,
    fmt: str,
) -> None:
    """List transcript sessions."""

    if sort_by not in {"time", "size"}:
        fail(f"Invalid sort key {sort_by!r}; expected time or size")
    clauses: list[str] = []
    params: list[Any] = []
    if project:
        clauses.append("project LIKE ?")
        params.append(f"%{project}%")
    result = _run_query(config, f"SELECT * FROM sessions{_where(clauses)}", params)

    sessions = result.as_dicts()
    for session in sessions:
        path = Path(session["source_file"])
        session["size_bytes"] = path.stat().st_size if path.exists() else 0
    if sort_by == "size":
        sessions.sort(key=lambda s: s["size_bytes"], reverse=True)
    else:
        sessions.sort(key=lambda s: s["last_timestamp"] or 0, reverse=True)

    columns = ["session_id", "project", "last_timestamp", "message_count", "size_bytes"]
    if detailed:
        columns += ["first_timestamp", "user_messages", "source_file"]
    rows = []
    for session in sessions:
        row = [session[column] for column in columns]
        if fmt == "table":
            row = [
                format_timestamp(value)
                if column.endswith("_timestamp")
                else format_bytes(value)
                if column == "size_bytes"
                else value
                for column, value in zip(columns, row, strict=True)
            ]
        rows.append(tuple(row))
    render_rows(columns, rows, fmt, title="Sessions")


def todos_cmd(*, config: CcqlConfig, status: str | None, agent: str | None, fmt: str) -> None:
    """List todo items across workspaces."""

    clauses: list[str] = []
    params: list[Any] = []
    if status:
        if status not in TODO_STATUSES:
            fail(f"Invalid status {status!r}; expected one of {', '.join(TODO_STATUSES)}")
        clauses.append("status = ?")
        params.append(status)
    if agent:
        clauses.append("_agent_id = ?")
        params.append(agent)
    sql = (
        "SELECT _workspace_id AS workspace, _agent_id AS agent, status, content "
        f"FROM todos{_where(clauses)} ORDER BY _workspace_id, _agent_id"
    )
    result = _run_query(config, sql, params)
    render_rows(result.columns, result.rows, fmt, title="Todos")


def stats_cmd(
    *,
    config: CcqlConfig,
    group_by: str,
    since: str | None,
    until: str | None,
    fmt: str,
) -> None:
    """Show cached usage statistics per day or per model."""

    if group_by not in STATS_GROUPS:
        fail(f"Invalid grouping {group_by!r}; expected one of {', '.join(STATS_GROUPS)}")
    clauses: list[str] = []
    params: list[Any] = []
    for value, op in ((since, ">="), (until, "<=")):
        if value:
            _day_bound(value)
            clauses.append(f"date {op} ?")
            params.append(value.strip())
    if group_by == "model":
        sql = (
            "SELECT usage.key AS model, SUM(usage.value) AS tokens, COUNT(DISTINCT date) AS days "
            f"FROM model_tokens, json_each(model_tokens.tokensByModel) AS usage{_where(clauses)} "
            "GROUP BY usage.key ORDER BY tokens DESC, model"
        )
        result = _run_query(config, sql, params)
        render_rows(result.columns, result.rows, fmt, title="Tokens by model")
        return
    sql = (
        "SELECT date, messageCount, sessionCount, toolCallCount "
        f"FROM stats{_where(clauses)} ORDER BY date"
    )
    result = _run_query(config, sql, params)
    render_rows(result.columns, result.rows, fmt, title="Daily activity")
