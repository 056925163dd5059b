import json
from pathlib import Path

from typer.testing import CliRunner

from ccql import __version__
from ccql.cli import app

runner = CliRunner()

DELETE = "DELETE FROM history WHERE display = 'write tests'"


def _invoke(data_dir: Path, *args: str):
    return runner.invoke(app, ["--data-dir", str(data_dir), *args])


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("sql", "duplicates", "prompts", "sessions", "todos", "stats", "search", "tables"):
        assert command in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_sql_read_as_json(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "sql", "SELECT display FROM history ORDER BY rowid")

    assert result.exit_code == 0
    assert [row["display"] for row in json.loads(result.stdout)] == [
        "fix bug",
        "fix buug",
        "write tests",
        "fix bug",
    ]


def test_sql_write_requires_opt_in(clean_data_dir: Path) -> None:
    before = (clean_data_dir / "history.jsonl").read_bytes()

    result = _invoke(clean_data_dir, "sql", DELETE)

    assert result.exit_code == 1
    assert "statement modifies history" in result.output
    assert (clean_data_dir / "history.jsonl").read_bytes() == before


def test_dry_run_then_write(clean_data_dir: Path) -> None:
    history = clean_data_dir / "history.jsonl"
    before = history.read_bytes()

    preview = _invoke(clean_data_dir, "sql", "--dry-run", DELETE)
    assert preview.exit_code == 0
    assert "1 row(s)" in preview.stdout
    assert history.read_bytes() == before

    both = _invoke(clean_data_dir, "sql", "--dry-run", "--write", DELETE)
    assert both.exit_code == 0
    assert history.read_bytes() == before

    applied = _invoke(clean_data_dir, "-f", "json", "sql", "--write", DELETE)
    assert applied.exit_code == 0
    assert json.loads(applied.stdout)["applied_rows"] == 1
    assert "write tests" not in history.read_text()
    assert list(clean_data_dir.rglob("*.bak")) == []

    count = _invoke(clean_data_dir, "-f", "jsonl", "sql", "SELECT COUNT(*) AS n FROM history")
    assert json.loads(count.stdout) == {"n": 3}


def test_dry_run_json_lists_changes(clean_data_dir: Path) -> None:
    result = _invoke(
        clean_data_dir,
        "-f",
        "json",
        "sql",
        "--dry-run",
        "UPDATE todos SET status = 'completed' WHERE status = 'pending'",
    )

    assert result.exit_code == 0
    [change] = json.loads(result.stdout)
    assert change["action"] == "update"
    assert change["index"] == 1
    assert change["changes"] == {"status": {"before": "pending", "after": "completed"}}


def test_read_only_table(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "sql", "--write", "DELETE FROM stats")
    assert result.exit_code == 1
    assert "read-only" in result.output


def test_bad_sql_exits_nonzero(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "sql", "SELECT nope FROM history")
    assert result.exit_code == 1
    assert "Error" in result.output


def test_malformed_lines_are_reported(data_dir: Path) -> None:
    result = _invoke(data_dir, "sql", "SELECT COUNT(*) FROM history")
    assert result.exit_code == 0
    assert "skipped 1 malformed" in result.output


def test_duplicates_json(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "duplicates", "--show-variants")

    assert result.exit_code == 0
    [cluster] = json.loads(result.stdout)
    assert cluster["rank"] == 1
    assert cluster["count"] == 3
    assert cluster["representative"] == "fix bug"
    assert cluster["variants"] == ["fix bug", "fix buug"]


def test_duplicates_threshold_option(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "duplicates", "--threshold", "0.95")

    assert result.exit_code == 0
    assert [c["count"] for c in json.loads(result.stdout)] == [2]


def test_duplicates_rejects_bad_threshold(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "duplicates", "--threshold", "2")
    assert result.exit_code == 1


def test_prompts_filters(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "prompts", "--project", "/p/a", "--limit", "2")

    assert result.exit_code == 0
    rows = json.loads(result.stdout)
    assert [row["timestamp"] for row in rows] == [1700000200000, 1700000100000]

    dated = _invoke(clean_data_dir, "-f", "json", "prompts", "--since", "2023-11-15")
    assert json.loads(dated.stdout) == []

    bad = _invoke(clean_data_dir, "prompts", "--since", "last week")
    assert bad.exit_code == 1


def test_sessions(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "sessions", "--detailed")

    assert result.exit_code == 0
    sessions = json.loads(result.stdout)
    assert [s["session_id"] for s in sessions] == ["s2", "s1"]
    assert all(s["size_bytes"] > 0 for s in sessions)
    assert sessions[0]["source_file"].endswith("s2.jsonl")


def test_todos_filter(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "todos", "--status", "pending")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == [
        {"workspace": "ws1", "agent": "ag1", "status": "pending", "content": "write tests"}
    ]
    assert _invoke(clean_data_dir, "todos", "--status", "done").exit_code == 1


def test_stats_range(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "stats", "--since", "2023-11-15")

    assert result.exit_code == 0
    assert [row["date"] for row in json.loads(result.stdout)] == ["2023-11-15"]


def test_search_jsonl(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "jsonl", "search", "write tests", "--scope", "prompts")

    assert result.exit_code == 0
    [hit] = [json.loads(line) for line in result.stdout.splitlines()]
    assert hit["line"] == 3


def test_tables_lists_catalog(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "tables")

    assert result.exit_code == 0
    tables = {row["table"]: row for row in json.loads(result.stdout)}
    assert set(tables) == {"history", "transcripts", "todos", "stats", "model_tokens", "sessions"}
    assert tables["model_tokens"]["writable"] == "no"
    assert tables["transcripts"]["files"] == 2
    assert tables["stats"]["writable"] == "no"


def test_invalid_format(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "xml", "tables")
    assert result.exit_code == 1


def test_dry_run_and_write_on_two_rows(tmp_path: Path) -> None:
    data_dir = tmp_path / "claude"
    data_dir.mkdir()
    (data_dir / "history.jsonl").write_text(
        '{"display":"fix bug","timestamp":1000}\n{"display":"fix buug","timestamp":1001}\n'
    )
    delete = "DELETE FROM history WHERE timestamp = 1001"

    preview = _invoke(data_dir, "-f", "json", "sql", "--dry-run", delete)
    assert preview.exit_code == 0
    assert len(json.loads(preview.stdout)) == 1
    count = _invoke(data_dir, "-f", "jsonl", "sql", "SELECT COUNT(*) AS n FROM history")
    assert json.loads(count.stdout) == {"n": 2}

    applied = _invoke(data_dir, "sql", "--write", delete)
    assert applied.exit_code == 0
    count = _invoke(data_dir, "-f", "jsonl", "sql", "SELECT COUNT(*) AS n FROM history")
    assert json.loads(count.stdout) == {"n": 1}
    assert list(data_dir.glob("*.bak")) == []


def test_stats_group_by_model(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "stats", "--group-by", "model")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == [
        {"model": "claude-sonnet", "tokens": 2000, "days": 2},
        {"model": "claude-haiku", "tokens": 300, "days": 1},
    ]

    recent = _invoke(
        clean_data_dir, "-f", "json", "stats", "--group-by", "model", "--since", "2023-11-15"
    )
    assert json.loads(recent.stdout) == [{"model": "claude-sonnet", "tokens": 800, "days": 1}]

    assert _invoke(clean_data_dir, "stats", "--group-by", "week").exit_code == 1


def test_search_json_is_one_array(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "search", "fix", "-A", "1")

    assert result.exit_code == 0
    hits = json.loads(result.stdout)
    assert isinstance(hits, list)
    assert [(Path(hit["file"]).name, hit["line"]) for hit in hits] == [
        ("history.jsonl", 1),
        ("history.jsonl", 2),
        ("history.jsonl", 4),
        ("s1.jsonl", 1),
    ]
    assert len(hits[0]["after"]) == 1


def test_search_json_without_hits(clean_data_dir: Path) -> None:
    result = _invoke(clean_data_dir, "-f", "json", "search", "nothing like this")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == []
