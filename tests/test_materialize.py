from __future__ import annotations

import json
from pathlib import Path

import pytest

from ccql.errors import QueryError
from ccql.materialize import materialize
from ccql.normalize import ScanReport


def test_rows_from_every_file_with_provenance(tmp_path: Path) -> None:
    files, per_file = 3, 4
    for f in range(files):
        path = tmp_path / "projects" / f"-proj-{f}" / f"session-{f}.jsonl"
        path.parent.mkdir(parents=True)
        lines = [
            json.dumps({"type": "user", "uuid": f"{f}-{i}", "timestamp": 1000 * i + f})
            for i in range(per_file)
        ]
        path.write_text("\n".join(lines) + "\n")

    records = list(materialize("transcripts", data_dir=tmp_path))

    assert len(records) == files * per_file
    for record in records:
        project = record.get("_project")
        f = project.removeprefix("-proj-")
        assert record.get("uuid").startswith(f"{f}-")
        assert record.get("_session_id") == f"session-{f}"
        assert record.get("_source_file") == str(
            tmp_path / "projects" / project / f"session-{f}.jsonl"
        )


def test_transcripts_merge_in_timestamp_order(data_dir: Path) -> None:
    records = list(materialize("transcripts", data_dir=data_dir))

    assert [r.get("uuid") for r in records] == ["u1", "u2", "a1", "a2"]
    stamps = [r.get("timestamp") for r in records]
    assert stamps == sorted(stamps)


def test_missing_single_file_is_empty(tmp_path: Path) -> None:
    report = ScanReport()

    records = list(materialize("history", data_dir=tmp_path, report=report))

    assert records == []
    assert [m.table for m in report.missing] == ["history"]
    assert report.skipped == 0


def test_missing_directory_is_empty_without_warning(tmp_path: Path) -> None:
    report = ScanReport()

    assert list(materialize("todos", data_dir=tmp_path, report=report)) == []
    assert report.missing == []


def test_todo_provenance_from_file_name(data_dir: Path) -> None:
    records = list(materialize("todos", data_dir=data_dir))

    assert [(r.get("_workspace_id"), r.get("_agent_id")) for r in records] == [
        ("ws1", "ag1"),
        ("ws1", "ag1"),
        ("ws2", "ag2"),
    ]


def test_rescans_on_every_call(data_dir: Path) -> None:
    assert len(list(materialize("history", data_dir=data_dir))) == 4
    with (data_dir / "history.jsonl").open("a") as handle:
        handle.write(json.dumps({"display": "later"}) + "\n")
    assert len(list(materialize("history", data_dir=data_dir))) == 5


def test_views_cannot_be_materialized(data_dir: Path) -> None:
    with pytest.raises(QueryError, match="derived view"):
        materialize("sessions", data_dir=data_dir)


def test_unknown_table(data_dir: Path) -> None:
    with pytest.raises(QueryError, match="unknown table"):
        materialize("nope", data_dir=data_dir)
