from __future__ import annotations

import json
from pathlib import Path

import pytest

from ccql.config import CONFIG_ENV_OVERRIDES

HISTORY_ENTRIES = [
    {"display": "fix bug", "timestamp": 1700000000000, "project": "/p/a", "sessionId": "s1", "pastedContents": {}},
    {"display": "fix buug", "timestamp": 1700000100000, "project": "/p/a", "sessionId": "s1"},
    {
        "display": "write tests",
        "timestamp": "2023-11-14T22:20:00.000Z",
        "project": "/p/b",
        "sessionId": "s2",
        "extra": "keep",
    },
    {"display": "fix bug", "timestamp": 1700000200000, "project": "/p/a", "sessionId": "s1"},
]

TRANSCRIPTS = {
    "-p-a/s1.jsonl": [
        {
            "type": "user",
            "uuid": "u1",
            "sessionId": "s1",
            "timestamp": "2023-11-14T22:13:20.000Z",
            "message": {"role": "user", "content": "fix bug"},
        },
        {
            "type": "assistant",
            "uuid": "a1",
            "parentUuid": "u1",
            "sessionId": "s1",
            "timestamp": "2023-11-14T22:15:00.000Z",
            "message": {"role": "assistant", "content": "done"},
        },
    ],
    "-p-b/s2.jsonl": [
        {
            "type": "user",
            "uuid": "u2",
            "sessionId": "s2",
            "timestamp": "2023-11-14T22:14:00.000Z",
            "message": {"role": "user", "content": "write tests"},
        },
        {
            "type": "assistant",
            "uuid": "a2",
            "parentUuid": "u2",
            "sessionId": "s2",
            "timestamp": "2023-11-14T22:16:00.000Z",
            "message": {"role": "assistant", "content": "ok"},
        },
    ],
}

TODOS = {
    "ws1-agent-ag1.json": [
        {"id": "1", "content": "write parser", "status": "completed", "priority": "high"},
        {"id": "2", "content": "write tests", "status": "pending", "priority": "medium"},
    ],
    "ws2-agent-ag2.json": [
        {"id": "1", "content": "ship it", "status": "in_progress", "priority": "low"},
    ],
}

STATS = {
    "version": 1,
    "dailyActivity": [
        {"date": "2023-11-14", "messageCount": 10, "sessionCount": 2, "toolCallCount": 3},
        {"date": "2023-11-15", "messageCount": 4, "sessionCount": 1, "toolCallCount": 0},
    ],
    "dailyModelTokens": [
        {"date": "2023-11-14", "tokensByModel": {"claude-sonnet": 1200, "claude-haiku": 300}},
        {"date": "2023-11-15", "tokensByModel": {"claude-sonnet": 800}},
    ],
}


def write_jsonl(path: Path, entries: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(entry) + "\n" for entry in entries))


def build_data_dir(root: Path, *, malformed: bool = True) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(entry) for entry in HISTORY_ENTRIES]
    if malformed:
        lines.insert(3, "not json")
    (root / "history.jsonl").write_text("\n".join(lines) + "\n")
    for name, entries in TRANSCRIPTS.items():
        write_jsonl(root / "projects" / name, entries)
    todos_dir = root / "todos"
    todos_dir.mkdir()
    for name, items in TODOS.items():
        (todos_dir / name).write_text(json.dumps(items, indent=2))
    (root / "stats-cache.json").write_text(json.dumps(STATS))
    return root


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CCQL_CONFIG", str(tmp_path / "ccql-config.json"))
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return build_data_dir(tmp_path / "claude")


@pytest.fixture
def clean_data_dir(tmp_path: Path) -> Path:
    return build_data_dir(tmp_path / "claude", malformed=False)


@pytest.fixture
def make_data_dir():
    return build_data_dir
