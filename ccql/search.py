from __future__ import annotations

import re
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .errors import QueryError
from .tables import catalog

SCOPES = {
    "all": ("history", "transcripts"),
    "prompts": ("history",),
    "transcripts": ("transcripts",),
}


@dataclass
class SearchHit:
    path: Path
    line_number: int
    line: str
    before: list[str] = field(default_factory=list)
    after: list[str] = field(default_factory=list)


def compile_pattern(term: str, *, regex: bool, case_sensitive: bool) -> re.Pattern[str]:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(term if regex else re.escape(term), flags)
    except re.error as exc:
        raise QueryError(f"invalid regex: {exc}") from exc


def search_file(
    path: Path, pattern: re.Pattern[str], *, before: int = 0, after: int = 0
) -> Iterator[SearchHit]:
    window: deque[str] = deque(maxlen=before or None)
    pending: list[tuple[SearchHit, int]] = []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for number, raw in enumerate(handle, start=1):
            line = raw.rstrip("\n")
            still_open: list[tuple[SearchHit, int]] = []
            for hit, remaining in pending:
                hit.after.append(line)
                if remaining > 1:
                    still_open.append((hit, remaining - 1))
                else:
                    yield hit
            pending = still_open
            if pattern.search(line):
                hit = SearchHit(path, number, line, before=list(window) if before else [])
                if after:
                    pending.append((hit, after))
                else:
                    yield hit
            if before:
                window.append(line)
    for hit, _ in pending:
        yield hit


def search(
    data_dir: Path,
    term: str,
    *,
    scope: str = "all",
    case_sensitive: bool = False,
    regex: bool = False,
    before: int = 0,
    after: int = 0,
) -> Iterator[SearchHit]:
    """Line-oriented search over the raw files behind the text tables."""

    tables = SCOPES.get(scope)
    if tables is None:
        raise QueryError(f"unknown search scope: {scope}", {"scopes": ", ".join(SCOPES)})
    pattern = compile_pattern(term, regex=regex, case_sensitive=case_sensitive)
    for table in tables:
        for source in catalog(table, data_dir):
            yield from search_file(source.path, pattern, before=before, after=after)
