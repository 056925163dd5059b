"""Near-duplicate clustering over prompt text.

Texts are case-folded and whitespace-collapsed, exact repeats are counted
once, and the remaining distinct texts are compared with normalized
Levenshtein similarity (``1 - distance / max(len)``, 1.0 for identical
strings). Two clustering methods are available:

``linkage`` (default)
    Every pair at or above the threshold is linked and connected components
    become clusters. Raising the threshold can only split clusters.

``greedy``
    Candidates are visited in first-seen order; each unclustered one opens a
    cluster and absorbs every later unclustered candidate similar to it.
    Cheaper, but membership depends on visiting order.

In both, the representative is the first-seen member.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rapidfuzz.distance import Levenshtein

from .materialize import materialize
from .normalize import Record, ScanReport

CODE_MARKERS = (
    "import ",
    "export ",
    "const ",
    "function ",
    "interface ",
    ".js:",
    ".ts:",
    ".tsx:",
    "chunk-",
    "requestanimationframe",
    "installhook",
)
CODE_PREFIXES = ("//", "/*", "```", "[", "{", "<")
METHODS = ("linkage", "greedy")
SORT_KEYS = ("count", "latest")


@dataclass
class DuplicateCluster:
    representative: str
    count: int
    variants: list[str]
    latest_timestamp: int | None = None
    members: list[Record] = field(default_factory=list)
    first_index: int = 0


@dataclass
class _Candidate:
    text: str
    first_index: int
    count: int = 0
    latest: int | None = None
    records: list[Record] = field(default_factory=list)


def normalize_prompt(text: str) -> str:
    return " ".join(text.split()).casefold()


def looks_like_code(text: str) -> bool:
    if text.startswith(CODE_PREFIXES):
        return True
    return any(marker in text for marker in CODE_MARKERS)


def similarity(a: str, b: str) -> float:
    return Levenshtein.normalized_similarity(a, b)


def is_similar(a: str, b: str, threshold: float) -> bool:
    if a == b:
        return True
    longest = max(len(a), len(b))
    # Similarity can never exceed the length ratio.
    if min(len(a), len(b)) / longest < threshold:
        return False
    return Levenshtein.normalized_similarity(a, b, score_cutoff=threshold) >= threshold


def _collect(
    records: Iterable[Record], text_column: str, timestamp_column: str | None, min_length: int, keep_records: bool
) -> list[_Candidate]:
    candidates: dict[str, _Candidate] = {}
    for index, record in enumerate(records):
        value = record.get(text_column)
        if not isinstance(value, str):
            continue
        text = normalize_prompt(value)
        if len(text) < min_length or looks_like_code(text):
            continue
        candidate = candidates.get(text)
        if candidate is None:
            candidate = candidates[text] = _Candidate(text=text, first_index=index)
        candidate.count += 1
        if timestamp_column:
            ts = record.get(timestamp_column)
            if isinstance(ts, int) and (candidate.latest is None or ts > candidate.latest):
                candidate.latest = ts
        if keep_records:
            candidate.records.append(record)
    return list(candidates.values())


def _greedy_groups(candidates: list[_Candidate], threshold: float) -> list[list[int]]:
    assigned = [False] * len(candidates)
    groups: list[list[int]] = []
    for i, head in enumerate(candidates):
        if assigned[i]:
            continue
        assigned[i] = True
        group = [i]
        for j in range(i + 1, len(candidates)):
            if not assigned[j] and is_similar(head.text, candidates[j].text, threshold):
                assigned[j] = True
                group.append(j)
        groups.append(group)
    return groups


def _linkage_groups(candidates: list[_Candidate], threshold: float) -> list[list[int]]:
    parent = list(range(len(candidates)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(candidates)):
        for j in range(i + 1, len(candidates)):
            root_i, root_j = find(i), find(j)
            if root_i == root_j:
                continue
            if is_similar(candidates[i].text, candidates[j].text, threshold):
                parent[max(root_i, root_j)] = min(root_i, root_j)

    groups: dict[int, list[int]] = {}
    for i in range(len(candidates)):
        groups.setdefault(find(i), []).append(i)
    return [groups[root] for root in sorted(groups)]


def find_duplicates(
    records: Iterable[Record],
    *,
    threshold: float = 0.8,
    min_count: int = 2,
    show_variants: bool = False,
    text_column: str = "display",
    timestamp_column: str | None = "timestamp",
    min_length: int = 4,
    sort: str = "count",
    limit: int | None = None,
    method: str = "linkage",
) -> list[DuplicateCluster]:
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"threshold must be between 0 and 1, got {threshold}")
    if min_count < 1:
        raise ValueError(f"min_count must be at least 1, got {min_count}")
    if method not in METHODS:
        raise ValueError(f"unknown clustering method: {method}")
    if sort not in SORT_KEYS:
        raise ValueError(f"unknown sort key: {sort}")

    candidates = _collect(records, text_column, timestamp_column, min_length, show_variants)
    if method == "greedy":
        groups = _greedy_groups(candidates, threshold)
    else:
        groups = _linkage_groups(candidates, threshold)

    clusters: list[DuplicateCluster] = []
    for group in groups:
        members = [candidates[i] for i in group]
        count = sum(member.count for member in members)
        if count < min_count:
            continue
        stamps = [member.latest for member in members if member.latest is not None]
        records_out: list[Record] = []
        if show_variants:
            for member in members:
                records_out.extend(member.records)
        clusters.append(
            DuplicateCluster(
                representative=members[0].text,
                count=count,
                variants=[member.text for member in members],
                latest_timestamp=max(stamps) if stamps else None,
                members=records_out,
                first_index=members[0].first_index,
            )
        )

    if sort == "latest":
        clusters.sort(key=lambda c: (c.latest_timestamp is None, -(c.latest_timestamp or 0), c.first_index))
    else:
        clusters.sort(key=lambda c: (-c.count, c.first_index))
    if limit is not None:
        clusters = clusters[:limit]
    return clusters


def find_table_duplicates(
    data_dir: Path,
    *,
    table: str = "history",
    text_column: str = "display",
    report: ScanReport | None = None,
    **options: Any,
) -> list[DuplicateCluster]:
    records = materialize(table, data_dir=data_dir, report=report)
    return find_duplicates(records, text_column=text_column, **options)
