from __future__ import annotations

from ccql.config import CcqlConfig
from ccql.dedup import find_table_duplicates
from ccql.errors import CcqlError
from ccql.normalize import ScanReport
from ccql.render import render_rows

from .common import fail, fail_on_error, format_timestamp, print_scan_summary


def duplicates_cmd(
    *,
    config: CcqlConfig,
    threshold: float | None,
    min_count: int | None,
    limit: int | None,
    show_variants: bool,
    sort: str,
    min_length: int | None,
    greedy: bool,
    fmt: str,
) -> None:
    """Cluster near-duplicate prompts from history."""

    report = ScanReport()
    try:
        clusters = find_table_duplicates(
            config.data_dir,
            report=report,
            threshold=config.duplicate_threshold if threshold is None else threshold,
            min_count=config.duplicate_min_count if min_count is None else min_count,
            min_length=config.duplicate_min_length if min_length is None else min_length,
            limit=config.duplicate_limit if limit is None else limit,
            show_variants=show_variants,
            sort=sort,
            method="greedy" if greedy else "linkage",
        )
    except ValueError as exc:
        fail(f"Error: {exc}")
    except CcqlError as exc:
        fail_on_error(exc)
    finally:
        print_scan_summary(report, max_issues=config.max_reported_parse_issues)

    columns = ["rank", "count", "representative", "latest"]
    if show_variants:
        columns.append("variants")
    rows = []
    for rank, cluster in enumerate(clusters, start=1):
        latest = format_timestamp(cluster.latest_timestamp) if fmt == "table" else cluster.latest_timestamp
        row = [rank, cluster.count, cluster.representative, latest]
        if show_variants:
            row.append("\n".join(cluster.variants) if fmt == "table" else cluster.variants)
        rows.append(tuple(row))
    render_rows(columns, rows, fmt, title="Duplicate prompts")
