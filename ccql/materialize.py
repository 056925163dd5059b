from __future__ import annotations

import heapq
import itertools
import logging
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any

from .errors import QueryError
from .normalize import Record, ScanReport, parse_source
from .tables import ParseMode, SourceFile, TableDef, catalog, get_table

logger = logging.getLogger(__name__)


def _stamp(records: Iterable[Record], source: SourceFile) -> Iterator[Record]:
    for record in records:
        record.provenance = source.provenance
        yield record


def _order_key(column: str):
    def key(record: Record) -> tuple[bool, Any]:
        value = record.get(column)
        return (value is not None, value if value is not None else 0)

    return key


def materialize(
    table: TableDef | str,
    *,
    data_dir: Path,
    report: ScanReport | None = None,
    sources: Sequence[SourceFile] | None = None,
) -> Iterator[Record]:
    """Yield every record of ``table`` with provenance columns stamped.

    Files are rescanned on every call. Tables with an ordering key are merged
    stably across files; others are concatenated in discovery order. Pass
    ``sources`` to scan a file list the caller already resolved.

    A merged scan keeps every file of the table open and holds one pending
    record per file until the merge is exhausted, so its working set grows
    with the number of files rather than staying at one file at a time.
    """

    table_def = get_table(table) if isinstance(table, str) else table
    if table_def.parse_mode is ParseMode.VIEW:
        raise QueryError(f"{table_def.name} is a derived view; query it with SQL")
    report = report if report is not None else ScanReport()
    if sources is None:
        sources = catalog(table_def, data_dir)
    if not sources and table_def.single_file:
        report.add_missing(table_def.name, Path(data_dir).expanduser() / table_def.pattern)
        return iter(())
    logger.debug("materializing %s from %d file(s)", table_def.name, len(sources))
    streams = [_stamp(parse_source(source, table_def, report), source) for source in sources]
    if table_def.order_by and len(streams) > 1:
        return heapq.merge(*streams, key=_order_key(table_def.order_by))
    return itertools.chain.from_iterable(streams)
