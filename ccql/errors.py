"""Error types raised by ccql.

Every error carries a human-readable message plus an optional ``details``
mapping. Per-record parse problems are not exceptions; they are collected in
a :class:`ccql.normalize.ScanReport` so a scan never aborts on a bad line.

    CcqlError
    ├── ConfigError
    ├── QueryError
    └── WriteError
        ├── UnauthorizedWriteError
        ├── ReadOnlyTableError
        ├── StaleSourceError
        ├── BackupError
        └── ApplyError
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class CcqlError(Exception):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigError(CcqlError):
    """Config file exists but cannot be used."""


class QueryError(CcqlError):
    """The relational engine rejected or failed a statement."""


class WriteError(CcqlError):
    """Base class for everything the write-back path refuses or fails."""

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = dict(details or {})
        if table:
            merged.setdefault("table", table)
        super().__init__(message, merged)
        self.table = table


class UnauthorizedWriteError(WriteError):
    """A mutating statement arrived without --write or --dry-run."""


class ReadOnlyTableError(WriteError):
    """Mutation targeted a derived table that has no row coordinates."""


class StaleSourceError(WriteError):
    """A backing file changed between materialization and apply."""


class BackupError(WriteError):
    """Copying a file to its backup failed; nothing was modified."""

    def __init__(self, message: str, *, table: str | None = None, path: Path | None = None):
        super().__init__(message, table=table, details={"path": str(path)} if path else None)
        self.path = path


class ApplyError(WriteError):
    """Rewriting a file failed after backups were taken.

    ``backup_paths`` lists the retained pre-mutation copies so an operator can
    recover by hand.
    """

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        backup_paths: list[Path] | None = None,
    ):
        self.backup_paths = list(backup_paths or [])
        details = {"backups": ", ".join(str(p) for p in self.backup_paths)} if self.backup_paths else None
        super().__init__(message, table=table, details=details)
