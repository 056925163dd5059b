from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.config/ccql/config.json").expanduser()
DEFAULT_DATA_DIR = Path("~/.claude").expanduser()
OUTPUT_FORMATS = ("table", "json", "jsonl", "raw")

CONFIG_ENV_OVERRIDES = {
    "data_dir": "CLAUDE_DATA_DIR",
    "backup_dir": "CCQL_BACKUP_DIR",
    "output_format": "CCQL_FORMAT",
    "duplicate_threshold": "CCQL_DUPLICATE_THRESHOLD",
    "duplicate_min_count": "CCQL_DUPLICATE_MIN_COUNT",
    "duplicate_min_length": "CCQL_DUPLICATE_MIN_LENGTH",
    "duplicate_limit": "CCQL_DUPLICATE_LIMIT",
    "max_reported_parse_issues": "CCQL_MAX_REPORTED_PARSE_ISSUES",
}

_INT_KEYS = {
    "duplicate_min_count",
    "duplicate_min_length",
    "duplicate_limit",
    "max_reported_parse_issues",
}
_FLOAT_KEYS = {"duplicate_threshold"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CCQL_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError("invalid config json", {"path": str(config_path)}) from exc
    if not isinstance(data, dict):
        raise ConfigError("config must be an object", {"path": str(config_path)})
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class CcqlConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    # None keeps backups next to the file being rewritten.
    backup_dir: Path | None = None
    output_format: str = "table"
    duplicate_threshold: float = 0.8
    duplicate_min_count: int = 2
    duplicate_min_length: int = 4
    duplicate_limit: int = 50
    max_reported_parse_issues: int = 5


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_format(value: object, default: str) -> str:
    if isinstance(value, str) and value.lower() in OUTPUT_FORMATS:
        return value.lower()
    warnings.warn(f"Invalid output format: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> CcqlConfig:
    cfg = CcqlConfig()
    try:
        data = read_config_file(path)
    except ConfigError as exc:
        warnings.warn(str(exc), RuntimeWarning, stacklevel=2)
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: CcqlConfig, data: dict[str, Any]) -> CcqlConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key == "output_format":
            cfg.output_format = _parse_format(value, cfg.output_format)
            continue
        if key in {"data_dir", "backup_dir"}:
            setattr(cfg, key, Path(str(value)).expanduser() if value else None)
            if cfg.data_dir is None:
                cfg.data_dir = DEFAULT_DATA_DIR
            continue
        setattr(cfg, key, value)
    return cfg
