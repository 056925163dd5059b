import json
from pathlib import Path

import pytest

from ccql.config import (
    DEFAULT_DATA_DIR,
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
)
from ccql.errors import ConfigError


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ConfigError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_requires_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ConfigError, match="must be an object"):
        read_config_file(config_path)


def test_missing_or_empty_config_is_empty(tmp_path: Path) -> None:
    assert read_config_file(tmp_path / "missing.json") == {}
    empty = tmp_path / "empty.json"
    empty.write_text("  \n")
    assert read_config_file(empty) == {}


def test_get_config_path_honors_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CCQL_CONFIG", str(tmp_path / "custom.json"))
    assert get_config_path() == tmp_path / "custom.json"


def test_defaults() -> None:
    cfg = load_config()
    assert cfg.data_dir == DEFAULT_DATA_DIR
    assert cfg.backup_dir is None
    assert cfg.output_format == "table"
    assert cfg.duplicate_threshold == 0.8
    assert cfg.duplicate_min_count == 2


def test_file_then_env_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "data_dir": str(tmp_path / "from-file"),
                "duplicate_threshold": 0.9,
                "output_format": "json",
                "unknown_key": True,
            }
        )
    )
    monkeypatch.setenv("CLAUDE_DATA_DIR", str(tmp_path / "from-env"))
    monkeypatch.setenv("CCQL_DUPLICATE_LIMIT", "7")

    assert get_env_overrides() == {
        "data_dir": str(tmp_path / "from-env"),
        "duplicate_limit": "7",
    }
    cfg = load_config(config_path)

    assert cfg.data_dir == tmp_path / "from-env"
    assert cfg.duplicate_threshold == 0.9
    assert cfg.duplicate_limit == 7
    assert cfg.output_format == "json"
    assert not hasattr(cfg, "unknown_key")


def test_invalid_values_warn_and_keep_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CCQL_DUPLICATE_MIN_COUNT", "many")
    monkeypatch.setenv("CCQL_DUPLICATE_THRESHOLD", "high")
    monkeypatch.setenv("CCQL_FORMAT", "yaml")

    with pytest.warns(RuntimeWarning):
        cfg = load_config()

    assert cfg.duplicate_min_count == 2
    assert cfg.duplicate_threshold == 0.8
    assert cfg.output_format == "table"


def test_load_config_tolerates_broken_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{broken")

    with pytest.warns(RuntimeWarning, match="invalid config json"):
        cfg = load_config(config_path)

    assert cfg.data_dir == DEFAULT_DATA_DIR
