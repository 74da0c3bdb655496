"""
durable-sqlite — unit tests for the settings loader

File: tests/unit/config/test_settings_loader.py

Purpose
- Validate deterministic settings loading from defaults, TOML, env overrides, and
  explicit overrides.

What this test file should cover
- Precedence: overrides > env > file > defaults.
- Env var mapping and type coercion.
- Path normalization relative to the config file.
- Rejection of unknown keys, bad types, and invalid values.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from durable_sqlite.config import ConfigLoadError, PersistenceSettings, load_settings
from durable_sqlite.constants import BACKUP_SUFFIX, DEFAULT_FILENAME


def _write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "durable_sqlite.toml"
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults_without_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    settings = load_settings(environ={})

    assert settings == PersistenceSettings()
    assert settings.default_filename == DEFAULT_FILENAME
    assert settings.backup_suffix == BACKUP_SUFFIX
    assert settings.cache_timeout_seconds is None


def test_file_values_and_relative_paths(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        """
[durable_sqlite]
local_root = "vfs"
store_root = "../durable"
cache_timeout_seconds = 2
log_json = false
""",
    )

    settings = load_settings(path, environ={})

    assert settings.local_root == tmp_path.resolve() / "vfs"
    assert settings.store_root == tmp_path.resolve().parent / "durable"
    assert settings.cache_timeout_seconds == 2.0
    assert settings.log_json is False


def test_precedence_overrides_env_file(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        """
[durable_sqlite]
log_level = "WARNING"
backup_suffix = ".file"
default_filename = "from-file.db"
""",
    )
    environ = {
        "DURABLE_SQLITE_LOG_LEVEL": "DEBUG",
        "DURABLE_SQLITE_BACKUP_SUFFIX": ".env",
    }

    settings = load_settings(path, environ=environ, overrides={"log_level": "ERROR"})

    assert settings.log_level == "ERROR"
    assert settings.backup_suffix == ".env"
    assert settings.default_filename == "from-file.db"


def test_env_coercion(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "[durable_sqlite]\nrestore_timeout_seconds = 9\n")
    environ = {
        "DURABLE_SQLITE_LOG_JSON": "off",
        "DURABLE_SQLITE_CACHE_TIMEOUT_SECONDS": " 1.5 ",
        "DURABLE_SQLITE_RESTORE_TIMEOUT_SECONDS": "none",
    }

    settings = load_settings(path, environ=environ)

    assert settings.log_json is False
    assert settings.cache_timeout_seconds == 1.5
    assert settings.restore_timeout_seconds is None


@pytest.mark.parametrize(
    ("environ", "message"),
    [
        ({"DURABLE_SQLITE_LOG_JSON": "maybe"}, "must be a boolean"),
        ({"DURABLE_SQLITE_CACHE_TIMEOUT_SECONDS": "soon"}, "must be a number"),
        ({"DURABLE_SQLITE_CACHE_TIMEOUT_SECONDS": "0"}, "must be > 0"),
    ],
)
def test_invalid_env_values_are_rejected(
    tmp_path: Path, environ: dict[str, str], message: str
) -> None:
    path = _write_config(tmp_path, "[durable_sqlite]\n")

    with pytest.raises(ConfigLoadError, match=message):
        load_settings(path, environ=environ)


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "[durable_sqlite]\nmystery = 1\n")

    with pytest.raises(ConfigLoadError, match="mystery"):
        load_settings(path, environ={})
    valid = tmp_path / "valid.toml"
    valid.write_text("[durable_sqlite]\n", encoding="utf-8")
    with pytest.raises(ConfigLoadError, match="bogus"):
        load_settings(valid, environ={}, overrides={"bogus": 1})


def test_missing_explicit_file_and_bad_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_settings(tmp_path / "absent.toml", environ={})

    broken = _write_config(tmp_path, "[durable_sqlite\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_settings(broken, environ={})


def test_wrong_types_are_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path, '[durable_sqlite]\nlog_json = "yes"\n')

    with pytest.raises(ConfigLoadError, match="log_json must be a boolean"):
        load_settings(path, environ={})


def test_settings_validate_and_serialize() -> None:
    with pytest.raises(ConfigLoadError):
        PersistenceSettings(backup_suffix="  ")
    with pytest.raises(ConfigLoadError):
        PersistenceSettings(restore_timeout_seconds=-1)

    payload = PersistenceSettings().to_dict()
    assert payload["local_root"] == "data/local"
    assert payload["default_filename"] == DEFAULT_FILENAME
