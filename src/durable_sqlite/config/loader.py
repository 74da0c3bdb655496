"""
durable-sqlite — runtime settings loader.

File: src/durable_sqlite/config/loader.py

Purpose
- Load effective persistence settings from defaults, a TOML file, env vars, and
  explicit overrides.

What should be included in this file
- Precedence logic: overrides > env (DURABLE_SQLITE_) > file > defaults.
- TOML loading via ``tomllib`` from the ``[durable_sqlite]`` table.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to the config file location.

Functional requirements
- Reject unknown keys and values of the wrong type with ``ConfigLoadError``.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Final, Literal

from durable_sqlite.constants import (
    BACKUP_SUFFIX,
    CONFIG_TABLE,
    DEFAULT_CONFIG_FILE,
    DEFAULT_FILENAME,
    ENV_PREFIX,
)

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_NONE_VALUES: Final[frozenset[str]] = frozenset({"", "none", "null"})

_ValueKind = Literal["path", "str", "float?", "bool"]

_FIELD_KINDS: Final[dict[str, _ValueKind]] = {
    "local_root": "path",
    "store_root": "path",
    "default_filename": "str",
    "backup_suffix": "str",
    "cache_timeout_seconds": "float?",
    "restore_timeout_seconds": "float?",
    "log_level": "str",
    "log_json": "bool",
}


class ConfigLoadError(ValueError):
    """Raised when settings cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class PersistenceSettings:
    """Effective settings for a persistence factory and its collaborators.

    ``log_level`` and ``log_json`` are not read by the factory; pass the settings
    to ``durable_sqlite.observability.configure_logging`` to apply them.
    """

    local_root: Path = Path("data") / "local"
    store_root: Path = Path("data") / "cache"
    default_filename: str = DEFAULT_FILENAME
    backup_suffix: str = BACKUP_SUFFIX
    cache_timeout_seconds: float | None = None
    restore_timeout_seconds: float | None = None
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        if not self.default_filename.strip():
            raise ConfigLoadError("default_filename must not be empty")
        if not self.backup_suffix.strip():
            raise ConfigLoadError("backup_suffix must not be empty")
        for name in ("cache_timeout_seconds", "restore_timeout_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigLoadError(f"{name} must be > 0 when set")

    def to_dict(self) -> dict[str, object]:
        return {
            item.name: (
                getattr(self, item.name).as_posix()
                if isinstance(getattr(self, item.name), Path)
                else getattr(self, item.name)
            )
            for item in fields(self)
        }


def load_settings(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> PersistenceSettings:
    """Load effective settings with precedence: overrides > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    explicit_path = config_path is not None
    env_map = dict(os.environ if environ is None else environ)

    payload: dict[str, Any] = {}
    payload.update(_load_toml_table(resolved_path, required=explicit_path))
    payload.update(_collect_env_overrides(env_map))
    payload.update(_validate_keys(dict(overrides or {}), source="overrides"))

    values: dict[str, Any] = {}
    for key, raw in payload.items():
        values[key] = _coerce(raw, _FIELD_KINDS[key], key, base_dir=resolved_path.parent)

    try:
        return replace(PersistenceSettings(), **values)
    except TypeError as exc:
        raise ConfigLoadError(f"invalid settings: {exc}") from exc


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_table(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    table = parsed.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigLoadError(f"[{CONFIG_TABLE}] must be a table: {path}")
    return _validate_keys(table, source=str(path))


def _validate_keys(payload: dict[str, Any], *, source: str) -> dict[str, Any]:
    unknown = sorted(key for key in payload if key not in _FIELD_KINDS)
    if unknown:
        raise ConfigLoadError(f"unknown setting(s) in {source}: {', '.join(unknown)}")
    return payload


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key in sorted(_FIELD_KINDS):
        env_name = _env_name_for_field(key)
        raw = environ.get(env_name)
        if raw is None:
            continue
        overrides[key] = _coerce_env(raw, _FIELD_KINDS[key], env_name)
    return overrides


def _coerce_env(raw: str, kind: _ValueKind, env_name: str) -> object:
    value = raw.strip()
    if kind == "bool":
        lowered = value.lower()
        if lowered in _BOOLEAN_TRUE:
            return True
        if lowered in _BOOLEAN_FALSE:
            return False
        raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if kind == "float?":
        if value.lower() in _NONE_VALUES:
            return None
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be a number") from exc
    return value


def _coerce(value: object, kind: _ValueKind, key: str, *, base_dir: Path) -> object:
    if kind == "path":
        if not isinstance(value, (str, Path)):
            raise ConfigLoadError(f"{key} must be a path string")
        return _normalize_one_path(str(value), base_dir)
    if kind == "str":
        if not isinstance(value, str):
            raise ConfigLoadError(f"{key} must be a string")
        return value.strip()
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigLoadError(f"{key} must be a boolean")
        return value
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigLoadError(f"{key} must be a number")
    return float(value)


def _normalize_one_path(raw: str, base_dir: Path) -> Path:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate)))


def _env_name_for_field(name: str) -> str:
    return ENV_PREFIX + name.upper()


__all__ = [
    "ConfigLoadError",
    "PersistenceSettings",
    "load_settings",
]
