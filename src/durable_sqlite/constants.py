"""Stable constants shared across the persistence, engine, and storage layers."""

from __future__ import annotations

from typing import Final

# Filename used when a connection string names no data source.
DEFAULT_FILENAME: Final[str] = "filenotfound.db"

# Backup naming: "<filename>_bak" in the cache, "<filename>_bak-<hex>" for artifacts.
BACKUP_SUFFIX: Final[str] = "_bak"
ARTIFACT_SEPARATOR: Final[str] = "-"
ARTIFACT_SUFFIX_HEX_CHARS: Final[int] = 8

# Connection-string keys (lowercased substrings) that name the database file.
FILENAME_KEY_MARKERS: Final[tuple[str, ...]] = ("data source", "datasource", "filename")

# Cache sync status codes.
STATUS_OK: Final[int] = 0
STATUS_NOT_FOUND: Final[int] = 1
STATUS_ERROR: Final[int] = -1
STATUS_UNSET: Final[int] = -2

# Settings.
DEFAULT_CONFIG_FILE: Final[str] = "durable_sqlite.toml"
CONFIG_TABLE: Final[str] = "durable_sqlite"
ENV_PREFIX: Final[str] = "DURABLE_SQLITE_"
DEFAULT_LOGGER_NAME: Final[str] = "durable_sqlite"

__all__ = [
    "ARTIFACT_SEPARATOR",
    "ARTIFACT_SUFFIX_HEX_CHARS",
    "BACKUP_SUFFIX",
    "CONFIG_TABLE",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_FILENAME",
    "DEFAULT_LOGGER_NAME",
    "ENV_PREFIX",
    "FILENAME_KEY_MARKERS",
    "STATUS_ERROR",
    "STATUS_NOT_FOUND",
    "STATUS_OK",
    "STATUS_UNSET",
]
