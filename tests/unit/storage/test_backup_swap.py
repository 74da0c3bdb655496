"""
durable-sqlite — unit tests for the backup-API swap

File: tests/unit/storage/test_backup_swap.py

Purpose
- Validate that swapping copies a consistent database image between local files.
"""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path

import pytest

from durable_sqlite.storage import BackupApiSwap, SqliteSwap, SwapError
from tests.unit.persistence import make_people_db


def _names(path: Path) -> list[str]:
    with closing(sqlite3.connect(path)) as conn:
        return [row[0] for row in conn.execute("SELECT name FROM persons ORDER BY id")]


def test_swap_copies_database_and_keeps_source(tmp_path: Path) -> None:
    make_people_db(tmp_path / "people.db_bak", ("Ada", "Grace"))
    swap = BackupApiSwap(tmp_path)

    swap.swap("people.db_bak", "people.db")

    assert _names(tmp_path / "people.db") == ["Ada", "Grace"]
    assert (tmp_path / "people.db_bak").exists()
    assert isinstance(swap, SqliteSwap)


def test_swap_replaces_existing_target(tmp_path: Path) -> None:
    make_people_db(tmp_path / "people.db", ("Stale",))
    make_people_db(tmp_path / "people.db_bak", ("Fresh",))

    BackupApiSwap(tmp_path).swap("people.db_bak", "people.db")

    assert _names(tmp_path / "people.db") == ["Fresh"]


def test_missing_source_raises(tmp_path: Path) -> None:
    with pytest.raises(SwapError, match="not found"):
        BackupApiSwap(tmp_path).swap("absent.db", "people.db")


def test_same_source_and_target_raises(tmp_path: Path) -> None:
    make_people_db(tmp_path / "people.db", ("Ada",))

    with pytest.raises(SwapError, match="same file"):
        BackupApiSwap(tmp_path).swap("people.db", "people.db")


def test_non_database_source_raises(tmp_path: Path) -> None:
    (tmp_path / "garbage.db").write_bytes(b"this is not a sqlite database" * 10)

    with pytest.raises(SwapError):
        BackupApiSwap(tmp_path).swap("garbage.db", "people.db")


def test_negative_busy_timeout_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        BackupApiSwap(tmp_path, busy_timeout_ms=-1)
