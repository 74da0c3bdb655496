"""Swap utility: make one local database file's contents available under another name."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

import structlog

DEFAULT_SWAP_TIMEOUT_MS: Final[int] = 5_000

logger = structlog.get_logger(__name__)


class SwapError(RuntimeError):
    """Raised when a swap cannot copy the source database."""


@runtime_checkable
class SqliteSwap(Protocol):
    def swap(self, source: str, target: str) -> None:
        """Synchronously make the bytes at ``source`` available under ``target``."""
        ...


class BackupApiSwap:
    """Copy-semantics swap built on the SQLite online-backup API.

    The backup API yields a consistent snapshot even while other connections to
    ``source`` are open; ``source`` is left in place.
    """

    def __init__(
        self,
        local_root: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_SWAP_TIMEOUT_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._local_root = Path(local_root).expanduser()
        self._busy_timeout_ms = busy_timeout_ms

    @property
    def local_root(self) -> Path:
        return self._local_root

    def swap(self, source: str, target: str) -> None:
        source_path = self._local_root / source
        target_path = self._local_root / target
        if source_path == target_path:
            raise SwapError(f"swap source and target are the same file: {source_path}")
        if not source_path.is_file():
            raise SwapError(f"swap source not found: {source_path}")

        target_path.parent.mkdir(parents=True, exist_ok=True)
        timeout = self._busy_timeout_ms / 1000.0
        try:
            with (
                closing(sqlite3.connect(source_path, timeout=timeout)) as source_conn,
                closing(sqlite3.connect(target_path, timeout=timeout)) as target_conn,
            ):
                source_conn.backup(target_conn)
        except sqlite3.Error as exc:
            raise SwapError(f"swap {source!r} -> {target!r} failed: {exc}") from exc
        logger.debug("swap_completed", source=source, target=target)


__all__ = [
    "BackupApiSwap",
    "DEFAULT_SWAP_TIMEOUT_MS",
    "SqliteSwap",
    "SwapError",
]
