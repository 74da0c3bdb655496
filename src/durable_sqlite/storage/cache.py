"""External cache contract and a directory-backed durable implementation."""

from __future__ import annotations

import asyncio
import os
import shutil
import string
import tempfile
from collections.abc import Awaitable
from pathlib import Path, PurePosixPath
from typing import Final, Protocol, runtime_checkable
from urllib.parse import quote, unquote

import structlog

from durable_sqlite.constants import (
    ARTIFACT_SEPARATOR,
    BACKUP_SUFFIX,
    STATUS_NOT_FOUND,
    STATUS_OK,
)

_HEX_DIGITS: Final[frozenset[str]] = frozenset(string.hexdigits)
_PARTIAL_PREFIX: Final[str] = ".~"
_PARTIAL_SUFFIX: Final[str] = ".partial"

logger = structlog.get_logger(__name__)


class CacheError(RuntimeError):
    """Raised when the external cache cannot serve a request."""


class CacheTimeoutError(CacheError, TimeoutError):
    """Raised when a cache call exceeds the configured timeout."""


@runtime_checkable
class ExternalCache(Protocol):
    """Durable key/blob store outside the local virtual filesystem."""

    async def sync_into_local(self, name: str) -> int:
        """Copy blob ``name`` into the local filesystem; 0 on success."""
        ...

    async def push_from_local(self, name: str) -> int:
        """Store local file ``name`` durably; 0 on success."""
        ...


def canonical_cache_key(name: str, *, backup_suffix: str = BACKUP_SUFFIX) -> str:
    """Map a backup artifact name ``<file>_bak-<hex>`` to its cache key ``<file>_bak``."""

    head, separator, tail = name.rpartition(backup_suffix + ARTIFACT_SEPARATOR)
    if separator and head and tail and all(char in _HEX_DIGITS for char in tail):
        return head + backup_suffix
    return name


async def call_with_timeout(
    awaitable: Awaitable[int],
    timeout_seconds: float | None,
    *,
    operation: str,
) -> int:
    """Await a cache call, raising ``CacheTimeoutError`` past ``timeout_seconds``."""

    if timeout_seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError as exc:
        raise CacheTimeoutError(f"{operation} timed out after {timeout_seconds:g}s") from exc


class DirectoryCache:
    """Cache that keeps blobs as files under ``store_root``.

    ``local_root`` is the virtual filesystem the database files live in, and
    names may be relative sub-paths of it (``data/people.db_bak``). Each name
    is stored as one flat file whose name is the percent-encoded canonical key,
    so ``store_root`` never grows subdirectories. Pushed backup artifacts are
    stored under their canonical key and then removed locally; a later
    ``sync_into_local`` of that key restores the newest push.
    """

    def __init__(
        self,
        local_root: str | Path,
        store_root: str | Path,
        *,
        backup_suffix: str = BACKUP_SUFFIX,
    ) -> None:
        self._local_root = Path(local_root).expanduser()
        self._store_root = Path(store_root).expanduser()
        self._backup_suffix = backup_suffix

    @property
    def local_root(self) -> Path:
        return self._local_root

    @property
    def store_root(self) -> Path:
        return self._store_root

    async def sync_into_local(self, name: str) -> int:
        return await asyncio.to_thread(self.sync_into_local_blocking, name)

    async def push_from_local(self, name: str) -> int:
        return await asyncio.to_thread(self.push_from_local_blocking, name)

    def sync_into_local_blocking(self, name: str) -> int:
        relative = _relative_name(name)
        key = canonical_cache_key(relative, backup_suffix=self._backup_suffix)
        source = self._store_path(key)
        if not source.is_file():
            logger.info("cache_entry_missing", name=name, key=key)
            return STATUS_NOT_FOUND
        _atomic_copy(source, self._local_root / relative)
        logger.info("cache_entry_restored", name=name, key=key)
        return STATUS_OK

    def push_from_local_blocking(self, name: str) -> int:
        relative = _relative_name(name)
        key = canonical_cache_key(relative, backup_suffix=self._backup_suffix)
        source = self._local_root / relative
        if not source.is_file():
            logger.warning("cache_push_source_missing", name=name)
            return STATUS_NOT_FOUND
        _atomic_copy(source, self._store_path(key))
        if key != relative:
            source.unlink(missing_ok=True)
        logger.info("cache_entry_stored", name=name, key=key)
        return STATUS_OK

    def keys(self) -> tuple[str, ...]:
        """Stored keys in their logical, decoded form."""

        if not self._store_root.is_dir():
            return ()
        return tuple(
            sorted(
                unquote(item.name)
                for item in self._store_root.iterdir()
                if item.is_file() and not _is_partial(item.name)
            )
        )

    def read(self, key: str) -> bytes | None:
        path = self._store_path(_relative_name(key))
        return path.read_bytes() if path.is_file() else None

    def _store_path(self, key: str) -> Path:
        return self._store_root / quote(key, safe="")


def _relative_name(name: str) -> str:
    """Normalize ``name`` to a relative POSIX path that stays under its root."""

    if not isinstance(name, str):
        raise CacheError(f"cache name must be a string, got {type(name).__name__}")
    if not name or name.strip() != name:
        raise CacheError(f"cache name must be non-empty without surrounding spaces: {name!r}")
    path = PurePosixPath(name)
    if path.is_absolute() or Path(name).is_absolute():
        raise CacheError(f"cache name must be relative: {name!r}")
    if ".." in path.parts or ".." in Path(name).parts:
        raise CacheError(f"cache name must not escape its root: {name!r}")
    if not path.parts:
        raise CacheError(f"cache name must name a file: {name!r}")
    return path.as_posix()


def _is_partial(filename: str) -> bool:
    return filename.startswith(_PARTIAL_PREFIX) and filename.endswith(_PARTIAL_SUFFIX)


def _atomic_copy(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        prefix=_PARTIAL_PREFIX, suffix=_PARTIAL_SUFFIX, dir=destination.parent
    )
    try:
        with os.fdopen(fd, "wb") as handle, source.open("rb") as reader:
            shutil.copyfileobj(reader, handle)
        os.replace(temp_name, destination)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


__all__ = [
    "CacheError",
    "CacheTimeoutError",
    "DirectoryCache",
    "ExternalCache",
    "call_with_timeout",
    "canonical_cache_key",
]
