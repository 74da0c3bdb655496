"""Process-wide memo of the database filename behind each context type."""

from __future__ import annotations

import threading
from typing import Protocol

import structlog

from durable_sqlite.constants import BACKUP_SUFFIX, DEFAULT_FILENAME
from durable_sqlite.engine.connection_string import find_data_source

logger = structlog.get_logger(__name__)


class ContextSource(Protocol):
    """Anything that can build a context exposing ``connection_string``."""

    @property
    def context_type(self) -> type: ...

    def create_context(self) -> object: ...


class TypeFilenameRegistry:
    """Append-only ``context type -> filename`` table.

    Two threads resolving the same type concurrently may both parse; the first
    ``register`` wins and the other adopts its value.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._filenames: dict[type, str] = {}

    def get(self, context_type: type) -> str | None:
        with self._lock:
            return self._filenames.get(context_type)

    def register(self, context_type: type, filename: str) -> str:
        with self._lock:
            return self._filenames.setdefault(context_type, filename)

    def clear(self) -> None:
        with self._lock:
            self._filenames.clear()

    def __contains__(self, context_type: object) -> bool:
        with self._lock:
            return context_type in self._filenames

    def __len__(self) -> int:
        with self._lock:
            return len(self._filenames)


_REGISTRY = TypeFilenameRegistry()


def default_registry() -> TypeFilenameRegistry:
    """Process-wide registry used when no explicit registry is passed."""

    return _REGISTRY


def resolve_filename(
    source: ContextSource,
    *,
    default_filename: str = DEFAULT_FILENAME,
    registry: TypeFilenameRegistry | None = None,
) -> str:
    """Return the memoized filename for ``source.context_type``.

    The first call opens one throwaway context to read its connection string;
    later calls are dictionary lookups. Never raises: anything unreadable falls
    back to ``default_filename``.
    """

    table = registry if registry is not None else default_registry()
    context_type = source.context_type
    cached = table.get(context_type)
    if cached is not None:
        return cached

    filename = _read_filename(source, default_filename)
    resolved = table.register(context_type, filename)
    logger.debug("filename_resolved", context_type=context_type.__name__, filename=resolved)
    return resolved


def get_resolved_filename(
    context_type: type,
    *,
    registry: TypeFilenameRegistry | None = None,
) -> str | None:
    """Return the filename already resolved for ``context_type``, if any."""

    table = registry if registry is not None else default_registry()
    return table.get(context_type)


def reset_filename_registry(registry: TypeFilenameRegistry | None = None) -> None:
    """Forget every resolved filename. Intended for test isolation."""

    table = registry if registry is not None else default_registry()
    table.clear()


def backup_name_for(filename: str, *, backup_suffix: str = BACKUP_SUFFIX) -> str:
    return f"{filename}{backup_suffix}"


def _read_filename(source: ContextSource, default_filename: str) -> str:
    try:
        context = source.create_context()
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "filename_probe_failed",
            context_type=source.context_type.__name__,
            error_type=exc.__class__.__name__,
            message=str(exc),
        )
        return default_filename

    connection_string = getattr(context, "connection_string", None)
    _dispose(context)

    if not isinstance(connection_string, str):
        return default_filename
    return find_data_source(connection_string) or default_filename


def _dispose(context: object) -> None:
    close = getattr(context, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "filename_probe_close_failed",
            error_type=exc.__class__.__name__,
            message=str(exc),
        )


__all__ = [
    "ContextSource",
    "TypeFilenameRegistry",
    "backup_name_for",
    "default_registry",
    "get_resolved_filename",
    "reset_filename_registry",
    "resolve_filename",
]
