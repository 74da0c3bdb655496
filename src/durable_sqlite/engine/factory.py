"""Plain context factory: builds fresh contexts for one context type and connection string."""

from __future__ import annotations

from pathlib import Path
from typing import Generic, TypeVar

from durable_sqlite.engine.context import DEFAULT_BUSY_TIMEOUT_MS, SqliteContext

ContextT = TypeVar("ContextT", bound=SqliteContext)


class ContextFactory(Generic[ContextT]):
    """Create ``context_type`` instances bound to one connection string and root."""

    def __init__(
        self,
        context_type: type[ContextT],
        connection_string: str,
        *,
        root: str | Path = ".",
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if not isinstance(context_type, type) or not issubclass(context_type, SqliteContext):
            raise TypeError(f"context_type must subclass SqliteContext, got {context_type!r}")
        self._context_type = context_type
        self._connection_string = connection_string
        self._root = Path(root).expanduser()
        self._busy_timeout_ms = busy_timeout_ms

    @property
    def context_type(self) -> type[ContextT]:
        return self._context_type

    @property
    def root(self) -> Path:
        return self._root

    def create_context(self) -> ContextT:
        return self._context_type(
            self._connection_string,
            root=self._root,
            busy_timeout_ms=self._busy_timeout_ms,
        )

    async def create_context_async(self) -> ContextT:
        # Construction does no I/O; connections open lazily.
        return self.create_context()


__all__ = ["ContextFactory", "ContextT"]
