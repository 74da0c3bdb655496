"""SQLite engine: connection strings, tracked contexts, and plain context factories."""

from durable_sqlite.engine.connection_string import find_data_source, parse_connection_string
from durable_sqlite.engine.context import (
    ChangeTracker,
    ContextError,
    EntityEntry,
    EntityState,
    EntityStateError,
    SqliteContext,
)
from durable_sqlite.engine.factory import ContextFactory

__all__ = [
    "ChangeTracker",
    "ContextError",
    "ContextFactory",
    "EntityEntry",
    "EntityState",
    "EntityStateError",
    "SqliteContext",
    "find_data_source",
    "parse_connection_string",
]
