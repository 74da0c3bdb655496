"""
durable-sqlite — durable SQLite files for hosts without a persistent filesystem.

File: src/durable_sqlite/__init__.py

Purpose
- Package root. Re-exports the persistence factory and the helpers most callers
  need; collaborators live in ``engine``, ``storage``, ``config`` and
  ``observability``.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from durable_sqlite.config import PersistenceSettings, load_settings
from durable_sqlite.engine import ContextFactory, EntityState, SqliteContext
from durable_sqlite.persistence import (
    PersistenceFactory,
    StartupPendingError,
    get_resolved_filename,
    reset_filename_registry,
)

__version__ = "0.1.0"

__all__ = [
    "ContextFactory",
    "EntityState",
    "PersistenceFactory",
    "PersistenceSettings",
    "SqliteContext",
    "StartupPendingError",
    "__version__",
    "get_resolved_filename",
    "load_settings",
    "reset_filename_registry",
]
