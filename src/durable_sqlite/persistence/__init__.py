"""
durable-sqlite — persistence package public API.

File: src/durable_sqlite/persistence/__init__.py

Purpose
- Durability for a SQLite file living in an ephemeral local filesystem: restore
  from an external cache on startup, back up after every committing save.

What should be included in this file
- The factory entry point, filename registry helpers, and coordinator types.
"""

from durable_sqlite.persistence.backup import (
    BackupCoordinator,
    log_pending_changes,
    log_state_change,
    make_backup_artifact_name,
)
from durable_sqlite.persistence.factory import PersistenceFactory
from durable_sqlite.persistence.filenames import (
    ContextSource,
    TypeFilenameRegistry,
    backup_name_for,
    default_registry,
    get_resolved_filename,
    reset_filename_registry,
    resolve_filename,
)
from durable_sqlite.persistence.startup import (
    PersistenceError,
    RestoreCoordinator,
    StartupBarrier,
    StartupPendingError,
)

__all__ = [
    "BackupCoordinator",
    "ContextSource",
    "PersistenceError",
    "PersistenceFactory",
    "RestoreCoordinator",
    "StartupBarrier",
    "StartupPendingError",
    "TypeFilenameRegistry",
    "backup_name_for",
    "default_registry",
    "get_resolved_filename",
    "log_pending_changes",
    "log_state_change",
    "make_backup_artifact_name",
    "reset_filename_registry",
    "resolve_filename",
]
