"""
durable-sqlite — persistence factory.

File: src/durable_sqlite/persistence/factory.py

Purpose
- Public entry point: hand out contexts only after the startup restore has
  settled, create the schema once, and wire per-context lifecycle hooks.

What should be included in this file
- ``PersistenceFactory`` with blocking and async ``create_context`` variants.
- Restore launched at construction; backup triggered by committing saves.
- ``from_settings`` wiring for the bundled directory cache and backup-API swap.

Functional requirements
- Callers own returned contexts; the factory never tracks or closes them.
- Schema and engine failures propagate to the ``create_context`` caller.
- Backup and hook failures never reach the code that called ``save_changes``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Generic

import structlog

from durable_sqlite.config.loader import PersistenceSettings
from durable_sqlite.constants import STATUS_UNSET
from durable_sqlite.engine.factory import ContextFactory, ContextT
from durable_sqlite.observability.events import ContextEventType
from durable_sqlite.persistence.backup import (
    BackupCoordinator,
    log_pending_changes,
    log_state_change,
)
from durable_sqlite.persistence.filenames import (
    TypeFilenameRegistry,
    backup_name_for,
    resolve_filename,
)
from durable_sqlite.persistence.startup import RestoreCoordinator, StartupBarrier
from durable_sqlite.storage.cache import DirectoryCache, ExternalCache
from durable_sqlite.storage.swap import BackupApiSwap, SqliteSwap

logger = structlog.get_logger(__name__)


class PersistenceFactory(Generic[ContextT]):
    """Context factory that keeps one SQLite file durable through an external cache.

    Construction immediately starts restoring ``<file>_bak`` from ``cache``;
    every ``create_context`` call waits for that restore first. Each context
    gets its own hooks: diagnostic tracing before/after failed saves and on
    state changes, plus a backup push after every save that wrote rows.
    """

    def __init__(
        self,
        context_factory: ContextFactory[ContextT],
        cache: ExternalCache,
        swap: SqliteSwap,
        *,
        settings: PersistenceSettings | None = None,
        registry: TypeFilenameRegistry | None = None,
    ) -> None:
        self._settings = settings if settings is not None else PersistenceSettings()
        self._context_factory = context_factory
        self._cache = cache
        self._swap = swap
        self._registry = registry
        self._last_status = STATUS_UNSET
        self._initialized = False

        self._restore = RestoreCoordinator(
            context_factory,
            cache,
            swap,
            default_filename=self._settings.default_filename,
            backup_suffix=self._settings.backup_suffix,
            cache_timeout_seconds=self._settings.cache_timeout_seconds,
            registry=registry,
            on_status=self._record_status,
        )
        self._backup = BackupCoordinator(
            cache,
            swap,
            filename=lambda: self.filename,
            wait_for_startup=self.drain_startup_async,
            backup_suffix=self._settings.backup_suffix,
            cache_timeout_seconds=self._settings.cache_timeout_seconds,
            on_status=self._record_status,
        )
        self._startup = StartupBarrier(
            self._restore.restore,
            name=f"restore-{context_factory.context_type.__name__}",
        )

    @classmethod
    def from_settings(
        cls,
        context_type: type[ContextT],
        connection_string: str,
        settings: PersistenceSettings | None = None,
        *,
        registry: TypeFilenameRegistry | None = None,
    ) -> PersistenceFactory[ContextT]:
        """Wire a factory over ``DirectoryCache`` and ``BackupApiSwap`` rooted in settings."""

        resolved = settings if settings is not None else PersistenceSettings()
        local_root = Path(resolved.local_root)
        return cls(
            ContextFactory(context_type, connection_string, root=local_root),
            DirectoryCache(
                local_root,
                resolved.store_root,
                backup_suffix=resolved.backup_suffix,
            ),
            BackupApiSwap(local_root),
            settings=resolved,
            registry=registry,
        )

    @property
    def context_type(self) -> type[ContextT]:
        return self._context_factory.context_type

    @property
    def settings(self) -> PersistenceSettings:
        return self._settings

    @property
    def last_status(self) -> int:
        """Most recent cache sync status from the restore or a backup push."""

        return self._last_status

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def startup_pending(self) -> bool:
        return self._startup.pending

    @property
    def restore_runs(self) -> int:
        return self._restore.runs

    @property
    def filename(self) -> str:
        return resolve_filename(
            self._context_factory,
            default_filename=self._settings.default_filename,
            registry=self._registry,
        )

    @property
    def backup_name(self) -> str:
        return backup_name_for(self.filename, backup_suffix=self._settings.backup_suffix)

    def drain_startup(self) -> int:
        """Block until the startup restore has settled; return its status."""

        return self._startup.wait(timeout=self._settings.restore_timeout_seconds)

    async def drain_startup_async(self) -> int:
        return await self._startup.wait_async()

    def create_context(self) -> ContextT:
        self.drain_startup()
        context = self._context_factory.create_context()
        if not self._initialized:
            self._ensure_created(context)
        self._attach_hooks(context)
        return context

    async def create_context_async(self) -> ContextT:
        await self.drain_startup_async()
        context = await self._context_factory.create_context_async()
        if not self._initialized:
            try:
                created = await context.ensure_created_async()
            except Exception:
                await context.aclose()
                raise
            self._mark_initialized(created)
        self._attach_hooks(context)
        return context

    def _ensure_created(self, context: ContextT) -> None:
        try:
            created = context.ensure_created()
        except Exception:
            context.close()
            raise
        self._mark_initialized(created)

    def _mark_initialized(self, created: bool) -> None:
        self._initialized = True
        logger.info(
            "schema_ready",
            context_type=self.context_type.__name__,
            created=created,
            restore_status=self._startup.status,
        )

    def _attach_hooks(self, context: ContextT) -> None:
        events = context.events
        events.subscribe(ContextEventType.SAVING_CHANGES, log_pending_changes)
        events.subscribe(ContextEventType.SAVE_CHANGES_FAILED, log_pending_changes)
        events.subscribe(ContextEventType.SAVED_CHANGES, self._backup.on_saved_changes)
        events.subscribe(ContextEventType.STATE_CHANGED, log_state_change)

    def _record_status(self, status: int) -> None:
        self._last_status = status


__all__ = ["PersistenceFactory"]
