"""
durable-sqlite — restore coordination and the single-flight startup barrier.

File: src/durable_sqlite/persistence/startup.py

Purpose
- Pull the last backup out of the external cache and install it as the live
  database file before any context touches it.

What should be included in this file
- ``RestoreCoordinator``: resolve filename, sync ``<file>_bak``, swap into place.
- ``StartupBarrier``: one-shot ticket launched at construction, awaited by many,
  cleared by the first caller to observe completion.

Functional requirements
- The restore runs exactly once per barrier; every waiter sees the same outcome.
- A non-zero sync status is not an error: the engine starts from an empty file.
- Blocking waits never stall an event loop that the restore itself needs.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from durable_sqlite.constants import BACKUP_SUFFIX, DEFAULT_FILENAME, STATUS_OK, STATUS_UNSET
from durable_sqlite.persistence.filenames import (
    ContextSource,
    TypeFilenameRegistry,
    backup_name_for,
    resolve_filename,
)
from durable_sqlite.storage.cache import ExternalCache, call_with_timeout
from durable_sqlite.storage.swap import SqliteSwap

RestoreOperation = Callable[[], Coroutine[Any, Any, int]]
_PendingRestore = asyncio.Future[int] | concurrent.futures.Future[int]

logger = structlog.get_logger(__name__)


class PersistenceError(RuntimeError):
    """Base class for persistence-factory failures."""


class StartupPendingError(PersistenceError):
    """Raised when a blocking caller cannot wait for the restore to finish."""


class RestoreCoordinator:
    """Restore ``<filename>_bak`` from the cache and install it as ``<filename>``."""

    def __init__(
        self,
        source: ContextSource,
        cache: ExternalCache,
        swap: SqliteSwap,
        *,
        default_filename: str = DEFAULT_FILENAME,
        backup_suffix: str = BACKUP_SUFFIX,
        cache_timeout_seconds: float | None = None,
        registry: TypeFilenameRegistry | None = None,
        on_status: Callable[[int], None] | None = None,
    ) -> None:
        self._source = source
        self._cache = cache
        self._swap = swap
        self._default_filename = default_filename
        self._backup_suffix = backup_suffix
        self._cache_timeout_seconds = cache_timeout_seconds
        self._registry = registry
        self._on_status = on_status
        self._runs = 0

    @property
    def runs(self) -> int:
        return self._runs

    async def restore(self) -> int:
        self._runs += 1
        filename = resolve_filename(
            self._source,
            default_filename=self._default_filename,
            registry=self._registry,
        )
        backup_name = backup_name_for(filename, backup_suffix=self._backup_suffix)
        log = logger.bind(filename=filename, backup_name=backup_name)
        log.info("restore_started")

        status = await call_with_timeout(
            self._cache.sync_into_local(backup_name),
            self._cache_timeout_seconds,
            operation=f"restore of {backup_name}",
        )
        if self._on_status is not None:
            self._on_status(status)

        if status != STATUS_OK:
            log.info("restore_skipped", status=status)
            return status

        await asyncio.to_thread(self._swap.swap, backup_name, filename)
        log.info("restore_completed", status=status)
        return status


class StartupBarrier:
    """Single-use restore ticket shared by every caller that needs a ready database.

    The operation starts immediately: as a task on the running loop, or on a
    one-shot worker thread when no loop is running.
    """

    def __init__(self, operation: RestoreOperation, *, name: str = "restore") -> None:
        self._name = name
        self._lock = threading.Lock()
        self._status = STATUS_UNSET
        self._pending: _PendingRestore | None = self._launch(operation)

    @property
    def status(self) -> int:
        return self._status

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def done(self) -> bool:
        pending = self._pending
        return pending is None or pending.done()

    async def wait_async(self) -> int:
        """Wait for the restore; the first caller to see it finish clears the ticket."""

        pending = self._pending
        if pending is None:
            return self._status

        try:
            if isinstance(pending, asyncio.Future):
                if pending.done():
                    status = pending.result()
                elif pending.get_loop() is not asyncio.get_running_loop():
                    raise StartupPendingError(
                        f"{self._name} is running on another event loop and has not finished"
                    )
                else:
                    status = await asyncio.shield(pending)
            else:
                status = await asyncio.shield(asyncio.wrap_future(pending))
        except StartupPendingError:
            raise
        except Exception:
            self._consume(pending, None)
            raise
        return self._consume(pending, status)

    def wait(self, timeout: float | None = None) -> int:
        """Blocking variant of ``wait_async``."""

        pending = self._pending
        if pending is None:
            return self._status

        if isinstance(pending, asyncio.Future):
            if not pending.done():
                raise StartupPendingError(
                    f"{self._name} is still running on the event loop; "
                    "use the async API from coroutines"
                )
            try:
                status = pending.result()
            except Exception:
                self._consume(pending, None)
                raise
            return self._consume(pending, status)

        try:
            status = pending.result(timeout=timeout)
        except Exception as exc:
            # A restore that itself timed out is done; only a wait timeout leaves it running.
            if not pending.done():
                raise StartupPendingError(
                    f"{self._name} did not finish within {timeout}s"
                ) from exc
            self._consume(pending, None)
            raise
        return self._consume(pending, status)

    def _consume(self, pending: _PendingRestore, status: int | None) -> int:
        with self._lock:
            if self._pending is pending:
                self._pending = None
                if status is not None:
                    self._status = status
            return self._status

    def _launch(self, operation: RestoreOperation) -> _PendingRestore:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        pending: _PendingRestore
        if loop is not None:
            pending = loop.create_task(operation(), name=f"durable-sqlite-{self._name}")
        else:
            executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=f"durable-sqlite-{self._name}",
            )
            try:
                pending = executor.submit(asyncio.run, operation())
            finally:
                executor.shutdown(wait=False)
        pending.add_done_callback(self._log_outcome)
        return pending

    def _log_outcome(self, pending: _PendingRestore) -> None:
        if pending.cancelled():
            logger.warning("startup_cancelled", barrier=self._name)
            return
        exc = pending.exception()
        if exc is not None:
            logger.error(
                "startup_failed",
                barrier=self._name,
                error_type=exc.__class__.__name__,
                message=str(exc),
            )


__all__ = [
    "PersistenceError",
    "RestoreCoordinator",
    "RestoreOperation",
    "StartupBarrier",
    "StartupPendingError",
]
