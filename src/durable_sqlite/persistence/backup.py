"""Post-save backup pushes and diagnostic save hooks."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Awaitable, Callable

import structlog

from durable_sqlite.constants import (
    ARTIFACT_SEPARATOR,
    ARTIFACT_SUFFIX_HEX_CHARS,
    BACKUP_SUFFIX,
    STATUS_ERROR,
    STATUS_OK,
)
from durable_sqlite.observability.events import ContextEvent
from durable_sqlite.storage.cache import ExternalCache, call_with_timeout
from durable_sqlite.storage.swap import SqliteSwap

logger = structlog.get_logger(__name__)


def make_backup_artifact_name(filename: str, *, backup_suffix: str = BACKUP_SUFFIX) -> str:
    """Return a fresh ``<filename><suffix>-<8 hex chars>`` artifact name."""

    token = secrets.token_hex(ARTIFACT_SUFFIX_HEX_CHARS // 2)
    return f"{filename}{backup_suffix}{ARTIFACT_SEPARATOR}{token}"


class BackupCoordinator:
    """Snapshot the live database after committing saves and push it to the cache."""

    def __init__(
        self,
        cache: ExternalCache,
        swap: SqliteSwap,
        *,
        filename: Callable[[], str],
        wait_for_startup: Callable[[], Awaitable[int]],
        backup_suffix: str = BACKUP_SUFFIX,
        cache_timeout_seconds: float | None = None,
        on_status: Callable[[int], None] | None = None,
    ) -> None:
        self._cache = cache
        self._swap = swap
        self._filename = filename
        self._wait_for_startup = wait_for_startup
        self._backup_suffix = backup_suffix
        self._cache_timeout_seconds = cache_timeout_seconds
        self._on_status = on_status

    async def on_saved_changes(self, event: ContextEvent) -> int | None:
        """After-save hook: close the live handle, then back up if rows were saved."""

        close_connection = getattr(event.source, "close_connection_async", None)
        if callable(close_connection):
            await close_connection()
        await self._wait_for_startup()

        entities_saved = int(event.payload.get("entities_saved", 0) or 0)
        if entities_saved <= 0:
            logger.debug("backup_skipped", entities_saved=entities_saved)
            return None

        status = await self.backup()
        logger.info("saved_changes", entities_saved=entities_saved, backup_status=status)
        return status

    async def backup(self) -> int:
        """Copy the live file to a fresh artifact and push it; never raises."""

        filename = self._filename()
        artifact = make_backup_artifact_name(filename, backup_suffix=self._backup_suffix)
        log = logger.bind(filename=filename, artifact=artifact)
        try:
            await asyncio.to_thread(self._swap.swap, filename, artifact)
            status = await call_with_timeout(
                self._cache.push_from_local(artifact),
                self._cache_timeout_seconds,
                operation=f"push of {artifact}",
            )
        except Exception as exc:  # noqa: BLE001
            log.warning(
                "backup_failed",
                error_type=exc.__class__.__name__,
                message=str(exc),
            )
            status = STATUS_ERROR
        else:
            if status == STATUS_OK:
                log.info("backup_pushed")
            else:
                log.warning("backup_push_rejected", status=status)

        if self._on_status is not None:
            self._on_status(status)
        return status


def log_pending_changes(event: ContextEvent) -> None:
    """Before-save and save-failed hook: trace each pending entry's value diff."""

    tracker = getattr(event.source, "change_tracker", None)
    if tracker is None:
        return
    pending = tracker.pending()
    log = logger.bind(context=type(event.source).__name__, hook=event.event_type.value)
    error = event.payload.get("error")
    if error is not None:
        log.debug("save_failed_pending", pending=len(pending), error=str(error))
    else:
        log.debug("saving_pending", pending=len(pending))
    for entry in pending:
        log.debug("pending_entity", view=entry.long_view())


def log_state_change(event: ContextEvent) -> None:
    entry = event.payload.get("entry")
    logger.debug(
        "entity_state_changed",
        context=type(event.source).__name__,
        table=getattr(entry, "table", None),
        key=getattr(entry, "key", None),
        old_state=event.payload.get("old_state"),
        new_state=event.payload.get("new_state"),
    )


__all__ = [
    "BackupCoordinator",
    "log_pending_changes",
    "log_state_change",
    "make_backup_artifact_name",
]
