"""
durable-sqlite — SQLite database context with change tracking.

File: src/durable_sqlite/engine/context.py

Purpose
- Unit-of-work context over one SQLite file: tracked entity entries, batched
  saves, idempotent schema creation, and lifecycle events.

What should be included in this file
- ``EntityState`` lifecycle and ``EntityEntry`` value snapshots with diffs.
- ``ChangeTracker`` identity map publishing state-change events.
- ``SqliteContext`` with sync and ``*_async`` twins for blocking I/O.

Functional requirements
- A failed save rolls back every statement of the batch and leaves entries pending.
- ``ensure_created`` is idempotent, including under concurrent first use.
- Closing the live connection never discards tracked entries.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from enum import StrEnum
from pathlib import Path
from typing import Any, ClassVar, Final

from durable_sqlite.constants import DEFAULT_FILENAME
from durable_sqlite.engine.connection_string import find_data_source
from durable_sqlite.observability.events import ContextEventBus, ContextEventType

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

SQLValue = str | int | float | bytes | None


class ContextError(RuntimeError):
    """Base class for engine context failures."""


class EntityStateError(ContextError):
    """Raised when an entry is used in a state that does not allow the operation."""


class EntityState(StrEnum):
    """Tracking state of an entity entry."""

    DETACHED = "detached"
    UNCHANGED = "unchanged"
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class EntityEntry:
    """Tracked row: original snapshot, current values, and tracking state."""

    __slots__ = ("_current", "_original", "_state", "key_column", "table")

    def __init__(
        self,
        table: str,
        key_column: str,
        values: Mapping[str, SQLValue],
        state: EntityState,
    ) -> None:
        self.table = table
        self.key_column = key_column
        self._current: dict[str, SQLValue] = dict(values)
        self._original: dict[str, SQLValue] = (
            {} if state is EntityState.ADDED else dict(values)
        )
        self._state = state

    @property
    def state(self) -> EntityState:
        return self._state

    @property
    def key(self) -> SQLValue:
        return self._current.get(self.key_column)

    @property
    def values(self) -> dict[str, SQLValue]:
        return dict(self._current)

    @property
    def original_values(self) -> dict[str, SQLValue]:
        return dict(self._original)

    def __getitem__(self, column: str) -> SQLValue:
        return self._current[column]

    def changed_columns(self) -> tuple[str, ...]:
        if self._state is EntityState.ADDED:
            return tuple(self._current)
        return tuple(
            column
            for column, value in self._current.items()
            if column not in self._original or self._original[column] != value
        )

    def long_view(self) -> str:
        """Multi-line debug rendering of the entry and its pending value diff."""

        lines = [f"{self.table} {{{self.key_column}: {self.key!r}}} {self._state.value}"]
        changed = set(self.changed_columns())
        for column, value in self._current.items():
            line = f"  {column}: {value!r}"
            if column == self.key_column:
                line += " PK"
            elif column in changed and self._state is EntityState.MODIFIED:
                line += f" modified, originally {self._original.get(column)!r}"
            lines.append(line)
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"EntityEntry(table={self.table!r}, key={self.key!r}, state={self._state.value!r})"


class ChangeTracker:
    """Identity map of tracked entries for one context."""

    def __init__(self, owner: SqliteContext, events: ContextEventBus) -> None:
        self._owner = owner
        self._events = events
        self._entries: list[EntityEntry] = []

    def entries(self) -> tuple[EntityEntry, ...]:
        return tuple(self._entries)

    def pending(self) -> tuple[EntityEntry, ...]:
        """Entries whose state is neither unchanged nor detached."""

        return tuple(
            entry
            for entry in self._entries
            if entry.state not in (EntityState.UNCHANGED, EntityState.DETACHED)
        )

    def has_changes(self) -> bool:
        return bool(self.pending())

    def lookup(self, table: str, key: SQLValue) -> EntityEntry | None:
        if key is None:
            return None
        for entry in self._entries:
            if entry.table == table and entry.key == key:
                return entry
        return None

    def track(self, entry: EntityEntry) -> EntityEntry:
        self._entries.append(entry)
        self._events.emit(
            ContextEventType.STATE_CHANGED,
            self._owner,
            entry=entry,
            old_state=EntityState.DETACHED.value,
            new_state=entry.state.value,
        )
        return entry

    def transition(self, entry: EntityEntry, new_state: EntityState) -> None:
        old_state = entry.state
        if old_state is new_state:
            return
        entry._state = new_state
        if new_state is EntityState.DETACHED:
            self._entries = [item for item in self._entries if item is not entry]
        elif new_state is EntityState.UNCHANGED:
            entry._original = dict(entry._current)
        self._events.emit(
            ContextEventType.STATE_CHANGED,
            self._owner,
            entry=entry,
            old_state=old_state.value,
            new_state=new_state.value,
        )

    def clear(self) -> None:
        for entry in tuple(self._entries):
            entry._state = EntityState.DETACHED
        self._entries = []


class SqliteContext:
    """Unit-of-work context over a SQLite file named by a connection string.

    Subclasses declare ``schema`` (DDL statements run by ``ensure_created``) and
    ``tables`` (table name -> primary-key column).
    """

    schema: ClassVar[tuple[str, ...]] = ()
    tables: ClassVar[Mapping[str, str]] = {}

    def __init__(
        self,
        connection_string: str,
        *,
        root: str | Path = ".",
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._connection_string = connection_string
        self._path = Path(root).expanduser() / (
            find_data_source(connection_string) or DEFAULT_FILENAME
        )
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self.events = ContextEventBus()
        self.change_tracker = ChangeTracker(self, self.events)

    @property
    def connection_string(self) -> str:
        return self._connection_string

    @property
    def path(self) -> Path:
        return self._path

    @property
    def has_open_connection(self) -> bool:
        return self._conn is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    # -- schema -----------------------------------------------------------

    def ensure_created(self) -> bool:
        """Create the schema when the database has no tables; True when created."""

        with self._guard("ensure_created") as conn:
            if self._table_count(conn) > 0:
                return False
            conn.execute("BEGIN IMMEDIATE")
            try:
                # Re-check under the write lock; a concurrent caller may have won.
                if self._table_count(conn) > 0:
                    conn.execute("ROLLBACK")
                    return False
                for statement in self.schema:
                    conn.execute(statement)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return True

    async def ensure_created_async(self) -> bool:
        return await asyncio.to_thread(self.ensure_created)

    # -- tracking ---------------------------------------------------------

    def add(
        self,
        table: str,
        values: Mapping[str, SQLValue] | None = None,
        **columns: SQLValue,
    ) -> EntityEntry:
        key_column = self._key_column(table)
        merged = {**dict(values or {}), **columns}
        if not merged:
            raise EntityStateError(f"cannot add an empty row to {table!r}")
        existing = self.change_tracker.lookup(table, merged.get(key_column))
        if existing is not None:
            raise EntityStateError(f"{table} key {existing.key!r} is already tracked")
        return self.change_tracker.track(
            EntityEntry(table, key_column, merged, EntityState.ADDED)
        )

    def attach(self, table: str, values: Mapping[str, SQLValue]) -> EntityEntry:
        key_column = self._key_column(table)
        if values.get(key_column) is None:
            raise EntityStateError(f"attach requires a {key_column!r} value for {table!r}")
        existing = self.change_tracker.lookup(table, values[key_column])
        if existing is not None:
            return existing
        return self.change_tracker.track(
            EntityEntry(table, key_column, values, EntityState.UNCHANGED)
        )

    def update(self, entry: EntityEntry, **changes: SQLValue) -> EntityEntry:
        if entry.state in (EntityState.DETACHED, EntityState.DELETED):
            raise EntityStateError(f"cannot update a {entry.state.value} entry: {entry!r}")
        if entry.key_column in changes and changes[entry.key_column] != entry.key:
            if entry.state is not EntityState.ADDED:
                raise EntityStateError("primary key of a persisted entry cannot change")
        entry._current.update(changes)
        if entry.state is EntityState.UNCHANGED and entry.changed_columns():
            self.change_tracker.transition(entry, EntityState.MODIFIED)
        elif entry.state is EntityState.MODIFIED and not entry.changed_columns():
            self.change_tracker.transition(entry, EntityState.UNCHANGED)
        return entry

    def remove(self, entry: EntityEntry) -> EntityEntry:
        if entry.state is EntityState.DETACHED:
            raise EntityStateError(f"cannot remove a detached entry: {entry!r}")
        if entry.state is EntityState.ADDED:
            self.change_tracker.transition(entry, EntityState.DETACHED)
        else:
            self.change_tracker.transition(entry, EntityState.DELETED)
        return entry

    def find(self, table: str, key: SQLValue) -> EntityEntry | None:
        key_column = self._key_column(table)
        tracked = self.change_tracker.lookup(table, key)
        if tracked is not None:
            return tracked
        rows = self.query(
            f"SELECT * FROM {_quote(table)} WHERE {_quote(key_column)} = ?",
            (key,),
        )
        if not rows:
            return None
        return self.attach(table, rows[0])

    def all(self, table: str) -> list[EntityEntry]:
        key_column = self._key_column(table)
        rows = self.query(f"SELECT * FROM {_quote(table)} ORDER BY {_quote(key_column)}")
        return [self.attach(table, row) for row in rows]

    def query(self, sql: str, params: tuple[SQLValue, ...] = ()) -> list[dict[str, Any]]:
        """Run a read query and return plain row dictionaries (untracked)."""

        with self._guard("query") as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    async def query_async(
        self, sql: str, params: tuple[SQLValue, ...] = ()
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.query, sql, params)

    # -- saving -----------------------------------------------------------

    def save_changes(self) -> int:
        """Persist all pending entries in one transaction; return the entry count."""

        pending = self.change_tracker.pending()
        self.events.emit(ContextEventType.SAVING_CHANGES, self, pending=len(pending))
        try:
            generated = self._apply_changes(pending)
        except Exception as exc:
            self.events.emit(ContextEventType.SAVE_CHANGES_FAILED, self, error=exc)
            raise
        self._accept_changes(pending, generated)
        self.events.emit(ContextEventType.SAVED_CHANGES, self, entities_saved=len(pending))
        return len(pending)

    async def save_changes_async(self) -> int:
        pending = self.change_tracker.pending()
        await self.events.emit_async(ContextEventType.SAVING_CHANGES, self, pending=len(pending))
        try:
            generated = await asyncio.to_thread(self._apply_changes, pending)
        except Exception as exc:
            await self.events.emit_async(ContextEventType.SAVE_CHANGES_FAILED, self, error=exc)
            raise
        self._accept_changes(pending, generated)
        await self.events.emit_async(
            ContextEventType.SAVED_CHANGES, self, entities_saved=len(pending)
        )
        return len(pending)

    # -- connection lifecycle --------------------------------------------

    def close_connection(self) -> None:
        """Close the live handle only; the next operation reopens it."""

        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    async def close_connection_async(self) -> None:
        await asyncio.to_thread(self.close_connection)

    def close(self) -> None:
        self.close_connection()
        self.change_tracker.clear()
        self._closed = True

    async def aclose(self) -> None:
        await asyncio.to_thread(self.close)

    def __enter__(self) -> SqliteContext:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    async def __aenter__(self) -> SqliteContext:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        await self.aclose()

    # -- internals --------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise ContextError(f"context for {self._path} is closed")
        if self._conn is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            # Default rollback journal: committed pages live in the main file only.
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            self._conn = conn
        return self._conn

    @contextmanager
    def _guard(self, operation: str) -> Iterator[sqlite3.Connection]:
        try:
            yield self._connection()
        except sqlite3.Error as exc:
            raise ContextError(f"{operation} failed for {self._path}: {exc}") from exc

    def _apply_changes(self, pending: tuple[EntityEntry, ...]) -> dict[int, int]:
        generated: dict[int, int] = {}
        if not pending:
            return generated
        with self._guard("save_changes") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for entry in pending:
                    rowid = self._apply_entry(conn, entry)
                    if rowid is not None:
                        generated[id(entry)] = rowid
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return generated

    def _apply_entry(self, conn: sqlite3.Connection, entry: EntityEntry) -> int | None:
        table = _quote(entry.table)
        key_column = _quote(entry.key_column)
        if entry.state is EntityState.ADDED:
            columns = [name for name, value in entry._current.items() if value is not None]
            placeholders = ", ".join("?" for _ in columns)
            cursor = conn.execute(
                f"INSERT INTO {table} ({', '.join(_quote(name) for name in columns)}) "
                f"VALUES ({placeholders})",
                tuple(entry._current[name] for name in columns),
            )
            return cursor.lastrowid if entry.key is None else None
        if entry.state is EntityState.MODIFIED:
            changed = entry.changed_columns()
            assignments = ", ".join(f"{_quote(name)} = ?" for name in changed)
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {key_column} = ?",
                (*(entry._current[name] for name in changed), entry._original[entry.key_column]),
            )
            return None
        if entry.state is EntityState.DELETED:
            conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", (entry.key,))
        return None

    def _accept_changes(self, pending: tuple[EntityEntry, ...], generated: dict[int, int]) -> None:
        for entry in pending:
            if id(entry) in generated:
                entry._current[entry.key_column] = generated[id(entry)]
            if entry.state is EntityState.DELETED:
                self.change_tracker.transition(entry, EntityState.DETACHED)
            else:
                self.change_tracker.transition(entry, EntityState.UNCHANGED)

    def _key_column(self, table: str) -> str:
        try:
            return self.tables[table]
        except KeyError as exc:
            known = ", ".join(sorted(self.tables)) or "<none>"
            raise ContextError(f"unknown table {table!r}; known tables: {known}") from exc

    def _table_count(self, conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}(path={self._path.as_posix()!r})"


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "ChangeTracker",
    "ContextError",
    "EntityEntry",
    "EntityState",
    "EntityStateError",
    "SQLValue",
    "SqliteContext",
]
