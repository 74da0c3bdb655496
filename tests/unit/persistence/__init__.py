"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Final

from durable_sqlite.config import PersistenceSettings
from durable_sqlite.constants import STATUS_NOT_FOUND, STATUS_OK
from durable_sqlite.engine import ContextFactory, SqliteContext
from durable_sqlite.persistence import PersistenceFactory

PEOPLE_CONNECTION_STRING: Final[str] = "Data Source=people.db;Cache=Shared"


class PeopleContext(SqliteContext):
    schema = (
        """
        CREATE TABLE IF NOT EXISTS persons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS things (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            person_id INTEGER NOT NULL REFERENCES persons(id) ON DELETE CASCADE,
            name TEXT NOT NULL
        )
        """,
    )
    tables = {"persons": "id", "things": "id"}


class BrokenSchemaContext(SqliteContext):
    schema = ("CREATE TABLE broken (",)
    tables = {}


class RecordingCache:
    """In-memory stand-in for the external cache that records every call."""

    def __init__(
        self,
        local_root: Path,
        *,
        blobs: dict[str, bytes] | None = None,
        push_status: int = STATUS_OK,
        push_error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.local_root = local_root
        self.blobs: dict[str, bytes] = dict(blobs or {})
        self.push_status = push_status
        self.push_error = push_error
        self.gate = gate
        self.sync_calls: list[str] = []
        self.push_calls: list[str] = []
        self.pushed: dict[str, bytes] = {}

    async def sync_into_local(self, name: str) -> int:
        self.sync_calls.append(name)
        if self.gate is not None:
            await self.gate.wait()
        blob = self.blobs.get(name)
        if blob is None:
            return STATUS_NOT_FOUND
        self.local_root.mkdir(parents=True, exist_ok=True)
        (self.local_root / name).write_bytes(blob)
        return STATUS_OK

    async def push_from_local(self, name: str) -> int:
        self.push_calls.append(name)
        if self.push_error is not None:
            raise self.push_error
        if self.push_status != STATUS_OK:
            return self.push_status
        self.pushed[name] = (self.local_root / name).read_bytes()
        return STATUS_OK


class CopySwap:
    """Byte-for-byte copy swap that records calls."""

    def __init__(self, local_root: Path) -> None:
        self.local_root = local_root
        self.calls: list[tuple[str, str]] = []

    def swap(self, source: str, target: str) -> None:
        self.calls.append((source, target))
        shutil.copyfile(self.local_root / source, self.local_root / target)


def make_settings(tmp_path: Path, **overrides: object) -> PersistenceSettings:
    values: dict[str, object] = {
        "local_root": tmp_path / "local",
        "store_root": tmp_path / "store",
    }
    values.update(overrides)
    return PersistenceSettings(**values)  # type: ignore[arg-type]


def make_factory(
    tmp_path: Path,
    *,
    cache: RecordingCache | None = None,
    swap: CopySwap | None = None,
    context_type: type[SqliteContext] = PeopleContext,
    connection_string: str = PEOPLE_CONNECTION_STRING,
    **settings_overrides: object,
) -> tuple[PersistenceFactory[SqliteContext], RecordingCache, CopySwap]:
    settings = make_settings(tmp_path, **settings_overrides)
    local_root = Path(settings.local_root)
    recording_cache = cache if cache is not None else RecordingCache(local_root)
    recording_swap = swap if swap is not None else CopySwap(local_root)
    factory: PersistenceFactory[SqliteContext] = PersistenceFactory(
        ContextFactory(context_type, connection_string, root=local_root),
        recording_cache,
        recording_swap,
        settings=settings,
    )
    return factory, recording_cache, recording_swap


def make_people_db(path: Path, names: tuple[str, ...]) -> bytes:
    """Build a standalone people database and return its bytes."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with PeopleContext(f"Data Source={path.name}", root=path.parent) as context:
        context.ensure_created()
        for name in names:
            context.add("persons", name=name)
        context.save_changes()
    return path.read_bytes()


__all__ = [
    "PEOPLE_CONNECTION_STRING",
    "BrokenSchemaContext",
    "CopySwap",
    "PeopleContext",
    "RecordingCache",
    "make_factory",
    "make_people_db",
    "make_settings",
]
