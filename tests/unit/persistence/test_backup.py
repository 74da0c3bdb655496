"""
durable-sqlite — unit tests for post-save backups

File: tests/unit/persistence/test_backup.py

Purpose
- Validate that committing saves push a fresh backup artifact and that backup
  failures never reach the caller of ``save_changes``.

What this test file should cover
- No push for saves that wrote nothing.
- Artifact naming and uniqueness.
- Rejected and raising pushes are isolated; later saves still back up.
- Diagnostic hooks trace pending entries before saves and after failures.

Functional requirements
- Offline operation with in-memory cache doubles.
"""

from __future__ import annotations

import re
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from durable_sqlite.constants import STATUS_ERROR, STATUS_OK
from durable_sqlite.engine import ContextError
from durable_sqlite.persistence import make_backup_artifact_name
from durable_sqlite.storage import CacheError
from tests.unit.persistence import RecordingCache, make_factory

try:
    from hypothesis import given
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True

ARTIFACT_PATTERN = re.compile(r"^people\.db_bak-[0-9a-f]{8}$")


def test_save_without_changes_does_not_push(tmp_path: Path) -> None:
    factory, cache, swap = make_factory(tmp_path)

    with factory.create_context() as context:
        assert context.save_changes() == 0
        assert not context.has_open_connection

    assert cache.push_calls == []
    assert swap.calls == []


async def test_async_save_without_changes_does_not_push(tmp_path: Path) -> None:
    factory, cache, _ = make_factory(tmp_path)

    context = await factory.create_context_async()
    try:
        assert await context.save_changes_async() == 0
    finally:
        await context.aclose()

    assert cache.push_calls == []


def test_committing_save_pushes_fresh_artifact(tmp_path: Path) -> None:
    factory, cache, swap = make_factory(tmp_path)

    with factory.create_context() as context:
        context.add("persons", name="Ada")
        assert context.save_changes() == 1
        assert not context.has_open_connection

    assert len(cache.push_calls) == 1
    artifact = cache.push_calls[0]
    assert ARTIFACT_PATTERN.match(artifact)
    assert swap.calls == [("people.db", artifact)]
    assert cache.pushed[artifact] == (tmp_path / "local" / artifact).read_bytes()
    assert factory.last_status == STATUS_OK


async def test_async_saves_push_distinct_artifacts(tmp_path: Path) -> None:
    factory, cache, _ = make_factory(tmp_path)

    context = await factory.create_context_async()
    try:
        context.add("persons", name="Ada")
        assert await context.save_changes_async() == 1
        context.add("persons", name="Grace")
        assert await context.save_changes_async() == 1
    finally:
        await context.aclose()

    assert len(cache.push_calls) == 2
    assert len(set(cache.push_calls)) == 2
    assert all(ARTIFACT_PATTERN.match(name) for name in cache.push_calls)


def test_pushed_artifact_restores_saved_rows(tmp_path: Path) -> None:
    factory, cache, _ = make_factory(tmp_path)

    with factory.create_context() as context:
        context.add("persons", name="Ada")
        context.save_changes()

    artifact = cache.push_calls[0]
    restored = tmp_path / "restored" / "people.db"
    restored.parent.mkdir(parents=True)
    restored.write_bytes(cache.pushed[artifact])

    assert restored.stat().st_size > 0
    with factory.context_type(f"Data Source={restored.name}", root=restored.parent) as copy:
        assert [entry["name"] for entry in copy.all("persons")] == ["Ada"]


def test_rejected_push_is_isolated_and_later_saves_still_push(tmp_path: Path) -> None:
    cache = RecordingCache(tmp_path / "local", push_status=7)
    factory, _, _ = make_factory(tmp_path, cache=cache)

    with factory.create_context() as context:
        context.add("persons", name="Ada")
        assert context.save_changes() == 1
        assert factory.last_status == 7

        cache.push_status = STATUS_OK
        context.add("persons", name="Grace")
        assert context.save_changes() == 1
        assert [entry["name"] for entry in context.all("persons")] == ["Ada", "Grace"]

    assert len(cache.push_calls) == 2
    assert factory.last_status == STATUS_OK


def test_raising_push_is_isolated(tmp_path: Path) -> None:
    cache = RecordingCache(tmp_path / "local", push_error=CacheError("store offline"))
    factory, _, _ = make_factory(tmp_path, cache=cache)

    with capture_logs() as logs, factory.create_context() as context:
        context.add("persons", name="Ada")
        assert context.save_changes() == 1
        assert context.events.dispatch_errors() == ()

    assert factory.last_status == STATUS_ERROR
    failures = [entry for entry in logs if entry["event"] == "backup_failed"]
    assert failures and failures[0]["error_type"] == "CacheError"


def test_failed_save_does_not_push_and_traces_pending(tmp_path: Path) -> None:
    factory, cache, _ = make_factory(tmp_path)

    with capture_logs() as logs, factory.create_context() as context:
        context.add("things", person_id=404, name="orphan")
        with pytest.raises(ContextError):
            context.save_changes()
        assert context.change_tracker.has_changes()

    assert cache.push_calls == []
    events = [entry["event"] for entry in logs]
    assert "saving_pending" in events
    assert "save_failed_pending" in events
    views = [entry["view"] for entry in logs if entry["event"] == "pending_entity"]
    assert views and views[0].startswith("things {id: None} added")


def test_pending_modifications_are_traced_with_originals(tmp_path: Path) -> None:
    factory, _, _ = make_factory(tmp_path)

    with factory.create_context() as context:
        context.add("persons", name="Ada")
        context.save_changes()
        entry = context.find("persons", 1)
        assert entry is not None
        context.update(entry, name="Ada Lovelace")

        with capture_logs() as logs:
            context.save_changes()

    views = [item["view"] for item in logs if item["event"] == "pending_entity"]
    assert views == [
        "persons {id: 1} modified\n"
        "  name: 'Ada Lovelace' modified, originally 'Ada'\n"
        "  id: 1 PK"
    ]
    transitions = [
        (item["old_state"], item["new_state"])
        for item in logs
        if item["event"] == "entity_state_changed"
    ]
    assert transitions == [("modified", "unchanged")]


def test_artifact_name_shape() -> None:
    name = make_backup_artifact_name("people.db")

    assert ARTIFACT_PATTERN.match(name)
    assert make_backup_artifact_name("x", backup_suffix=".snap").startswith("x.snap-")


def test_artifact_names_are_unique_within_a_run() -> None:
    names = {make_backup_artifact_name("people.db") for _ in range(500)}

    assert len(names) == 500


if _HYPOTHESIS_AVAILABLE:

    @given(filename=st.text(alphabet="abcdefghijklmnopqrstuvwxyz._", min_size=1, max_size=30))
    def test_property_artifact_name_keeps_filename_prefix(filename: str) -> None:
        name = make_backup_artifact_name(filename)
        prefix, _, token = name.rpartition("-")
        assert prefix == f"{filename}_bak"
        assert re.fullmatch(r"[0-9a-f]{8}", token)

else:

    def test_property_artifact_name_keeps_filename_prefix() -> None:
        pytest.skip("hypothesis is not installed")
