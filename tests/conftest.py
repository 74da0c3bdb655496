from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog

from durable_sqlite.persistence import reset_filename_registry


@pytest.fixture(autouse=True)
def _isolate_process_state() -> Iterator[None]:
    reset_filename_registry()
    yield
    reset_filename_registry()
    structlog.reset_defaults()
