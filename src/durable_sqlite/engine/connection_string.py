"""Connection-string parsing shared by the engine and the filename resolver."""

from __future__ import annotations

from durable_sqlite.constants import FILENAME_KEY_MARKERS


def parse_connection_string(text: str | None) -> tuple[tuple[str, str], ...]:
    """Split ``key=value;key=value`` into ordered ``(lowercased key, value)`` pairs.

    Segments without ``=`` are skipped; values keep any further ``=`` characters.
    """

    if not text:
        return ()
    pairs: list[tuple[str, str]] = []
    for segment in text.split(";"):
        key, separator, value = segment.partition("=")
        if not separator:
            continue
        pairs.append((key.strip().lower(), value.strip()))
    return tuple(pairs)


def find_data_source(text: str | None) -> str | None:
    """Return the first non-empty value whose key names the database file."""

    for key, value in parse_connection_string(text):
        if value and any(marker in key for marker in FILENAME_KEY_MARKERS):
            return value
    return None


__all__ = ["find_data_source", "parse_connection_string"]
