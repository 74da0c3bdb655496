"""Storage collaborators: the external durable cache and the local swap utility."""

from durable_sqlite.storage.cache import (
    CacheError,
    CacheTimeoutError,
    DirectoryCache,
    ExternalCache,
    call_with_timeout,
    canonical_cache_key,
)
from durable_sqlite.storage.swap import BackupApiSwap, SqliteSwap, SwapError

__all__ = [
    "BackupApiSwap",
    "CacheError",
    "CacheTimeoutError",
    "DirectoryCache",
    "ExternalCache",
    "SqliteSwap",
    "SwapError",
    "call_with_timeout",
    "canonical_cache_key",
]
