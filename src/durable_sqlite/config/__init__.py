"""Settings loading and validation for durable-sqlite."""

from durable_sqlite.config.loader import ConfigLoadError, PersistenceSettings, load_settings

__all__ = [
    "ConfigLoadError",
    "PersistenceSettings",
    "load_settings",
]
