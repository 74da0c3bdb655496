"""Public observability primitives: context lifecycle events and structured logging."""

from durable_sqlite.observability.events import (
    ContextEvent,
    ContextEventBus,
    ContextEventType,
    DispatchError,
    Subscriber,
)
from durable_sqlite.observability.logging import (
    configure_logging,
    redact_connection_secrets,
    redact_text,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "ContextEvent",
    "ContextEventBus",
    "ContextEventType",
    "DispatchError",
    "Subscriber",
    "configure_logging",
    "redact_connection_secrets",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
]
