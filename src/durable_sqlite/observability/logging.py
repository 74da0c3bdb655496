"""Structured logging setup: structlog rendered through stdlib ``logging``."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import MutableMapping
from typing import IO, TYPE_CHECKING, Any, Final

import structlog

from durable_sqlite.constants import DEFAULT_LOGGER_NAME

if TYPE_CHECKING:
    from durable_sqlite.config import PersistenceSettings

_REDACTED_VALUE: Final[str] = "***REDACTED***"

# Connection strings may carry credentials alongside the data source.
_CONNECTION_SECRET_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(password|pwd|key)\s*=\s*([^;]*)"
)

_HANDLER_MARKER: Final[str] = "_durable_sqlite_handler"


def redact_connection_secrets(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor that masks credential pairs in string fields."""

    del logger, method_name
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and "=" in value:
            event_dict[key] = redact_text(value)
    return event_dict


def redact_text(text: str) -> str:
    return _CONNECTION_SECRET_PATTERN.sub(
        lambda match: f"{match.group(1)}={_REDACTED_VALUE}", text
    )


def setup_logging(
    level: int | str = "INFO",
    *,
    json_lines: bool = True,
    stream: IO[str] | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> logging.Logger:
    """Configure structlog and a single stdlib handler for ``logger_name``.

    Parameters
    ----------
    level:
        Stdlib level name or number applied to the package logger.
    json_lines:
        Render one canonical JSON object per line; otherwise key/value console output.
    stream:
        Output stream, ``sys.stderr`` by default.
    logger_name:
        Root logger name for the package.
    """

    resolved_level = _parse_log_level(level)
    shared_processors: list[Any] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_connection_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: Any = (
        structlog.processors.JSONRenderer(sort_keys=True)
        if json_lines
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(resolved_level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )
    setattr(handler, _HANDLER_MARKER, True)

    logger = logging.getLogger(logger_name)
    logger.setLevel(resolved_level)
    logger.propagate = False
    for existing in list(logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            logger.removeHandler(existing)
            existing.close()
    logger.addHandler(handler)
    return logger


def configure_logging(
    settings: PersistenceSettings,
    *,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Apply the ``log_level`` and ``log_json`` fields of ``settings``."""

    return setup_logging(settings.log_level, json_lines=settings.log_json, stream=stream)


def shutdown_logging(logger_name: str = DEFAULT_LOGGER_NAME) -> None:
    """Detach handlers installed by ``setup_logging`` and restore structlog defaults."""

    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            existing.flush()
            logger.removeHandler(existing)
            existing.close()
    logger.propagate = True
    structlog.reset_defaults()


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value

    if not isinstance(value, str):
        raise ValueError(f"level must be int or str, got {type(value).__name__}")

    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed

    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "configure_logging",
    "redact_connection_secrets",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
]
