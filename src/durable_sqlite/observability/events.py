"""Per-context lifecycle event bus with sync+async subscribers and error capture."""

from __future__ import annotations

import asyncio
import inspect
import threading
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final, cast

import structlog

_DEFAULT_ERROR_BUFFER: Final[int] = 256

logger = structlog.get_logger(__name__)


class ContextEventType(StrEnum):
    """Lifecycle notifications raised by a database context."""

    SAVING_CHANGES = "saving_changes"
    SAVE_CHANGES_FAILED = "save_changes_failed"
    SAVED_CHANGES = "saved_changes"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True, slots=True)
class ContextEvent:
    """One lifecycle notification; ``source`` is the context that raised it."""

    event_type: ContextEventType
    source: object
    payload: Mapping[str, object] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


Subscriber = Callable[[ContextEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the publisher."""

    event_id: str
    event_type: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: ContextEventType | None
    callback: Subscriber


class ContextEventBus:
    """Resilient fan-out of context lifecycle events.

    Subscriber exceptions never reach the publisher: they are recorded as
    ``DispatchError`` entries and logged. Awaitables returned by subscribers are
    awaited by ``publish_async``; from ``publish`` they run inline when no event
    loop is running, otherwise they are scheduled and tracked until
    ``drain_async``.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[int, _Subscription] = {}
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(self, event_type: ContextEventType | str | None, callback: Subscriber) -> int:
        """Subscribe ``callback`` to one event type, or to all when ``event_type`` is None."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = None if event_type is None else _as_event_type(event_type)

        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token,
                event_type=normalized,
                callback=callback,
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        """Unsubscribe callback token. Returns ``True`` when token existed."""

        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ContextEvent) -> tuple[DispatchError, ...]:
        """Publish an event from synchronous code."""

        running_loop = _current_running_loop()
        errors: list[DispatchError] = []
        for subscription in self._matching(event):
            error = self._invoke_callback(subscription.callback, event, running_loop)
            if error is not None:
                errors.append(error)
        self._record(errors)
        return tuple(errors)

    async def publish_async(self, event: ContextEvent) -> tuple[DispatchError, ...]:
        """Publish an event from async code and await async subscribers."""

        errors: list[DispatchError] = []
        for subscription in self._matching(event):
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await _as_coroutine(result)
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._record(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: ContextEventType,
        source: object,
        **payload: object,
    ) -> tuple[DispatchError, ...]:
        return self.publish(ContextEvent(event_type=event_type, source=source, payload=payload))

    async def emit_async(
        self,
        event_type: ContextEventType,
        source: object,
        **payload: object,
    ) -> tuple[DispatchError, ...]:
        return await self.publish_async(
            ContextEvent(event_type=event_type, source=source, payload=payload)
        )

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Await subscriber tasks scheduled by synchronous ``publish`` calls."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
            self._pending_async_tasks.clear()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        with self._lock:
            return tuple(self._dispatch_errors)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        """Return recorded subscriber failures, oldest first."""

        with self._lock:
            return tuple(self._dispatch_errors)

    def _matching(self, event: ContextEvent) -> tuple[_Subscription, ...]:
        with self._lock:
            subscriptions = tuple(self._subscriptions.values())
        return tuple(
            item
            for item in subscriptions
            if item.event_type is None or item.event_type is event.event_type
        )

    def _invoke_callback(
        self,
        callback: Subscriber,
        event: ContextEvent,
        running_loop: asyncio.AbstractEventLoop | None,
    ) -> DispatchError | None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                coroutine = _as_coroutine(result)
                if running_loop is None:
                    asyncio.run(coroutine)
                    return None

                task = running_loop.create_task(coroutine)
                with self._lock:
                    self._pending_async_tasks.add(task)
                task.add_done_callback(
                    lambda done: self._on_async_callback_done(done, callback, event)
                )
            return None
        except Exception as exc:  # noqa: BLE001
            return _dispatch_error(event, callback, exc)

    def _on_async_callback_done(
        self,
        task: asyncio.Task[None],
        callback: Subscriber,
        event: ContextEvent,
    ) -> None:
        with self._lock:
            self._pending_async_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, Exception):
            self._record([_dispatch_error(event, callback, exc)])

    def _record(self, errors: list[DispatchError]) -> None:
        if not errors:
            return
        with self._lock:
            self._dispatch_errors.extend(errors)
        for error in errors:
            logger.warning(
                "context_hook_failed",
                event_type=error.event_type,
                target=error.target,
                error_type=error.error_type,
                message=error.message,
            )


def _as_event_type(value: ContextEventType | str) -> ContextEventType:
    if isinstance(value, ContextEventType):
        return value
    try:
        return ContextEventType(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ContextEventType)
        raise ValueError(f"invalid event_type {value!r}; allowed: {allowed}") from exc


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _as_coroutine(value: object) -> Coroutine[Any, Any, None]:
    if inspect.iscoroutine(value):
        return cast("Coroutine[Any, Any, None]", value)
    return _await_awaitable(cast("Awaitable[None]", value))


async def _await_awaitable(awaitable: Awaitable[None]) -> None:
    await awaitable


def _dispatch_error(event: ContextEvent, callback: object, exc: Exception) -> DispatchError:
    return DispatchError(
        event_id=event.event_id,
        event_type=event.event_type.value,
        target=_callback_name(callback),
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


__all__ = [
    "ContextEvent",
    "ContextEventBus",
    "ContextEventType",
    "DispatchError",
    "Subscriber",
]
