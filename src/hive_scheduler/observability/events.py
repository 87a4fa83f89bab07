"""In-process notification bus for scheduler events.

Queue, budget, cycle, worker and query transitions are announced here. A
subscriber picks what it hears with an ``EventType``, a whole
``EventCategory`` or ``None`` for everything. The bus keeps a bounded ring of
recent events for ``replay``; status views read from it after the fact.

A subscriber that raises never reaches the publisher: its failure is logged and
kept as a ``DispatchError``.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

import structlog

from hive_scheduler.domain.events import EventCategory, EventType, SchedulerEvent

Subscriber = Callable[[SchedulerEvent], object]
EventFilter = EventType | EventCategory | None

MAX_DISPATCH_ERRORS: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    event_type: str
    target: str
    error_type: str
    message: str


def matches(event_filter: EventFilter, event: SchedulerEvent) -> bool:
    if event_filter is None:
        return True
    if isinstance(event_filter, EventCategory):
        return event.category is event_filter
    return event.event_type is event_filter


class EventBus:
    """Synchronous fan-out with support for coroutine subscribers.

    Inside a running event loop a coroutine subscriber is scheduled as a task
    and awaited by ``drain_async``; without one it is run to completion before
    ``publish`` returns.
    """

    def __init__(self, *, buffer_size: int = 512, logger: Any | None = None) -> None:
        if not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._recent: deque[SchedulerEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=MAX_DISPATCH_ERRORS)
        self._subscribers: dict[int, tuple[EventFilter, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._inflight: set[asyncio.Task[Any]] = set()
        self._mutex = threading.RLock()
        self._log = logger if logger is not None else structlog.get_logger(__name__)

    def subscribe(self, event_filter: EventFilter, callback: Subscriber) -> int:
        """Register ``callback``; the returned token is what ``unsubscribe`` takes."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        if event_filter is not None and not isinstance(event_filter, (EventType, EventCategory)):
            raise ValueError(
                f"event filter must be EventType, EventCategory or None, got {event_filter!r}"
            )
        with self._mutex:
            token = next(self._tokens)
            self._subscribers[token] = (event_filter, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._mutex:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: SchedulerEvent) -> tuple[DispatchError, ...]:
        """Record ``event`` and deliver it; returns failures from synchronous delivery."""

        if not isinstance(event, SchedulerEvent):
            raise ValueError(f"event must be SchedulerEvent, got {type(event).__name__}")
        with self._mutex:
            self._recent.append(event)
            targets = [cb for flt, cb in self._subscribers.values() if matches(flt, event)]

        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        failures: list[DispatchError] = []
        for callback in targets:
            try:
                outcome = callback(event)
                if inspect.iscoroutine(outcome):
                    self._run_coroutine(outcome, loop, callback, event)
            except Exception as exc:  # noqa: BLE001 - subscribers never break publishers
                failures.append(self._failed(callback, event, exc))
        return tuple(failures)

    def emit(
        self,
        event_type: EventType,
        project_id: str | None,
        payload: Mapping[str, object] | None = None,
    ) -> SchedulerEvent:
        event = SchedulerEvent(
            event_type=event_type,
            project_id=project_id,
            payload=dict(payload or {}),  # type: ignore[arg-type]
        )
        self.publish(event)
        return event

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Wait for scheduled coroutine subscribers; returns every recorded failure."""

        with self._mutex:
            pending, self._inflight = self._inflight, set()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return self.dispatch_errors()

    def replay(
        self,
        *,
        since: datetime | None = None,
        event_filter: EventFilter = None,
        project_id: str | None = None,
        limit: int | None = None,
    ) -> tuple[SchedulerEvent, ...]:
        """Buffered events, oldest first, narrowed by the given filters."""

        if limit is not None and limit <= 0:
            return ()
        with self._mutex:
            recent = list(self._recent)
        selected = [
            event
            for event in recent
            if matches(event_filter, event)
            and (since is None or event.timestamp > since)
            and (project_id is None or event.project_id == project_id)
        ]
        return tuple(selected if limit is None else selected[-limit:])

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._mutex:
            return tuple(self._errors)

    def _run_coroutine(
        self,
        coroutine: Any,
        loop: asyncio.AbstractEventLoop | None,
        callback: Subscriber,
        event: SchedulerEvent,
    ) -> None:
        if loop is None:
            asyncio.run(coroutine)
            return
        task = loop.create_task(coroutine)
        with self._mutex:
            self._inflight.add(task)

        def finished(done: asyncio.Task[Any]) -> None:
            with self._mutex:
                self._inflight.discard(done)
            if not done.cancelled() and isinstance(done.exception(), Exception):
                self._failed(callback, event, done.exception())  # type: ignore[arg-type]

        task.add_done_callback(finished)

    def _failed(
        self, callback: Subscriber, event: SchedulerEvent, exc: Exception
    ) -> DispatchError:
        target = getattr(callback, "__name__", None) or type(callback).__name__
        error = DispatchError(
            event_id=event.event_id,
            event_type=event.event_type.value,
            target=str(target),
            error_type=type(exc).__name__,
            message=str(exc),
        )
        with self._mutex:
            self._errors.append(error)
        self._log.warning(
            "event_bus_subscriber_failed",
            event_type=error.event_type,
            target=error.target,
            error_type=error.error_type,
            detail=error.message,
        )
        return error


__all__ = [
    "MAX_DISPATCH_ERRORS",
    "DispatchError",
    "EventBus",
    "EventFilter",
    "Subscriber",
    "matches",
]
