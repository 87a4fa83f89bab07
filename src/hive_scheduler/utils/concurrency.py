"""Cancellation and bounded fan-out for the coordination loop."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, TypeVar

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

T = TypeVar("T")

_logger = structlog.get_logger(__name__)


class CancellationToken:
    """One-shot cancellation signal shared by a cycle and its child process.

    ``cancel`` runs the registered callbacks synchronously, so by the time it
    returns a subprocess killer registered by the executor has already fired.
    A callback that raises is logged and the rest still run.
    """

    def __init__(self) -> None:
        self._fired = asyncio.Event()
        self._guard = threading.Lock()
        self._callbacks: list[Callable[[], object]] = []
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._fired.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        with self._guard:
            if self._fired.is_set():
                return
            self._reason = reason
            self._fired.set()
            pending, self._callbacks = self._callbacks, []
        for callback in pending:
            _fire(callback)

    def on_cancel(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (now, if already cancelled).

        Returns an unregister function.
        """

        with self._guard:
            if not self._fired.is_set():
                self._callbacks.append(callback)
                return lambda: self._forget(callback)
        _fire(callback)
        return lambda: None

    async def wait(self) -> None:
        await self._fired.wait()

    def raise_if_cancelled(self) -> None:
        if self._fired.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")

    def _forget(self, callback: Callable[[], object]) -> None:
        with self._guard:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


def _fire(callback: Callable[[], object]) -> None:
    try:
        callback()
    except Exception as exc:  # noqa: BLE001 - remaining callbacks still run
        _logger.warning(
            "cancellation_callback_failed", error_type=type(exc).__name__, detail=str(exc)
        )


async def gather_bounded(awaitables: Iterable[Awaitable[T]], limit: int) -> list[T | Exception]:
    """Await everything in ``awaitables`` with at most ``limit`` in flight.

    The result list lines up with the input. A job that raises ``Exception``
    leaves the exception in its slot without disturbing its siblings; if the
    caller itself is cancelled every job is cancelled and awaited first.
    """

    if limit <= 0:
        raise ValueError("limit must be > 0")
    slots = asyncio.Semaphore(limit)

    async def guarded(job: Awaitable[T]) -> T | Exception:
        async with slots:
            try:
                return await job
            except Exception as exc:  # noqa: BLE001 - reported in the job's slot
                return exc

    tasks = [asyncio.ensure_future(guarded(job)) for job in awaitables]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


__all__ = ["CancellationToken", "gather_bounded"]
