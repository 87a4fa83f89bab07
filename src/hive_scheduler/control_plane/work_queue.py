"""Priority and dependency aware work queue, one instance per project."""

from __future__ import annotations

import asyncio
import threading
from bisect import insort
from collections import Counter, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from hive_scheduler.constants import COMPLETED_HISTORY_SIZE, THROUGHPUT_WINDOW_SECONDS
from hive_scheduler.control_plane.admission import QueueCounts
from hive_scheduler.domain.errors import (
    QueueFullError,
    UnknownDependencyError,
    UnknownWorkItemError,
)
from hive_scheduler.domain.events import EventType
from hive_scheduler.domain.models import (
    TERMINAL_WORK_ITEM_STATUSES,
    JSONValue,
    Priority,
    TaskType,
    WorkItem,
    WorkItemStatus,
    WorkPayload,
    new_work_item,
)

if TYPE_CHECKING:
    from hive_scheduler.observability.events import EventBus
    from hive_scheduler.persistence.store import StateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_ACTIVE_STATUSES = frozenset(
    {WorkItemStatus.PENDING, WorkItemStatus.PROCESSING, WorkItemStatus.RETRY_SCHEDULED}
)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


ScheduleLater = Callable[[float, Callable[[], None]], TimerHandle]


@dataclass(frozen=True, slots=True)
class QueueStats:
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    cancelled: int
    retry_scheduled: int
    average_wait_seconds: float
    average_processing_seconds: float
    throughput_per_minute: float

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "retry_scheduled": self.retry_scheduled,
            "average_wait_seconds": round(self.average_wait_seconds, 6),
            "average_processing_seconds": round(self.average_processing_seconds, 6),
            "throughput_per_minute": round(self.throughput_per_minute, 6),
        }


def default_schedule_later(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Run ``callback`` after ``delay`` seconds on the running loop, or a daemon thread."""

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer
    return loop.call_later(delay, callback)


class WorkQueue:
    """Holds one project's work items and owns every status transition.

    Pending items are kept in ``(-priority, sequence)`` order so ``dequeue`` is a
    stable scan: highest priority first, FIFO within a priority band. The scan
    skips items whose dependencies are not completed without reordering them.
    """

    def __init__(
        self,
        project_id: str,
        *,
        max_size: int = 1000,
        max_concurrent: int = 3,
        default_max_retries: int = 3,
        retry_base_delay_seconds: float = 5.0,
        completed_history: int = COMPLETED_HISTORY_SIZE,
        store: StateStore | None = None,
        event_bus: EventBus | None = None,
        schedule_later: ScheduleLater | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        if completed_history <= 0:
            raise ValueError("completed_history must be > 0")

        self._project_id = project_id
        self._max_size = max_size
        self._max_concurrent = max_concurrent
        self._default_max_retries = default_max_retries
        self._retry_base_delay = retry_base_delay_seconds
        self._store = store
        self._event_bus = event_bus
        self._schedule_later = (
            schedule_later if schedule_later is not None else default_schedule_later
        )
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._lock = threading.RLock()
        self._items: dict[str, WorkItem] = {}
        self._pending: list[tuple[int, int, str]] = []
        self._sequence = 0
        self._timers: dict[str, TimerHandle] = {}
        self._completed_ring: deque[str] = deque()
        self._completed_history = completed_history
        self._completed_ids: set[str] = set()
        self._pinned: Counter[str] = Counter()
        self._paused = False

        self._status_counts: Counter[WorkItemStatus] = Counter()
        self._wait_total = 0.0
        self._wait_samples = 0
        self._processing_total = 0.0
        self._processing_samples = 0
        self._completion_times: deque[datetime] = deque()

    @classmethod
    def from_config(cls, project_id: str, config: dict[str, Any], **kwargs: Any) -> WorkQueue:
        queue_cfg = config.get("queue", {})
        return cls(
            project_id,
            max_size=int(queue_cfg.get("max_size", 1000)),
            max_concurrent=int(queue_cfg.get("max_concurrent", 3)),
            default_max_retries=int(queue_cfg.get("default_max_retries", 3)),
            retry_base_delay_seconds=float(queue_cfg.get("retry_base_delay_seconds", 5.0)),
            completed_history=int(queue_cfg.get("completed_history", COMPLETED_HISTORY_SIZE)),
            **kwargs,
        )

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------ mutation

    def enqueue(
        self,
        payload: WorkPayload,
        *,
        priority: Priority | int | str = Priority.NORMAL,
        task_type: TaskType | str = TaskType.DEVELOPMENT,
        dependencies: Iterable[str] = (),
        max_retries: int | None = None,
        retry_delay_seconds: float | None = None,
        tags: Iterable[str] = (),
        estimated_duration_seconds: float | None = None,
        metadata: dict[str, JSONValue] | None = None,
    ) -> str:
        with self._lock:
            if self._active_count() >= self._max_size:
                raise QueueFullError(f"Queue is full ({self._active_count()}/{self._max_size})")
            dependency_ids = tuple(dependencies)
            for dependency_id in dependency_ids:
                if not self._dependency_known(dependency_id):
                    raise UnknownDependencyError(dependency_id)

            item = new_work_item(
                self._project_id,
                payload,
                priority=Priority.parse(priority),
                task_type=task_type,
                dependencies=dependency_ids,
                max_retries=self._default_max_retries if max_retries is None else max_retries,
                retry_delay_seconds=(
                    self._retry_base_delay if retry_delay_seconds is None else retry_delay_seconds
                ),
                tags=tuple(tags),
                estimated_duration_seconds=estimated_duration_seconds,
                metadata=dict(metadata or {}),
                created_at=self._clock(),
            )
            self._items[item.id] = item
            self._pin(item)
            self._status_counts[item.status] += 1
            self._insert_pending(item)
            self._persist(item)

        self._logger.info(
            "work_queue_item_enqueued",
            project_id=self._project_id,
            work_item_id=item.id,
            priority=int(item.priority),
            dependencies=list(item.dependencies),
        )
        self._emit(
            EventType.ITEM_ENQUEUED,
            item,
            priority=int(item.priority),
            dependencies=list(item.dependencies),
        )
        return item.id

    def dequeue(self) -> WorkItem | None:
        """Mark the first ready pending item processing and return a copy of it."""

        with self._lock:
            processing = self._status_counts[WorkItemStatus.PROCESSING]
            if self._paused or processing >= self._max_concurrent:
                return None
            for index, (_, _, work_item_id) in enumerate(self._pending):
                item = self._items[work_item_id]
                if not self._dependencies_met(item):
                    continue
                del self._pending[index]
                now = self._clock()
                self._set_status(item, WorkItemStatus.PROCESSING)
                item.started_at = now
                self._wait_total += max(0.0, (now - item.created_at).total_seconds())
                self._wait_samples += 1
                self._persist(item)
                snapshot = _copy(item)
                break
            else:
                return None

        self._logger.info(
            "work_queue_item_dequeued",
            project_id=self._project_id,
            work_item_id=snapshot.id,
            priority=int(snapshot.priority),
        )
        self._emit(EventType.ITEM_DEQUEUED, snapshot, retry_count=snapshot.retry_count)
        return snapshot

    def complete(self, work_item_id: str, result: JSONValue = None) -> bool:
        with self._lock:
            item = self._items.get(work_item_id)
            if item is None or item.status is not WorkItemStatus.PROCESSING:
                return False
            now = self._clock()
            self._set_status(item, WorkItemStatus.COMPLETED)
            item.completed_at = now
            item.result = result
            item.error = None
            if item.started_at is not None:
                self._processing_total += max(0.0, (now - item.started_at).total_seconds())
                self._processing_samples += 1
            self._completion_times.append(now)
            self._remember_completed(work_item_id)
            self._persist(item)
            snapshot = _copy(item)

        self._logger.info(
            "work_queue_item_completed",
            project_id=self._project_id,
            work_item_id=work_item_id,
        )
        self._emit(EventType.ITEM_COMPLETED, snapshot)
        return True

    def fail(self, work_item_id: str, error: str) -> bool:
        """Fail a processing item; schedule a backoff retry while retries remain."""

        with self._lock:
            item = self._items.get(work_item_id)
            if item is None or item.status is not WorkItemStatus.PROCESSING:
                return False
            item.error = error
            if item.retry_count < item.max_retries:
                item.retry_count += 1
                delay = item.retry_delay_seconds * 2 ** (item.retry_count - 1)
                self._set_status(item, WorkItemStatus.RETRY_SCHEDULED)
                item.started_at = None
                self._persist(item)
                self._timers[work_item_id] = self._schedule_later(
                    delay, lambda: self._fire_retry(work_item_id)
                )
                retrying = True
            else:
                self._set_status(item, WorkItemStatus.FAILED)
                item.completed_at = self._clock()
                self._persist(item)
                delay = 0.0
                retrying = False
            snapshot = _copy(item)

        if retrying:
            self._logger.warning(
                "work_queue_item_retry_scheduled",
                project_id=self._project_id,
                work_item_id=work_item_id,
                retry_count=snapshot.retry_count,
                max_retries=snapshot.max_retries,
                delay_seconds=delay,
                error=error,
            )
            self._emit(
                EventType.ITEM_RETRY,
                snapshot,
                retry_count=snapshot.retry_count,
                delay_seconds=delay,
                error=error,
            )
        else:
            self._logger.warning(
                "work_queue_item_failed",
                project_id=self._project_id,
                work_item_id=work_item_id,
                retry_count=snapshot.retry_count,
                error=error,
            )
            self._emit(
                EventType.ITEM_FAILED, snapshot, retry_count=snapshot.retry_count, error=error
            )
        return True

    def cancel(self, work_item_id: str) -> bool:
        with self._lock:
            item = self._items.get(work_item_id)
            if item is None or item.status not in _ACTIVE_STATUSES:
                return False
            previous = item.status
            self._cancel_locked(item)
            snapshot = _copy(item)

        self._logger.info(
            "work_queue_item_cancelled",
            project_id=self._project_id,
            work_item_id=work_item_id,
            previous_status=previous.value,
        )
        self._emit(EventType.ITEM_CANCELLED, snapshot, previous_status=previous)
        return True

    def reschedule(self, work_item_id: str, new_priority: Priority | int | str) -> bool:
        priority = Priority.parse(new_priority)
        with self._lock:
            item = self._items.get(work_item_id)
            if item is None or item.status is not WorkItemStatus.PENDING:
                return False
            self._remove_pending(work_item_id)
            previous = item.priority
            item.priority = priority
            self._insert_pending(item)
            self._persist(item)
            snapshot = _copy(item)

        self._emit(
            EventType.ITEM_RESCHEDULED,
            snapshot,
            previous_priority=int(previous),
            priority=int(priority),
        )
        return True

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        self._logger.info("work_queue_paused", project_id=self._project_id)
        self._emit_queue(EventType.QUEUE_PAUSED)

    def resume(self) -> None:
        with self._lock:
            self._paused = False
        self._logger.info("work_queue_resumed", project_id=self._project_id)
        self._emit_queue(EventType.QUEUE_RESUMED)

    def clear(self) -> int:
        """Cancel every pending and retry-scheduled item; processing items are untouched."""

        with self._lock:
            targets = [
                item
                for item in self._items.values()
                if item.status in {WorkItemStatus.PENDING, WorkItemStatus.RETRY_SCHEDULED}
            ]
            for item in targets:
                self._cancel_locked(item)
        self._logger.info("work_queue_cleared", project_id=self._project_id, cancelled=len(targets))
        self._emit_queue(EventType.QUEUE_CLEARED, cancelled=len(targets))
        return len(targets)

    def restore(self, items: Iterable[WorkItem]) -> int:
        """Rebuild queue state from persisted items after a restart.

        Items caught mid-flight (processing or awaiting a retry timer) return to
        pending so they are picked up again.
        """

        restored = 0
        with self._lock:
            fresh = {
                stored.id: _copy(stored)
                for stored in items
                if stored.project_id == self._project_id
                and stored.id not in self._items
                and stored.id not in self._completed_ids
            }
            for item in fresh.values():
                if item.status not in TERMINAL_WORK_ITEM_STATUSES:
                    self._pin(item)
            ordered = sorted(
                fresh.values(), key=lambda item: (-int(item.priority), item.created_at, item.id)
            )
            for item in ordered:
                if item.status in {WorkItemStatus.PROCESSING, WorkItemStatus.RETRY_SCHEDULED}:
                    item.status = WorkItemStatus.PENDING
                    item.started_at = None
                    self._persist(item)
                self._items[item.id] = item
                self._status_counts[item.status] += 1
                if item.status is WorkItemStatus.PENDING:
                    self._insert_pending(item)
                restored += 1
            done = sorted(
                (item for item in ordered if item.status is WorkItemStatus.COMPLETED),
                key=lambda item: (item.completed_at or item.created_at, item.id),
            )
            for item in done:
                self._remember_completed(item.id)
        self._logger.info("work_queue_restored", project_id=self._project_id, restored=restored)
        return restored

    # ------------------------------------------------------------------ lookups

    def get(self, work_item_id: str) -> WorkItem | None:
        with self._lock:
            item = self._items.get(work_item_id)
            return None if item is None else _copy(item)

    def require(self, work_item_id: str) -> WorkItem:
        item = self.get(work_item_id)
        if item is None:
            raise UnknownWorkItemError(work_item_id)
        return item

    def items(self) -> list[WorkItem]:
        with self._lock:
            return [_copy(item) for item in self._items.values()]

    def items_by_tag(self, tag: str) -> list[WorkItem]:
        with self._lock:
            return [_copy(item) for item in self._items.values() if tag in item.tags]

    def items_by_status(self, status: WorkItemStatus | str) -> list[WorkItem]:
        wanted = WorkItemStatus(status)
        with self._lock:
            return [_copy(item) for item in self._items.values() if item.status is wanted]

    def is_completed(self, work_item_id: str) -> bool:
        with self._lock:
            if work_item_id in self._completed_ids:
                return True
        return self._completed_in_store(work_item_id)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return self._status_counts[WorkItemStatus.PENDING]

    @property
    def processing_count(self) -> int:
        with self._lock:
            return self._status_counts[WorkItemStatus.PROCESSING]

    @property
    def retry_scheduled_count(self) -> int:
        with self._lock:
            return self._status_counts[WorkItemStatus.RETRY_SCHEDULED]

    @property
    def depth(self) -> int:
        with self._lock:
            return self._active_count()

    @property
    def free_slots(self) -> int:
        with self._lock:
            return max(0, self._max_concurrent - self._status_counts[WorkItemStatus.PROCESSING])

    def counts(self) -> QueueCounts:
        with self._lock:
            return QueueCounts(
                pending=self._status_counts[WorkItemStatus.PENDING],
                processing=self._status_counts[WorkItemStatus.PROCESSING],
                processing_ids=frozenset(
                    item.id
                    for item in self._items.values()
                    if item.status is WorkItemStatus.PROCESSING
                ),
            )

    def stats(self) -> QueueStats:
        with self._lock:
            now = self._clock()
            floor = now - timedelta(seconds=THROUGHPUT_WINDOW_SECONDS)
            while self._completion_times and self._completion_times[0] < floor:
                self._completion_times.popleft()
            recent = len(self._completion_times)
            return QueueStats(
                total=sum(self._status_counts.values()),
                pending=self._status_counts[WorkItemStatus.PENDING],
                processing=self._status_counts[WorkItemStatus.PROCESSING],
                completed=self._status_counts[WorkItemStatus.COMPLETED],
                failed=self._status_counts[WorkItemStatus.FAILED],
                cancelled=self._status_counts[WorkItemStatus.CANCELLED],
                retry_scheduled=self._status_counts[WorkItemStatus.RETRY_SCHEDULED],
                average_wait_seconds=(
                    self._wait_total / self._wait_samples if self._wait_samples else 0.0
                ),
                average_processing_seconds=(
                    self._processing_total / self._processing_samples
                    if self._processing_samples
                    else 0.0
                ),
                throughput_per_minute=recent * (60.0 / THROUGHPUT_WINDOW_SECONDS),
            )

    # ------------------------------------------------------------------ internals

    def _fire_retry(self, work_item_id: str) -> None:
        with self._lock:
            self._timers.pop(work_item_id, None)
            item = self._items.get(work_item_id)
            if item is None or item.status is not WorkItemStatus.RETRY_SCHEDULED:
                return
            self._set_status(item, WorkItemStatus.PENDING)
            self._insert_pending(item)
            self._persist(item)
        self._logger.info(
            "work_queue_retry_ready",
            project_id=self._project_id,
            work_item_id=work_item_id,
        )

    def _cancel_locked(self, item: WorkItem) -> None:
        timer = self._timers.pop(item.id, None)
        if timer is not None:
            timer.cancel()
        if item.status is WorkItemStatus.PENDING:
            self._remove_pending(item.id)
        self._set_status(item, WorkItemStatus.CANCELLED)
        item.completed_at = self._clock()
        self._persist(item)

    def _set_status(self, item: WorkItem, status: WorkItemStatus) -> None:
        if status in TERMINAL_WORK_ITEM_STATUSES and item.status not in TERMINAL_WORK_ITEM_STATUSES:
            self._unpin(item)
        self._status_counts[item.status] -= 1
        self._status_counts[status] += 1
        item.status = status

    def _insert_pending(self, item: WorkItem) -> None:
        self._sequence += 1
        insort(self._pending, (-int(item.priority), self._sequence, item.id))

    def _remove_pending(self, work_item_id: str) -> None:
        self._pending = [entry for entry in self._pending if entry[2] != work_item_id]

    def _dependencies_met(self, item: WorkItem) -> bool:
        return all(dependency in self._completed_ids for dependency in item.dependencies)

    def _dependency_known(self, dependency_id: str) -> bool:
        if dependency_id in self._items or dependency_id in self._completed_ids:
            return True
        if not self._completed_in_store(dependency_id):
            return False
        # Completed before the in-memory history; the new dependent pins it.
        self._completed_ids.add(dependency_id)
        return True

    def _completed_in_store(self, work_item_id: str) -> bool:
        if self._store is None:
            return False
        stored = self._store.get_work_item(work_item_id)
        return (
            stored is not None
            and stored.project_id == self._project_id
            and stored.status is WorkItemStatus.COMPLETED
        )

    def _pin(self, item: WorkItem) -> None:
        self._pinned.update(item.dependencies)

    def _unpin(self, item: WorkItem) -> None:
        for dependency_id in item.dependencies:
            self._pinned[dependency_id] -= 1
            if self._pinned[dependency_id] > 0:
                continue
            del self._pinned[dependency_id]
            if dependency_id not in self._completed_ring:
                self._completed_ids.discard(dependency_id)

    def _remember_completed(self, work_item_id: str) -> None:
        """Add to the completed history, forgetting the oldest entries past its size.

        An evicted id stays known only while a held item still depends on it;
        anything older is answered by the state store.
        """

        self._completed_ids.add(work_item_id)
        self._completed_ring.append(work_item_id)
        while len(self._completed_ring) > self._completed_history:
            evicted = self._completed_ring.popleft()
            self._items.pop(evicted, None)
            if evicted not in self._pinned:
                self._completed_ids.discard(evicted)

    def _active_count(self) -> int:
        return sum(self._status_counts[status] for status in _ACTIVE_STATUSES)

    def _persist(self, item: WorkItem) -> None:
        if self._store is not None:
            self._store.save_work_item(item)

    def _emit(self, event_type: EventType, item: WorkItem, **payload: object) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            event_type,
            self._project_id,
            {"work_item_id": item.id, "status": item.status, **payload},
        )

    def _emit_queue(self, event_type: EventType, **payload: object) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, self._project_id, payload)


def _copy(item: WorkItem) -> WorkItem:
    return WorkItem.from_dict(item.to_dict())


__all__ = [
    "QueueStats",
    "ScheduleLater",
    "TimerHandle",
    "WorkQueue",
    "default_schedule_later",
]
