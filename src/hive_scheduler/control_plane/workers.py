"""
hive-scheduler worker registry and health monitor.

Purpose
- Track worker capabilities and live worker instances, their load and their
  performance counters, and feed eligible instances to assignment strategies.

What should be included
- Capability catalog (``register_capability``/``capabilities``).
- Instance lifecycle: register, heartbeat, unregister, liveness sweep.
- Assignment bookkeeping (``mark_assigned``/``release``) and summary stats.
- ``HealthMonitor``: a single asyncio task that sweeps periodically.

Functional requirements
- Unknown capabilities are rejected at registration.
- An instance with no heartbeat inside the liveness window is marked offline
  by the sweep and never offered to strategies until it heartbeats again.
- All registry state is mutated under one lock; the monitor is the only timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog

from hive_scheduler.config.schema import SchedulerConfig
from hive_scheduler.constants import (
    WORKER_LIVENESS_WINDOW_SECONDS,
    WORKER_SWEEP_INTERVAL_SECONDS,
)
from hive_scheduler.domain import ids as domain_ids
from hive_scheduler.domain.errors import UnknownCapabilityError, UnknownWorkerError
from hive_scheduler.domain.events import EventType
from hive_scheduler.domain.models import (
    DEFAULT_WORKER_CAPABILITIES,
    WorkerCapability,
    WorkerInstance,
    WorkerStatus,
)

if TYPE_CHECKING:
    from hive_scheduler.observability.events import EventBus

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_UNAVAILABLE = frozenset({WorkerStatus.OFFLINE, WorkerStatus.ERROR})


def _snapshot(instance: WorkerInstance) -> WorkerInstance:
    return replace(
        instance,
        current_task_ids=list(instance.current_task_ids),
        performance=replace(instance.performance),
    )


@dataclass(frozen=True, slots=True)
class WorkerStats:
    total: int
    active: int
    by_status: dict[str, int]
    tasks_completed: int
    tasks_failed: int

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "active": self.active,
            "by_status": dict(self.by_status),
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
        }


class WorkerRegistry:
    """Thread-safe catalog of capabilities and live worker instances."""

    def __init__(
        self,
        *,
        capabilities: Iterable[WorkerCapability] = DEFAULT_WORKER_CAPABILITIES,
        liveness_window_seconds: float = WORKER_LIVENESS_WINDOW_SECONDS,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if liveness_window_seconds <= 0:
            raise ValueError("liveness_window_seconds must be > 0")
        self._liveness = timedelta(seconds=liveness_window_seconds)
        self._event_bus = event_bus
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._capabilities: dict[str, WorkerCapability] = {}
        self._instances: dict[str, WorkerInstance] = {}
        self._monitor: HealthMonitor | None = None
        for capability in capabilities:
            self._capabilities[capability.id] = capability

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        *,
        capabilities: Iterable[WorkerCapability] = DEFAULT_WORKER_CAPABILITIES,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> WorkerRegistry:
        return cls(
            capabilities=capabilities,
            liveness_window_seconds=float(config["workers"]["liveness_window_seconds"]),
            event_bus=event_bus,
            clock=clock,
            logger=logger,
        )

    # Capabilities

    def register_capability(self, capability: WorkerCapability) -> None:
        with self._lock:
            self._capabilities[capability.id] = capability
        self._logger.info(
            "worker_capability_registered",
            capability_id=capability.id,
            task_types=sorted(item.value for item in capability.task_types),
        )

    def capabilities(self) -> dict[str, WorkerCapability]:
        with self._lock:
            return dict(self._capabilities)

    # Instances

    def register(self, capability_id: str, *, instance_id: str | None = None) -> str:
        now = self._clock()
        with self._lock:
            if capability_id not in self._capabilities:
                raise UnknownCapabilityError(capability_id)
            instance = WorkerInstance(
                id=instance_id or domain_ids.generate_agent_id(),
                capability_id=capability_id,
                last_heartbeat=now,
                registered_at=now,
            )
            self._instances[instance.id] = instance
        self._logger.info("worker_registered", instance_id=instance.id, capability_id=capability_id)
        self._emit(
            EventType.AGENT_REGISTERED,
            {"agent_id": instance.id, "capability_id": capability_id},
        )
        return instance.id

    def unregister(self, instance_id: str) -> bool:
        with self._lock:
            removed = self._instances.pop(instance_id, None)
        if removed is not None:
            self._logger.info("worker_unregistered", instance_id=instance_id)
        return removed is not None

    def get(self, instance_id: str) -> WorkerInstance | None:
        with self._lock:
            instance = self._instances.get(instance_id)
            return _snapshot(instance) if instance is not None else None

    def heartbeat(self, instance_id: str, status: WorkerStatus | None = None) -> WorkerInstance:
        """Record liveness; an offline instance comes back idle, otherwise ``status`` applies."""

        with self._lock:
            instance = self._require(instance_id)
            instance.last_heartbeat = self._clock()
            recovered = instance.status is WorkerStatus.OFFLINE
            if recovered:
                instance.status = WorkerStatus.IDLE
            elif status is not None:
                instance.status = status
            snapshot = _snapshot(instance)
        if recovered:
            self._logger.info("worker_recovered", instance_id=instance_id)
            self._emit(EventType.AGENT_RECOVERED, {"agent_id": instance_id})
        return snapshot

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Mark instances whose last heartbeat is older than the liveness window offline."""

        current = now if now is not None else self._clock()
        stale: list[str] = []
        with self._lock:
            for instance in self._instances.values():
                if instance.status is WorkerStatus.OFFLINE:
                    continue
                if current - instance.last_heartbeat > self._liveness:
                    instance.status = WorkerStatus.OFFLINE
                    stale.append(instance.id)
        for instance_id in stale:
            self._logger.warning("worker_offline", instance_id=instance_id)
            self._emit(EventType.AGENT_OFFLINE, {"agent_id": instance_id})
        return stale

    def available_agents(self) -> list[WorkerInstance]:
        with self._lock:
            out: list[WorkerInstance] = []
            for instance in self._instances.values():
                capability = self._capabilities.get(instance.capability_id)
                if capability is None or instance.status in _UNAVAILABLE:
                    continue
                if instance.load >= capability.max_concurrent_tasks:
                    continue
                out.append(_snapshot(instance))
            return out

    def current_load(self) -> dict[str, int]:
        with self._lock:
            return {instance_id: item.load for instance_id, item in self._instances.items()}

    # Assignment bookkeeping

    def mark_assigned(self, instance_id: str, task_id: str) -> None:
        with self._lock:
            instance = self._require(instance_id)
            if task_id not in instance.current_task_ids:
                instance.current_task_ids.append(task_id)
            if instance.status is WorkerStatus.IDLE:
                instance.status = WorkerStatus.BUSY

    def unassign(self, instance_id: str, task_id: str) -> None:
        """Drop ``task_id`` from the instance without touching performance counters."""

        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or task_id not in instance.current_task_ids:
                return
            instance.current_task_ids.remove(task_id)
            if not instance.current_task_ids and instance.status is WorkerStatus.BUSY:
                instance.status = WorkerStatus.IDLE

    def release(
        self,
        instance_id: str,
        task_id: str,
        *,
        success: bool,
        duration_ms: int = 0,
        tokens_used: int = 0,
    ) -> None:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                # Unregistered mid-flight; nothing left to account against.
                return
            if task_id in instance.current_task_ids:
                instance.current_task_ids.remove(task_id)
            performance = instance.performance
            if success:
                performance.tasks_completed += 1
            else:
                performance.tasks_failed += 1
            performance.total_execution_ms += max(0, int(duration_ms))
            performance.tokens_used += max(0, int(tokens_used))
            if not instance.current_task_ids and instance.status is WorkerStatus.BUSY:
                instance.status = WorkerStatus.IDLE
        self._logger.debug(
            "worker_released",
            instance_id=instance_id,
            task_id=task_id,
            success=success,
            duration_ms=duration_ms,
        )

    def stats(self) -> WorkerStats:
        with self._lock:
            instances = list(self._instances.values())
        by_status = Counter(instance.status.value for instance in instances)
        return WorkerStats(
            total=len(instances),
            active=sum(1 for instance in instances if instance.status not in _UNAVAILABLE),
            by_status={status.value: by_status.get(status.value, 0) for status in WorkerStatus},
            tasks_completed=sum(item.performance.tasks_completed for item in instances),
            tasks_failed=sum(item.performance.tasks_failed for item in instances),
        )

    # Health monitor

    def start_monitor(self, interval: float = WORKER_SWEEP_INTERVAL_SECONDS) -> HealthMonitor:
        if self._monitor is not None and self._monitor.running:
            return self._monitor
        self._monitor = HealthMonitor(self, interval=interval, logger=self._logger)
        self._monitor.start()
        return self._monitor

    async def stop_monitor(self) -> None:
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            await monitor.stop()

    def _require(self, instance_id: str) -> WorkerInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise UnknownWorkerError(instance_id)
        return instance

    def _emit(self, event_type: EventType, payload: dict[str, object]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, None, payload)


class HealthMonitor:
    """Periodic liveness sweep running as one asyncio task."""

    def __init__(
        self,
        registry: WorkerRegistry,
        *,
        interval: float = WORKER_SWEEP_INTERVAL_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._registry = registry
        self._interval = interval
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="hive-worker-health-monitor"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self._registry.sweep()
            except Exception as exc:  # noqa: BLE001
                self._logger.error("worker_health_sweep_failed", error=str(exc))


__all__ = ["HealthMonitor", "WorkerRegistry", "WorkerStats"]
