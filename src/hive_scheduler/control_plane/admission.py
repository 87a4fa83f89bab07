"""
Per-project admission control over the token budget ledger.

This module decides whether a project may start more work:
- per-request, daily, per-minute and per-hour token/request caps
- parallel worker and queue depth caps fed by the work queue
- in-flight reservations so two concurrent admissions cannot both spend the
  last of a budget

Refusals are returned as ``AdmissionDecision`` values and never raised. Usage
is re-aggregated from the state store's append-only log at decision time.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from hive_scheduler.config.schema import project_admission_overrides
from hive_scheduler.constants import (
    BUDGET_CRITICAL_RATIO,
    BUDGET_WARNING_RATIO,
    HOUR_WINDOW_SECONDS,
    LOW_BUDGET_REMAINING_RATIO,
    MINUTE_WINDOW_SECONDS,
)
from hive_scheduler.domain import ids as domain_ids
from hive_scheduler.domain.errors import ErrorCategory, FailureReport
from hive_scheduler.domain.events import EventType
from hive_scheduler.domain.models import AdmissionLimits, UsageEvent

if TYPE_CHECKING:
    from hive_scheduler.observability.events import EventBus
    from hive_scheduler.persistence.store import StateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


class AdmissionPurpose(StrEnum):
    """Which subset of checks a decision runs."""

    FULL = "full"
    EXECUTE = "execute"
    ENQUEUE = "enqueue"


class BudgetLevel(StrEnum):
    ACTIVE = "active"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"


@dataclass(frozen=True, slots=True)
class QueueCounts:
    """Snapshot of a project's queue occupancy used by the slot checks."""

    pending: int = 0
    processing: int = 0
    processing_ids: frozenset[str] = frozenset()


QueueCountProvider = Callable[[str], QueueCounts]


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    allowed: bool
    reason: str
    reason_code: str
    project_id: str
    estimated_tokens: int
    purpose: AdmissionPurpose = AdmissionPurpose.FULL
    reset_at: datetime | None = None
    next_step: str | None = None
    reservation_id: str | None = None
    category: ErrorCategory = ErrorCategory.ADMISSION

    def failure_report(self) -> FailureReport:
        return FailureReport(
            category=self.category,
            reason=self.reason,
            next_step=self.next_step,
            reset_at=self.reset_at,
            subject_id=self.project_id,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "project_id": self.project_id,
            "estimated_tokens": self.estimated_tokens,
            "purpose": self.purpose.value,
            "reset_at": self.reset_at.isoformat() if self.reset_at is not None else None,
            "next_step": self.next_step,
            "reservation_id": self.reservation_id,
            "category": self.category.value,
        }


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    project_id: str
    used_today: int
    reserved_tokens: int
    daily_cap: int
    remaining: int
    usage_ratio: float
    requests_this_minute: int
    requests_this_hour: int
    level: BudgetLevel
    low_budget: bool
    reset_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "used_today": self.used_today,
            "reserved_tokens": self.reserved_tokens,
            "daily_cap": self.daily_cap,
            "remaining": self.remaining,
            "usage_ratio": round(self.usage_ratio, 6),
            "requests_this_minute": self.requests_this_minute,
            "requests_this_hour": self.requests_this_hour,
            "level": self.level.value,
            "low_budget": self.low_budget,
            "reset_at": self.reset_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class _Reservation:
    id: str
    project_id: str
    tokens: int
    created_at: datetime
    work_item_id: str | None = None


@dataclass(slots=True)
class _ProjectLedger:
    lock: threading.Lock = field(default_factory=threading.Lock)
    reservations: dict[str, _Reservation] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class _Window:
    day_start: datetime
    day_tokens: int
    reserved_tokens: int
    minute_entries: tuple[datetime, ...]
    hour_entries: tuple[datetime, ...]


_NEXT_STEPS: dict[str, str] = {
    "request_token_limit": "split the work item into smaller requests",
    "daily_token_limit": "wait for the daily budget to reset or raise daily_token_cap",
    "minute_rate_limit": "retry after the minute window frees a slot",
    "hourly_rate_limit": "retry after the hour window frees a slot",
    "parallel_worker_limit": "wait for running work to finish",
    "queue_full": "wait for in-flight work to drain or increase max_queue_depth",
}


class AdmissionController:
    """Per-project gate in front of every enqueue and every phase execution."""

    def __init__(
        self,
        *,
        store: StateStore,
        default_limits: AdmissionLimits | None = None,
        project_limits: Mapping[str, AdmissionLimits] | None = None,
        queue_counts: QueueCountProvider | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._default_limits = default_limits if default_limits is not None else AdmissionLimits()
        self._project_limits: dict[str, AdmissionLimits] = dict(project_limits or {})
        self._queue_counts = queue_counts
        self._event_bus = event_bus
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._ledgers: dict[str, _ProjectLedger] = {}
        self._ledgers_guard = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        store: StateStore,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> AdmissionController:
        base = dict(config.get("admission", {}))
        defaults = AdmissionLimits.from_dict(base)
        overrides = {
            project_id: AdmissionLimits.from_dict({**base, **values})
            for project_id, values in project_admission_overrides(config).items()
        }
        return cls(
            store=store,
            default_limits=defaults,
            project_limits=overrides,
            event_bus=event_bus,
            clock=clock,
            logger=logger,
        )

    def set_queue_counts(self, provider: QueueCountProvider | None) -> None:
        self._queue_counts = provider

    def limits_for(self, project_id: str) -> AdmissionLimits:
        return self._project_limits.get(project_id, self._default_limits)

    def set_limits(self, project_id: str, limits: AdmissionLimits) -> None:
        ledger = self._ledger(project_id)
        with ledger.lock:
            self._project_limits[project_id] = limits
        self._logger.info(
            "control_plane_admission_limits_updated",
            project_id=project_id,
            limits=limits.to_dict(),
        )

    def can_admit(
        self,
        project_id: str,
        estimated_tokens: int,
        *,
        purpose: AdmissionPurpose = AdmissionPurpose.FULL,
        work_item_id: str | None = None,
    ) -> AdmissionDecision:
        _check_tokens(estimated_tokens)
        ledger = self._ledger(project_id)
        with ledger.lock:
            decision = self._decide(
                project_id, estimated_tokens, purpose, ledger, work_item_id=work_item_id
            )
        self._log_decision(decision)
        return decision

    def admit(
        self,
        project_id: str,
        estimated_tokens: int,
        *,
        work_item_id: str | None = None,
    ) -> AdmissionDecision:
        """Run the execute checks and reserve ``estimated_tokens`` when allowed."""

        _check_tokens(estimated_tokens)
        ledger = self._ledger(project_id)
        with ledger.lock:
            decision = self._decide(
                project_id,
                estimated_tokens,
                AdmissionPurpose.EXECUTE,
                ledger,
                work_item_id=work_item_id,
            )
            if decision.allowed:
                reservation = _Reservation(
                    id=domain_ids.generate_reservation_id(),
                    project_id=project_id,
                    tokens=estimated_tokens,
                    created_at=self._clock(),
                    work_item_id=work_item_id,
                )
                ledger.reservations[reservation.id] = reservation
                decision = AdmissionDecision(
                    allowed=True,
                    reason=decision.reason,
                    reason_code=decision.reason_code,
                    project_id=project_id,
                    estimated_tokens=estimated_tokens,
                    purpose=decision.purpose,
                    reservation_id=reservation.id,
                )
        self._log_decision(decision)
        return decision

    def release(self, reservation_id: str) -> bool:
        with self._ledgers_guard:
            ledgers = tuple(self._ledgers.values())
        for ledger in ledgers:
            with ledger.lock:
                if ledger.reservations.pop(reservation_id, None) is not None:
                    self._logger.info(
                        "control_plane_admission_reservation_released",
                        reservation_id=reservation_id,
                    )
                    return True
        return False

    def record_usage(
        self,
        project_id: str,
        input_tokens: int,
        output_tokens: int,
        *,
        success: bool = True,
        work_item_id: str | None = None,
        reservation_id: str | None = None,
    ) -> UsageEvent:
        """Settle a reservation (if any) and append one usage event.

        Failed executions are charged their input tokens only.
        """

        _check_tokens(input_tokens)
        _check_tokens(output_tokens)
        limits = self.limits_for(project_id)
        ledger = self._ledger(project_id)
        with ledger.lock:
            now = self._clock()
            used_before = self._day_usage(project_id, now)
            if reservation_id is not None:
                ledger.reservations.pop(reservation_id, None)
            event = UsageEvent(
                id=domain_ids.generate_usage_id(),
                project_id=project_id,
                timestamp=now,
                input_tokens=input_tokens,
                output_tokens=output_tokens if success else 0,
                success=success,
                work_item_id=work_item_id,
            )
            self._store.append_usage(event)
            used_after = used_before + event.total_tokens

        self._logger.info(
            "control_plane_usage_recorded",
            project_id=project_id,
            work_item_id=work_item_id,
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            success=success,
            used_today=used_after,
            daily_cap=limits.daily_token_cap,
        )
        self._emit_threshold_crossings(project_id, used_before, used_after, limits, now)
        return event

    def budget_status(self, project_id: str) -> BudgetStatus:
        limits = self.limits_for(project_id)
        ledger = self._ledger(project_id)
        with ledger.lock:
            now = self._clock()
            window = self._window(project_id, now, ledger)
        cap = limits.daily_token_cap
        used = window.day_tokens
        ratio = used / cap
        remaining = max(0, cap - used)
        return BudgetStatus(
            project_id=project_id,
            used_today=used,
            reserved_tokens=window.reserved_tokens,
            daily_cap=cap,
            remaining=remaining,
            usage_ratio=ratio,
            requests_this_minute=len(window.minute_entries),
            requests_this_hour=len(window.hour_entries),
            level=_level_for(ratio),
            low_budget=remaining < cap * LOW_BUDGET_REMAINING_RATIO,
            reset_at=_next_midnight(now),
        )

    def reservations(self, project_id: str) -> tuple[str, ...]:
        ledger = self._ledger(project_id)
        with ledger.lock:
            return tuple(ledger.reservations)

    def _decide(
        self,
        project_id: str,
        estimated_tokens: int,
        purpose: AdmissionPurpose,
        ledger: _ProjectLedger,
        *,
        work_item_id: str | None,
    ) -> AdmissionDecision:
        limits = self.limits_for(project_id)
        now = self._clock()

        def refuse(code: str, reason: str, reset_at: datetime | None = None) -> AdmissionDecision:
            return AdmissionDecision(
                allowed=False,
                reason=reason,
                reason_code=code,
                project_id=project_id,
                estimated_tokens=estimated_tokens,
                purpose=purpose,
                reset_at=reset_at,
                next_step=_NEXT_STEPS[code],
            )

        if purpose is not AdmissionPurpose.ENQUEUE:
            if estimated_tokens > limits.per_request_token_cap:
                return refuse(
                    "request_token_limit",
                    "Request token limit exceeded "
                    f"({estimated_tokens}/{limits.per_request_token_cap})",
                )

            window = self._window(project_id, now, ledger)
            projected = window.day_tokens + window.reserved_tokens + estimated_tokens
            if projected > limits.daily_token_cap:
                return refuse(
                    "daily_token_limit",
                    f"Daily token limit would be exceeded ({projected}/{limits.daily_token_cap})",
                    _next_midnight(now),
                )

            if len(window.minute_entries) >= limits.requests_per_minute_cap:
                return refuse(
                    "minute_rate_limit",
                    "Minute rate limit exceeded "
                    f"({len(window.minute_entries)}/{limits.requests_per_minute_cap})",
                    min(window.minute_entries) + timedelta(seconds=MINUTE_WINDOW_SECONDS),
                )
            if len(window.hour_entries) >= limits.requests_per_hour_cap:
                return refuse(
                    "hourly_rate_limit",
                    "Hourly rate limit exceeded "
                    f"({len(window.hour_entries)}/{limits.requests_per_hour_cap})",
                    min(window.hour_entries) + timedelta(seconds=HOUR_WINDOW_SECONDS),
                )

            counts = self._counts(project_id)
            processing = counts.processing
            if work_item_id is not None and work_item_id in counts.processing_ids:
                # The item asking already holds its own slot.
                processing -= 1
            if processing >= limits.max_parallel_workers:
                return refuse(
                    "parallel_worker_limit",
                    f"Parallel worker limit reached ({processing}/{limits.max_parallel_workers})",
                )

        if purpose is not AdmissionPurpose.EXECUTE:
            counts = self._counts(project_id)
            depth = counts.pending + counts.processing
            if depth >= limits.max_queue_depth:
                return refuse("queue_full", f"Queue is full ({depth}/{limits.max_queue_depth})")

        return AdmissionDecision(
            allowed=True,
            reason="Admitted",
            reason_code="allowed",
            project_id=project_id,
            estimated_tokens=estimated_tokens,
            purpose=purpose,
        )

    def _window(self, project_id: str, now: datetime, ledger: _ProjectLedger) -> _Window:
        day_start = _day_start(now)
        minute_floor = now - timedelta(seconds=MINUTE_WINDOW_SECONDS)
        hour_floor = now - timedelta(seconds=HOUR_WINDOW_SECONDS)
        events = self._store.list_usage(project_id, since=min(day_start, hour_floor))

        day_tokens = sum(event.total_tokens for event in events if event.timestamp >= day_start)
        entries = [event.timestamp for event in events]
        entries.extend(reservation.created_at for reservation in ledger.reservations.values())
        return _Window(
            day_start=day_start,
            day_tokens=day_tokens,
            reserved_tokens=sum(item.tokens for item in ledger.reservations.values()),
            minute_entries=tuple(stamp for stamp in entries if stamp > minute_floor),
            hour_entries=tuple(stamp for stamp in entries if stamp > hour_floor),
        )

    def _day_usage(self, project_id: str, now: datetime) -> int:
        day_start = _day_start(now)
        return sum(
            event.total_tokens for event in self._store.list_usage(project_id, since=day_start)
        )

    def _counts(self, project_id: str) -> QueueCounts:
        if self._queue_counts is None:
            return QueueCounts()
        return self._queue_counts(project_id)

    def _ledger(self, project_id: str) -> _ProjectLedger:
        with self._ledgers_guard:
            ledger = self._ledgers.get(project_id)
            if ledger is None:
                ledger = _ProjectLedger()
                self._ledgers[project_id] = ledger
            return ledger

    def _emit_threshold_crossings(
        self,
        project_id: str,
        used_before: int,
        used_after: int,
        limits: AdmissionLimits,
        now: datetime,
    ) -> None:
        cap = limits.daily_token_cap
        before = used_before / cap
        after = used_after / cap
        payload = {
            "used_today": used_after,
            "daily_cap": cap,
            "usage_ratio": round(after, 6),
            "reset_at": _next_midnight(now).isoformat(),
        }
        if before < BUDGET_WARNING_RATIO <= after:
            self._logger.warning("control_plane_budget_warning", project_id=project_id, **payload)
            if self._event_bus is not None:
                self._event_bus.emit(EventType.BUDGET_WARNING, project_id, payload)
        if before < 1.0 <= after:
            self._logger.warning("control_plane_budget_blocked", project_id=project_id, **payload)
            if self._event_bus is not None:
                self._event_bus.emit(EventType.BUDGET_BLOCKED, project_id, payload)

    def _log_decision(self, decision: AdmissionDecision) -> None:
        self._logger.info(
            "control_plane_admission_decision",
            allowed=decision.allowed,
            reason=decision.reason,
            reason_code=decision.reason_code,
            project_id=decision.project_id,
            estimated_tokens=decision.estimated_tokens,
            purpose=decision.purpose.value,
            reservation_id=decision.reservation_id,
            reset_at=decision.reset_at.isoformat() if decision.reset_at is not None else None,
        )


def _check_tokens(value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"token counts must be non-negative integers, got {value!r}")


def _level_for(ratio: float) -> BudgetLevel:
    if ratio >= 1.0:
        return BudgetLevel.BLOCKED
    if ratio >= BUDGET_CRITICAL_RATIO:
        return BudgetLevel.CRITICAL
    if ratio >= BUDGET_WARNING_RATIO:
        return BudgetLevel.WARNING
    return BudgetLevel.ACTIVE


def _day_start(now: datetime) -> datetime:
    current = now.astimezone(UTC)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def _next_midnight(now: datetime) -> datetime:
    return _day_start(now) + timedelta(days=1)


__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionPurpose",
    "BudgetLevel",
    "BudgetStatus",
    "QueueCountProvider",
    "QueueCounts",
]
