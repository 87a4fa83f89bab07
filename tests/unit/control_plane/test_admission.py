"""Admission controller tests: caps, rate windows, reservations and thresholds."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from hive_scheduler.config.schema import default_config
from hive_scheduler.control_plane.admission import (
    AdmissionController,
    AdmissionPurpose,
    BudgetLevel,
    QueueCounts,
)
from hive_scheduler.domain.events import EventType, SchedulerEvent
from hive_scheduler.domain.models import AdmissionLimits
from hive_scheduler.observability.events import EventBus
from hive_scheduler.persistence.store import InMemoryStateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def _limits(**overrides: int) -> AdmissionLimits:
    values = {
        "daily_token_cap": 1000,
        "per_request_token_cap": 1000,
        "requests_per_minute_cap": 100,
        "requests_per_hour_cap": 1000,
        "max_queue_depth": 10,
        "max_parallel_workers": 3,
    }
    values.update(overrides)
    return AdmissionLimits(**values)


def _controller(
    limits: AdmissionLimits | None = None,
    *,
    clock: _Clock | None = None,
    bus: EventBus | None = None,
) -> tuple[AdmissionController, _Clock]:
    current = clock or _Clock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC))
    controller = AdmissionController(
        store=InMemoryStateStore(),
        default_limits=limits or _limits(),
        event_bus=bus,
        clock=current,
    )
    return controller, current


def test_second_reservation_over_daily_cap_is_refused() -> None:
    controller, _ = _controller()

    first = controller.admit("web", 600)
    second = controller.admit("web", 600)

    assert first.allowed
    assert first.reservation_id is not None
    assert not second.allowed
    assert second.reason_code == "daily_token_limit"
    assert "Daily token limit" in second.reason
    assert second.reset_at == datetime(2026, 3, 2, 0, 0, 0, tzinfo=UTC)
    assert second.next_step


def test_usage_exactly_at_cap_refuses_one_more_token() -> None:
    controller, _ = _controller(_limits(daily_token_cap=500))
    controller.record_usage("web", 300, 200)

    assert not controller.can_admit("web", 1).allowed
    assert controller.can_admit("web", 0).allowed
    assert controller.budget_status("web").level is BudgetLevel.BLOCKED


def test_per_request_cap_is_checked_first() -> None:
    controller, _ = _controller(_limits(per_request_token_cap=100))

    decision = controller.can_admit("web", 101)

    assert not decision.allowed
    assert decision.reason_code == "request_token_limit"
    assert decision.failure_report().subject_id == "web"


def test_releasing_a_reservation_frees_budget() -> None:
    controller, _ = _controller()
    decision = controller.admit("web", 900)
    assert decision.reservation_id is not None
    assert not controller.can_admit("web", 200).allowed

    assert controller.release(decision.reservation_id)
    assert not controller.release(decision.reservation_id)
    assert controller.can_admit("web", 200).allowed


def test_record_usage_settles_reservation_and_failed_runs_charge_input_only() -> None:
    controller, _ = _controller()
    decision = controller.admit("web", 400, work_item_id="wi-1")

    event = controller.record_usage(
        "web",
        120,
        80,
        success=False,
        work_item_id="wi-1",
        reservation_id=decision.reservation_id,
    )

    assert event.total_tokens == 120
    assert controller.reservations("web") == ()
    status = controller.budget_status("web")
    assert status.used_today == 120
    assert status.reserved_tokens == 0
    assert status.remaining == 880


def test_minute_and_hour_windows_trail_the_clock() -> None:
    controller, clock = _controller(_limits(requests_per_minute_cap=2, requests_per_hour_cap=3))
    controller.record_usage("web", 1, 1)
    controller.record_usage("web", 1, 1)

    refused = controller.can_admit("web", 1)
    assert refused.reason_code == "minute_rate_limit"
    assert refused.reset_at == clock.now + timedelta(seconds=60)

    clock.advance(seconds=61)
    assert controller.can_admit("web", 1).allowed
    controller.record_usage("web", 1, 1)

    clock.advance(seconds=61)
    hourly = controller.can_admit("web", 1)
    assert hourly.reason_code == "hourly_rate_limit"

    clock.advance(minutes=60)
    assert controller.can_admit("web", 1).allowed


def test_daily_usage_resets_at_utc_midnight() -> None:
    clock = _Clock(datetime(2026, 3, 1, 23, 50, 0, tzinfo=UTC))
    controller, _ = _controller(clock=clock)
    controller.record_usage("web", 1000, 0)
    assert not controller.can_admit("web", 1).allowed

    clock.advance(minutes=15)

    assert controller.can_admit("web", 1).allowed
    assert controller.budget_status("web").used_today == 0


def test_parallel_and_queue_depth_checks_follow_purpose() -> None:
    controller, _ = _controller(_limits(max_parallel_workers=1, max_queue_depth=2))
    controller.set_queue_counts(
        lambda project_id: QueueCounts(
            pending=1, processing=1, processing_ids=frozenset({"wi-running"})
        )
    )

    execute = controller.can_admit("web", 10, purpose=AdmissionPurpose.EXECUTE)
    assert execute.reason_code == "parallel_worker_limit"

    own_slot = controller.can_admit(
        "web", 10, purpose=AdmissionPurpose.EXECUTE, work_item_id="wi-running"
    )
    assert own_slot.allowed

    enqueue = controller.can_admit("web", 10, purpose=AdmissionPurpose.ENQUEUE)
    assert enqueue.reason_code == "queue_full"
    assert enqueue.purpose is AdmissionPurpose.ENQUEUE


def test_enqueue_purpose_skips_token_checks() -> None:
    controller, _ = _controller(_limits(daily_token_cap=10))
    controller.record_usage("web", 10, 0)

    assert controller.can_admit("web", 5000, purpose=AdmissionPurpose.ENQUEUE).allowed


def test_threshold_events_fire_once_per_crossing() -> None:
    bus = EventBus()
    seen: list[SchedulerEvent] = []
    bus.subscribe(EventType.BUDGET_WARNING, seen.append)
    bus.subscribe(EventType.BUDGET_BLOCKED, seen.append)
    controller, _ = _controller(bus=bus)

    controller.record_usage("web", 500, 0)
    controller.record_usage("web", 350, 0)
    controller.record_usage("web", 10, 0)
    controller.record_usage("web", 200, 0)

    assert [event.event_type for event in seen] == [
        EventType.BUDGET_WARNING,
        EventType.BUDGET_BLOCKED,
    ]
    assert seen[0].project_id == "web"
    assert seen[1].payload["used_today"] == 1060


def test_budget_status_levels_and_low_budget_flag() -> None:
    controller, _ = _controller()
    controller.record_usage("web", 850, 0)

    status = controller.budget_status("web")

    assert status.level is BudgetLevel.WARNING
    assert status.low_budget
    assert status.to_dict()["remaining"] == 150

    controller.record_usage("web", 100, 0)
    assert controller.budget_status("web").level is BudgetLevel.CRITICAL


def test_project_overrides_from_config() -> None:
    config = default_config()
    config["projects"] = {"small": {"admission": {"daily_token_cap": 100}}}

    controller = AdmissionController.from_config(config, store=InMemoryStateStore())

    assert controller.limits_for("small").daily_token_cap == 100
    assert controller.limits_for("small").per_request_token_cap == 50_000
    assert controller.limits_for("other").daily_token_cap == 1_000_000


def test_set_limits_applies_immediately() -> None:
    controller, _ = _controller()
    controller.set_limits("web", _limits(daily_token_cap=50))

    assert not controller.can_admit("web", 60).allowed
    assert controller.can_admit("api", 60).allowed


def test_invalid_token_counts_are_rejected() -> None:
    controller, _ = _controller()
    with pytest.raises(ValueError):
        controller.can_admit("web", -1)
    with pytest.raises(ValueError):
        controller.record_usage("web", True, 0)  # type: ignore[arg-type]


def test_concurrent_admissions_never_overspend() -> None:
    controller, _ = _controller(_limits(daily_token_cap=1000, requests_per_minute_cap=1000))
    granted: list[str] = []
    lock = threading.Lock()

    def _worker() -> None:
        decision = controller.admit("web", 100)
        if decision.allowed and decision.reservation_id is not None:
            with lock:
                granted.append(decision.reservation_id)

    threads = [threading.Thread(target=_worker) for _ in range(25)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 10
    assert controller.budget_status("web").reserved_tokens == 1000
