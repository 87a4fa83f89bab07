"""Unit tests for the metrics registry."""

from __future__ import annotations

import json
import threading

import pytest

from hive_scheduler.domain.events import EventType
from hive_scheduler.observability.events import EventBus
from hive_scheduler.observability.metrics import EVENTS_COUNTER, MetricsRegistry


def test_thread_safe_counter_increments() -> None:
    registry = MetricsRegistry()

    def worker() -> None:
        for _ in range(500):
            registry.inc("cycles_completed_total", labels={"project": "web"})

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get_counter("cycles_completed_total", labels={"project": "web"}) == 4000.0
    assert registry.get_counter("cycles_completed_total") == 0.0


def test_gauges_and_distributions() -> None:
    registry = MetricsRegistry()
    registry.set_gauge("queue_depth", 4, labels={"project": "web"})
    registry.set_gauge("queue_depth", 2, labels={"project": "web"})
    for value in (1.0, 3.0, 2.0):
        registry.observe("phase_duration_seconds", value, labels={"phase": "define"})

    assert registry.get_gauge("queue_depth", labels={"project": "web"}) == 2.0
    assert registry.get_gauge("missing") is None
    assert registry.get_distribution("phase_duration_seconds", labels={"phase": "define"}) == {
        "count": 3,
        "sum": 6.0,
        "min": 1.0,
        "max": 3.0,
        "avg": 2.0,
    }


def test_invalid_metric_inputs_are_rejected() -> None:
    registry = MetricsRegistry()
    with pytest.raises(ValueError, match=">= 0"):
        registry.inc("x", -1)
    with pytest.raises(ValueError, match="non-empty string"):
        registry.inc(" ")
    with pytest.raises(ValueError, match="finite"):
        registry.observe("x", float("nan"))
    with pytest.raises(ValueError, match="non-empty key and value"):
        registry.inc("x", labels={"project": ""})


def test_snapshot_keys_are_deterministic() -> None:
    registry = MetricsRegistry()
    registry.inc("b_total", labels={"z": "1", "a": "2"})
    registry.inc("a_total")

    snapshot = registry.snapshot()

    assert list(snapshot["counters"]) == ["a_total", "b_total{a=2,z=1}"]  # type: ignore[arg-type]
    assert json.loads(registry.to_json())["counters"] == snapshot["counters"]


def test_attach_counts_bus_events_by_type_and_project() -> None:
    bus = EventBus()
    registry = MetricsRegistry()
    registry.attach(bus)

    bus.emit(EventType.ITEM_ENQUEUED, "web")
    bus.emit(EventType.ITEM_ENQUEUED, "web")
    bus.emit(EventType.AGENT_OFFLINE, None)

    assert (
        registry.get_counter(
            EVENTS_COUNTER, labels={"event_type": "item:enqueued", "project": "web"}
        )
        == 2.0
    )
    assert registry.get_counter(EVENTS_COUNTER, labels={"event_type": "agent:offline"}) == 1.0
