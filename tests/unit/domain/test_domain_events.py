"""Unit tests for the scheduler event envelope."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from hive_scheduler.domain import ids
from hive_scheduler.domain.events import EventCategory, EventType, SchedulerEvent
from hive_scheduler.domain.models import Priority

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


def test_event_categories_follow_prefix() -> None:
    assert EventType.AGENT_OFFLINE.category is EventCategory.AGENT
    assert EventType.BUDGET_BLOCKED.category is EventCategory.BUDGET
    assert EventType.ITEM_RETRY.category is EventCategory.QUEUE
    assert EventType.QUEUE_CLEARED.category is EventCategory.QUEUE
    assert EventType.CYCLE_PHASE_COMPLETED.category is EventCategory.CYCLE
    assert EventType.QUERY_CREATED.category is EventCategory.QUERY
    assert EventType.ASSIGNMENT_FAILED.category is EventCategory.ASSIGNMENT


def test_event_values_are_colon_namespaced() -> None:
    assert EventType.BUDGET_WARNING.value == "budget:warning"
    assert EventType.ITEM_ENQUEUED.value == "item:enqueued"
    assert all(":" in item.value for item in EventType)


def test_event_round_trip_normalizes_payload() -> None:
    stamp = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
    event = SchedulerEvent(
        event_type=EventType.ITEM_ENQUEUED,
        project_id="web",
        payload={
            "work_item_id": "wi-1",
            "priority": Priority.HIGH,
            "at": stamp,
            "tags": ("auth",),
        },
        timestamp=stamp,
    )
    assert event.event_id.startswith(f"{ids.EVENT_ID_PREFIX}-")
    assert event.payload["at"] == "2026-03-01T12:00:00.000000Z"
    assert event.payload["tags"] == ["auth"]
    assert event.payload["priority"] == 750

    restored = SchedulerEvent.from_dict(event.to_dict())
    assert restored.to_json() == event.to_json()
    assert restored.category is EventCategory.QUEUE


def test_event_rejects_naive_timestamp_and_bad_payload() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        SchedulerEvent(
            event_type=EventType.QUEUE_PAUSED,
            project_id="web",
            timestamp=datetime(2026, 1, 1),  # noqa: DTZ001
        )
    with pytest.raises(ValueError, match="not JSON-serializable"):
        SchedulerEvent(event_type=EventType.QUEUE_PAUSED, project_id="web", payload={"x": object()})
    with pytest.raises(ValueError, match="missing required fields"):
        SchedulerEvent.from_dict({"event_type": "queue:paused"})
