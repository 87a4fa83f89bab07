"""Query manager tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hive_scheduler.control_plane.queries import RETRY_WITH_DIFFERENT_APPROACH, QueryManager
from hive_scheduler.domain.errors import QueryStateError
from hive_scheduler.domain.events import EventType, SchedulerEvent
from hive_scheduler.domain.models import QueryStatus, QueryUrgency
from hive_scheduler.observability.events import EventBus
from hive_scheduler.persistence.store import InMemoryStateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def _manager(bus: EventBus | None = None) -> tuple[QueryManager, InMemoryStateStore, _Clock]:
    store = InMemoryStateStore()
    clock = _Clock()
    return QueryManager(store=store, event_bus=bus, clock=clock), store, clock


def test_create_persists_and_publishes() -> None:
    bus = EventBus()
    seen: list[SchedulerEvent] = []
    bus.subscribe(EventType.QUERY_CREATED, seen.append)
    manager, store, _ = _manager(bus)

    query = manager.create("web", "cy-1", "Which database?", context="phase design")

    assert store.get_query(query.id) == query
    assert query.status is QueryStatus.PENDING
    assert query.urgency is QueryUrgency.BLOCKING
    assert seen[0].payload["query_id"] == query.id
    assert [item.id for item in manager.pending("web")] == [query.id]


def test_answer_resolves_once() -> None:
    manager, _, clock = _manager()
    query = manager.create("web", "cy-1", "Which database?")
    clock.now += timedelta(seconds=90)

    answered = manager.answer(query.id, "Use Postgres")

    assert answered.status is QueryStatus.ANSWERED
    assert answered.answer == "Use Postgres"
    assert answered.resolved_at == clock.now
    assert manager.pending("web") == []
    with pytest.raises(QueryStateError, match="only pending queries"):
        manager.answer(query.id, "again")
    with pytest.raises(QueryStateError, match="not found"):
        manager.dismiss("q-missing")


def test_dismiss_records_reason() -> None:
    manager, _, _ = _manager()
    query = manager.create("web", None, "Ship on Friday?", urgency=QueryUrgency.ADVISORY)

    dismissed = manager.dismiss(query.id)

    assert dismissed.status is QueryStatus.DISMISSED
    assert dismissed.answer is None


def test_pending_filters_by_urgency() -> None:
    manager, _, _ = _manager()
    blocking = manager.create("web", "cy-1", "Blocking?")
    advisory = manager.create("web", "cy-2", "Advisory?", urgency=QueryUrgency.ADVISORY)

    assert [q.id for q in manager.pending("web", QueryUrgency.BLOCKING)] == [blocking.id]
    assert [q.id for q in manager.pending("web", QueryUrgency.ADVISORY)] == [advisory.id]


def test_only_stale_advisory_queries_expire() -> None:
    manager, store, clock = _manager()
    blocking = manager.create("web", "cy-1", "Blocking?")
    advisory = manager.create("web", "cy-2", "Advisory?", urgency=QueryUrgency.ADVISORY)

    assert manager.expire_stale("web", clock.now + timedelta(days=6)) == []
    expired = manager.expire_stale("web", clock.now + timedelta(days=8))

    assert expired == [advisory.id]
    stored = store.get_query(advisory.id)
    assert stored is not None and stored.status is QueryStatus.EXPIRED
    assert [q.id for q in manager.pending("web")] == [blocking.id]


@pytest.mark.parametrize(
    ("answer", "should_continue"),
    [
        ("Yes, go ahead with OAuth", True),
        ("No, stop and use sessions", False),
        ("Try a different approach", False),
        ("   ", True),
        (None, True),
        ("Nothing to add", True),
    ],
)
def test_evaluate_answer(answer: str | None, should_continue: bool) -> None:
    manager, _, _ = _manager()

    evaluation = manager.evaluate_answer(answer)

    assert evaluation.should_continue is should_continue
    if not should_continue:
        assert evaluation.alternative == RETRY_WITH_DIFFERENT_APPROACH


def test_decision_stats_average_resolved_queries() -> None:
    manager, _, clock = _manager()
    first = manager.create("web", "cy-1", "One?")
    second = manager.create("web", "cy-2", "Two?")
    manager.create("web", "cy-3", "Three?")
    clock.now += timedelta(seconds=10)
    manager.answer(first.id, "yes")
    clock.now += timedelta(seconds=20)
    manager.dismiss(second.id)

    stats = manager.decision_stats("web")

    assert stats.total == 3
    assert stats.by_status["pending"] == 1
    assert stats.by_status["answered"] == 1
    assert stats.by_status["expired"] == 0
    assert stats.average_response_seconds == pytest.approx(20.0)
