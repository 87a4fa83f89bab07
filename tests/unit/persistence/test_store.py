"""State store tests run against both the in-memory and SQLite backends."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from hive_scheduler.domain.models import (
    Cycle,
    CyclePhase,
    CycleStatus,
    Priority,
    Query,
    QueryStatus,
    UsageEvent,
    WorkItem,
    WorkItemStatus,
    WorkPayload,
)
from hive_scheduler.persistence.store import InMemoryStateStore, SQLiteStateStore, StateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_BASE_TS = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)

StoreFactory = Callable[[Path], StateStore]


def _memory(_: Path) -> StateStore:
    return InMemoryStateStore()


def _sqlite(tmp_path: Path) -> StateStore:
    return SQLiteStateStore.open(tmp_path / "state" / "hive.sqlite")


@pytest.fixture(params=[_memory, _sqlite], ids=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> StateStore:
    factory: StoreFactory = request.param
    return factory(tmp_path)


def _item(item_id: str, *, project_id: str = "web", offset: int = 0) -> WorkItem:
    return WorkItem(
        id=item_id,
        project_id=project_id,
        payload=WorkPayload(directive=f"do {item_id}"),
        priority=Priority.HIGH,
        created_at=_BASE_TS + timedelta(seconds=offset),
    )


def test_stores_satisfy_protocol(store: StateStore) -> None:
    assert isinstance(store, StateStore)


def test_work_item_upsert_and_status_filter(store: StateStore) -> None:
    first = _item("wi-1")
    second = _item("wi-2", offset=5)
    other_project = _item("wi-3", project_id="api")
    for item in (second, first, other_project):
        store.save_work_item(item)

    first.status = WorkItemStatus.COMPLETED
    store.save_work_item(first)

    listed = store.list_work_items("web")
    assert [item.id for item in listed] == ["wi-1", "wi-2"]
    assert store.get_work_item("wi-1") == first
    assert [
        item.id for item in store.list_work_items("web", statuses=[WorkItemStatus.PENDING])
    ] == ["wi-2"]
    assert store.list_work_items("web", statuses=[]) == []
    assert store.get_work_item("missing") is None


def test_reads_are_detached_copies(store: StateStore) -> None:
    store.save_work_item(_item("wi-1"))

    loaded = store.get_work_item("wi-1")
    assert loaded is not None
    loaded.status = WorkItemStatus.FAILED

    reloaded = store.get_work_item("wi-1")
    assert reloaded is not None
    assert reloaded.status is WorkItemStatus.PENDING


def test_cycle_round_trip_and_filter(store: StateStore) -> None:
    cycle = Cycle(
        id="cy-1",
        project_id="web",
        work_item_id="wi-1",
        title="Add login form",
        created_at=_BASE_TS,
        updated_at=_BASE_TS,
    )
    store.save_cycle(cycle)

    cycle.phase = CyclePhase.IMPLEMENT
    cycle.status = CycleStatus.PAUSED
    cycle.pause_reason = "waiting"
    cycle.updated_at = _BASE_TS + timedelta(minutes=1)
    store.save_cycle(cycle)

    assert store.get_cycle("cy-1") == cycle
    assert [item.id for item in store.list_cycles("web", statuses=[CycleStatus.PAUSED])] == [
        "cy-1"
    ]
    assert store.list_cycles("web", statuses=[CycleStatus.COMPLETED]) == []
    assert store.get_cycle("missing") is None


def test_query_round_trip_and_filter(store: StateStore) -> None:
    query = Query(
        id="q-1",
        project_id="web",
        cycle_id="cy-1",
        question="Which OAuth provider should be used?",
        created_at=_BASE_TS,
    )
    store.save_query(query)

    assert [item.id for item in store.list_queries("web", statuses=[QueryStatus.PENDING])] == [
        "q-1"
    ]

    query.status = QueryStatus.ANSWERED
    query.answer = "Use GitHub"
    query.resolved_at = _BASE_TS + timedelta(minutes=3)
    store.save_query(query)

    assert store.get_query("q-1") == query
    assert store.list_queries("web", statuses=[QueryStatus.PENDING]) == []
    assert store.list_queries("api") == []


def test_usage_is_append_only_and_filtered_by_time(store: StateStore) -> None:
    early = UsageEvent(
        id="ue-1",
        project_id="web",
        timestamp=_BASE_TS,
        input_tokens=100,
        output_tokens=50,
    )
    late = UsageEvent(
        id="ue-2",
        project_id="web",
        timestamp=_BASE_TS + timedelta(hours=2),
        input_tokens=30,
        output_tokens=0,
        success=False,
        work_item_id="wi-1",
    )
    store.append_usage(early)
    store.append_usage(late)
    store.append_usage(
        UsageEvent(id="ue-3", project_id="api", timestamp=_BASE_TS, input_tokens=1, output_tokens=1)
    )

    assert store.list_usage("web") == [early, late]
    assert store.list_usage("web", since=_BASE_TS + timedelta(hours=1)) == [late]


def test_sqlite_store_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "state" / "hive.sqlite"
    SQLiteStateStore.open(path).save_work_item(_item("wi-1"))

    reopened = SQLiteStateStore.open(path)

    loaded = reopened.get_work_item("wi-1")
    assert loaded is not None
    assert loaded.priority is Priority.HIGH
    assert reopened.db.path == path
