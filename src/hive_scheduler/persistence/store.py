"""
hive-scheduler state store boundary.

Purpose
- Persistence callback used by the queue, admission controller, cycle machine
  and query manager. Every state transition is written through it.

What should be included in this file
- ``StateStore`` protocol.
- ``InMemoryStateStore`` for tests and single-run CLI sessions.
- ``SQLiteStateStore`` backed by ``StateDB`` for crash recovery.

Functional requirements
- Reads return detached copies so callers cannot mutate stored state.
- Usage events are append-only.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol, TypeVar, cast, runtime_checkable

from hive_scheduler.domain.models import (
    CanonicalModel,
    Cycle,
    CycleStatus,
    Query,
    QueryStatus,
    UsageEvent,
    WorkItem,
    WorkItemStatus,
)
from hive_scheduler.persistence.state_db import RowValue, SQLParams, StateDB

if TYPE_CHECKING:
    from pathlib import Path

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

TModel = TypeVar("TModel", bound=CanonicalModel)


@runtime_checkable
class StateStore(Protocol):
    """Persistence callback for scheduler state."""

    def save_work_item(self, item: WorkItem) -> None: ...

    def get_work_item(self, work_item_id: str) -> WorkItem | None: ...

    def list_work_items(
        self,
        project_id: str,
        *,
        statuses: Iterable[WorkItemStatus] | None = None,
    ) -> list[WorkItem]: ...

    def save_cycle(self, cycle: Cycle) -> None: ...

    def get_cycle(self, cycle_id: str) -> Cycle | None: ...

    def list_cycles(
        self,
        project_id: str,
        *,
        statuses: Iterable[CycleStatus] | None = None,
    ) -> list[Cycle]: ...

    def save_query(self, query: Query) -> None: ...

    def get_query(self, query_id: str) -> Query | None: ...

    def list_queries(
        self,
        project_id: str,
        *,
        statuses: Iterable[QueryStatus] | None = None,
    ) -> list[Query]: ...

    def append_usage(self, event: UsageEvent) -> None: ...

    def list_usage(self, project_id: str, *, since: datetime | None = None) -> list[UsageEvent]: ...


class InMemoryStateStore:
    """Dictionary-backed store; every read and write goes through a serialized copy."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._work_items: dict[str, WorkItem] = {}
        self._cycles: dict[str, Cycle] = {}
        self._queries: dict[str, Query] = {}
        self._usage: list[UsageEvent] = []

    def save_work_item(self, item: WorkItem) -> None:
        with self._lock:
            self._work_items[item.id] = _detached(WorkItem, item)

    def get_work_item(self, work_item_id: str) -> WorkItem | None:
        with self._lock:
            item = self._work_items.get(work_item_id)
            return None if item is None else _detached(WorkItem, item)

    def list_work_items(
        self,
        project_id: str,
        *,
        statuses: Iterable[WorkItemStatus] | None = None,
    ) -> list[WorkItem]:
        wanted = None if statuses is None else frozenset(statuses)
        with self._lock:
            items = [
                _detached(WorkItem, item)
                for item in self._work_items.values()
                if item.project_id == project_id and (wanted is None or item.status in wanted)
            ]
        return sorted(items, key=lambda item: (item.created_at, item.id))

    def save_cycle(self, cycle: Cycle) -> None:
        with self._lock:
            self._cycles[cycle.id] = _detached(Cycle, cycle)

    def get_cycle(self, cycle_id: str) -> Cycle | None:
        with self._lock:
            cycle = self._cycles.get(cycle_id)
            return None if cycle is None else _detached(Cycle, cycle)

    def list_cycles(
        self,
        project_id: str,
        *,
        statuses: Iterable[CycleStatus] | None = None,
    ) -> list[Cycle]:
        wanted = None if statuses is None else frozenset(statuses)
        with self._lock:
            cycles = [
                _detached(Cycle, cycle)
                for cycle in self._cycles.values()
                if cycle.project_id == project_id and (wanted is None or cycle.status in wanted)
            ]
        return sorted(cycles, key=lambda cycle: (cycle.created_at, cycle.id))

    def save_query(self, query: Query) -> None:
        with self._lock:
            self._queries[query.id] = _detached(Query, query)

    def get_query(self, query_id: str) -> Query | None:
        with self._lock:
            query = self._queries.get(query_id)
            return None if query is None else _detached(Query, query)

    def list_queries(
        self,
        project_id: str,
        *,
        statuses: Iterable[QueryStatus] | None = None,
    ) -> list[Query]:
        wanted = None if statuses is None else frozenset(statuses)
        with self._lock:
            queries = [
                _detached(Query, query)
                for query in self._queries.values()
                if query.project_id == project_id and (wanted is None or query.status in wanted)
            ]
        return sorted(queries, key=lambda query: (query.created_at, query.id))

    def append_usage(self, event: UsageEvent) -> None:
        with self._lock:
            self._usage.append(event)

    def list_usage(self, project_id: str, *, since: datetime | None = None) -> list[UsageEvent]:
        with self._lock:
            return [
                event
                for event in self._usage
                if event.project_id == project_id and (since is None or event.timestamp >= since)
            ]


class SQLiteStateStore:
    """``StateStore`` over the migrated SQLite schema in ``StateDB``."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @classmethod
    def open(cls, path: str | Path) -> SQLiteStateStore:
        return cls(StateDB(path))

    @property
    def db(self) -> StateDB:
        return self._db

    def save_work_item(self, item: WorkItem) -> None:
        self._db.execute(
            """
            INSERT INTO work_items (
                id, project_id, status, priority, created_at, updated_at, payload_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                priority = excluded.priority,
                updated_at = excluded.updated_at,
                payload_json = excluded.payload_json
            """,
            (
                item.id,
                item.project_id,
                item.status.value,
                int(item.priority),
                _iso8601z(item.created_at),
                _iso8601z(datetime.now(UTC)),
                item.to_json(),
            ),
        )

    def get_work_item(self, work_item_id: str) -> WorkItem | None:
        row = self._db.query_one(
            "SELECT payload_json FROM work_items WHERE id = ?", (work_item_id,)
        )
        if row is None:
            return None
        return WorkItem.from_json(_row_text(row, "payload_json", "work_items.payload_json"))

    def list_work_items(
        self,
        project_id: str,
        *,
        statuses: Iterable[WorkItemStatus] | None = None,
    ) -> list[WorkItem]:
        rows = self._select_payloads("work_items", project_id, statuses, order_by="created_at")
        return [
            WorkItem.from_json(_row_text(row, "payload_json", "work_items.payload_json"))
            for row in rows
        ]

    def save_cycle(self, cycle: Cycle) -> None:
        self._db.execute(
            """
            INSERT INTO cycles (
                id, project_id, work_item_id, status, phase, updated_at, payload_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                phase = excluded.phase,
                updated_at = excluded.updated_at,
                payload_json = excluded.payload_json
            """,
            (
                cycle.id,
                cycle.project_id,
                cycle.work_item_id,
                cycle.status.value,
                cycle.phase.value,
                _iso8601z(cycle.updated_at),
                cycle.to_json(),
            ),
        )

    def get_cycle(self, cycle_id: str) -> Cycle | None:
        row = self._db.query_one("SELECT payload_json FROM cycles WHERE id = ?", (cycle_id,))
        if row is None:
            return None
        return Cycle.from_json(_row_text(row, "payload_json", "cycles.payload_json"))

    def list_cycles(
        self,
        project_id: str,
        *,
        statuses: Iterable[CycleStatus] | None = None,
    ) -> list[Cycle]:
        rows = self._select_payloads("cycles", project_id, statuses, order_by="updated_at")
        return [
            Cycle.from_json(_row_text(row, "payload_json", "cycles.payload_json")) for row in rows
        ]

    def save_query(self, query: Query) -> None:
        self._db.execute(
            """
            INSERT INTO queries (
                id, project_id, cycle_id, status, urgency, created_at, payload_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                payload_json = excluded.payload_json
            """,
            (
                query.id,
                query.project_id,
                query.cycle_id,
                query.status.value,
                query.urgency.value,
                _iso8601z(query.created_at),
                query.to_json(),
            ),
        )

    def get_query(self, query_id: str) -> Query | None:
        row = self._db.query_one("SELECT payload_json FROM queries WHERE id = ?", (query_id,))
        if row is None:
            return None
        return Query.from_json(_row_text(row, "payload_json", "queries.payload_json"))

    def list_queries(
        self,
        project_id: str,
        *,
        statuses: Iterable[QueryStatus] | None = None,
    ) -> list[Query]:
        rows = self._select_payloads("queries", project_id, statuses, order_by="created_at")
        return [
            Query.from_json(_row_text(row, "payload_json", "queries.payload_json")) for row in rows
        ]

    def append_usage(self, event: UsageEvent) -> None:
        self._db.execute(
            """
            INSERT INTO usage_events (
                id, project_id, timestamp, input_tokens, output_tokens, success, work_item_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.project_id,
                _iso8601z(event.timestamp),
                event.input_tokens,
                event.output_tokens,
                1 if event.success else 0,
                event.work_item_id,
            ),
        )

    def list_usage(self, project_id: str, *, since: datetime | None = None) -> list[UsageEvent]:
        sql = (
            "SELECT id, project_id, timestamp, input_tokens, output_tokens, success, work_item_id "
            "FROM usage_events WHERE project_id = ?"
        )
        params: list[object] = [project_id]
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(_iso8601z(since))
        sql += " ORDER BY timestamp ASC, id ASC"
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [
            UsageEvent.from_dict(
                {
                    "id": row["id"],
                    "project_id": row["project_id"],
                    "timestamp": row["timestamp"],
                    "input_tokens": row["input_tokens"],
                    "output_tokens": row["output_tokens"],
                    "success": bool(row["success"]),
                    "work_item_id": row["work_item_id"],
                }
            )
            for row in rows
        ]

    def _select_payloads(
        self,
        table: str,
        project_id: str,
        statuses: Iterable[WorkItemStatus | CycleStatus | QueryStatus] | None,
        *,
        order_by: str,
    ) -> list[dict[str, RowValue]]:
        sql = f"SELECT payload_json FROM {table} WHERE project_id = ?"
        params: list[object] = [project_id]
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            placeholders = ",".join("?" for _ in values)
            sql += f" AND status IN ({placeholders})"
            params.extend(values)
        sql += f" ORDER BY {order_by} ASC, id ASC"
        return self._db.query_all(sql, cast("SQLParams", tuple(params)))


def _detached(model_type: type[TModel], value: TModel) -> TModel:
    return model_type.from_dict(value.to_dict())


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text column, got {type(value).__name__}")
    return value


def _iso8601z(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "InMemoryStateStore",
    "SQLiteStateStore",
    "StateStore",
]
