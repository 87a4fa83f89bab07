"""Domain event taxonomy and the serializable event envelope."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum

from hive_scheduler.domain import ids

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class EventCategory(StrEnum):
    AGENT = "agent"
    ASSIGNMENT = "assignment"
    CYCLE = "cycle"
    BUDGET = "budget"
    QUEUE = "queue"
    QUERY = "query"


class EventType(StrEnum):
    """Notifications emitted by the scheduling core."""

    AGENT_REGISTERED = "agent:registered"
    AGENT_OFFLINE = "agent:offline"
    AGENT_RECOVERED = "agent:recovered"

    ASSIGNMENT_STARTED = "assignment:started"
    ASSIGNMENT_COMPLETED = "assignment:completed"
    ASSIGNMENT_FAILED = "assignment:failed"

    CYCLE_STARTED = "cycle:started"
    CYCLE_PHASE_STARTED = "cycle:phase_started"
    CYCLE_PHASE_COMPLETED = "cycle:phase_completed"
    CYCLE_BLOCKED = "cycle:blocked"
    CYCLE_PAUSED = "cycle:paused"
    CYCLE_RESUMED = "cycle:resumed"
    CYCLE_COMPLETED = "cycle:completed"
    CYCLE_FAILED = "cycle:failed"

    BUDGET_WARNING = "budget:warning"
    BUDGET_BLOCKED = "budget:blocked"

    ITEM_ENQUEUED = "item:enqueued"
    ITEM_DEQUEUED = "item:dequeued"
    ITEM_COMPLETED = "item:completed"
    ITEM_FAILED = "item:failed"
    ITEM_RETRY = "item:retry"
    ITEM_CANCELLED = "item:cancelled"
    ITEM_RESCHEDULED = "item:rescheduled"
    QUEUE_PAUSED = "queue:paused"
    QUEUE_RESUMED = "queue:resumed"
    QUEUE_CLEARED = "queue:cleared"

    QUERY_CREATED = "query:created"
    QUERY_RESOLVED = "query:resolved"

    @property
    def category(self) -> EventCategory:
        prefix = self.value.split(":", 1)[0]
        if prefix == "item":
            return EventCategory.QUEUE
        return EventCategory(prefix)


@dataclass(slots=True)
class SchedulerEvent:
    """Serializable envelope delivered to notification subscribers."""

    event_type: EventType
    project_id: str | None
    payload: dict[str, JSONValue] = field(default_factory=dict)
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        ids.validate_prefixed_id(self.event_id, ids.EVENT_ID_PREFIX)
        self.event_type = EventType(self.event_type)
        if self.timestamp.tzinfo is None:
            raise ValueError("SchedulerEvent.timestamp: datetime must be timezone-aware UTC")
        self.timestamp = self.timestamp.astimezone(UTC)
        self.payload = _as_json_object(self.payload, "SchedulerEvent.payload")

    @property
    def category(self) -> EventCategory:
        return self.event_type.category

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            "project_id": self.project_id,
            "payload": dict(self.payload),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SchedulerEvent:
        missing = sorted({"event_id", "event_type", "timestamp"} - set(data))
        if missing:
            raise ValueError(f"SchedulerEvent: missing required fields: {missing}")
        raw_timestamp = data["timestamp"]
        if not isinstance(raw_timestamp, str):
            raise ValueError("SchedulerEvent.timestamp: expected ISO-8601 string")
        text = raw_timestamp[:-1] + "+00:00" if raw_timestamp.endswith("Z") else raw_timestamp
        project_id = data.get("project_id")
        return cls(
            event_type=EventType(str(data["event_type"])),
            project_id=project_id if isinstance(project_id, str) else None,
            payload=_as_json_object(data.get("payload", {}), "SchedulerEvent.payload"),
            event_id=str(data["event_id"]),
            timestamp=datetime.fromisoformat(text),
        )


def _as_json_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float value must be finite")
        return value
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}")
        return out
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


__all__ = ["EventCategory", "EventType", "SchedulerEvent"]
