"""In-process scheduler metrics.

Three kinds of series are kept, each addressed by a name plus an optional label
set: monotonically increasing counters, last-value gauges and summaries
(count/sum/min/max of observed samples). ``snapshot()`` renders them with
stable keys such as ``cycles_completed_total{project=web}`` so the CLI's JSON
output diffs cleanly between runs.
"""

from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Final

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    from collections.abc import Mapping

    from hive_scheduler.domain.events import SchedulerEvent
    from hive_scheduler.observability.events import EventBus

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]

EVENTS_COUNTER: Final[str] = "scheduler_events_total"
MAX_NAME_LENGTH: Final[int] = 128


@dataclass(slots=True)
class Summary:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def add(self, sample: float) -> None:
        self.count += 1
        self.total += sample
        self.minimum = sample if self.minimum is None else min(self.minimum, sample)
        self.maximum = sample if self.maximum is None else max(self.maximum, sample)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


def series_key(name: str, labels: Mapping[str, str] | None = None) -> SeriesKey:
    """Validate ``name``/``labels`` and return the hashable key for that series."""

    clean = name.strip() if isinstance(name, str) else ""
    if not clean:
        raise ValueError("metric name must be a non-empty string")
    if len(clean) > MAX_NAME_LENGTH:
        raise ValueError(f"metric name must be <= {MAX_NAME_LENGTH} characters")
    pairs = []
    for label, value in (labels or {}).items():
        pair = (str(label).strip(), str(value).strip())
        if not all(pair):
            raise ValueError(f"metric label {label!r} must have a non-empty key and value")
        pairs.append(pair)
    return clean, tuple(sorted(pairs))


def series_id(key: SeriesKey) -> str:
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f"{label}={value}" for label, value in labels) + "}"


def _sample(value: float, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"{what} must be finite")
    return float(value)


class MetricsRegistry:
    """Thread-safe counters, gauges and summaries for one scheduler process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = datetime.now(tz=UTC)
        self._counters: dict[SeriesKey, float] = {}
        self._gauges: dict[SeriesKey, float] = {}
        self._summaries: dict[SeriesKey, Summary] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        step = _sample(amount, "amount")
        if step < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = series_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + step

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key, reading = series_key(name, labels), _sample(value, "value")
        with self._lock:
            self._gauges[key] = reading

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key, sample = series_key(name, labels), _sample(value, "value")
        with self._lock:
            self._summaries.setdefault(key, Summary()).add(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(series_key(name, labels), 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(series_key(name, labels))

    def get_distribution(
        self, name: str, *, labels: Mapping[str, str] | None = None
    ) -> dict[str, JSONValue] | None:
        with self._lock:
            summary = self._summaries.get(series_key(name, labels))
            return None if summary is None else summary.to_dict()

    def record_event(self, event: SchedulerEvent) -> None:
        """Bus subscriber counting notifications per event type and project."""

        labels = {"event_type": event.event_type.value}
        if event.project_id:
            labels["project"] = event.project_id
        self.inc(EVENTS_COUNTER, labels=labels)

    def attach(self, bus: EventBus) -> int:
        return bus.subscribe(None, self.record_event)

    def snapshot(self) -> dict[str, JSONValue]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            summaries = {key: summary.to_dict() for key, summary in self._summaries.items()}
        uptime = (datetime.now(tz=UTC) - self._started).total_seconds()
        return {
            "metadata": {
                "created_at": self._started.isoformat(timespec="seconds").replace("+00:00", "Z"),
                "uptime_seconds": max(0.0, uptime),
            },
            "counters": {series_id(key): counters[key] for key in sorted(counters)},
            "gauges": {series_id(key): gauges[key] for key in sorted(gauges)},
            "distributions": {series_id(key): summaries[key] for key in sorted(summaries)},
        }

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.snapshot(), sort_keys=True, indent=indent, ensure_ascii=False)


__all__ = [
    "EVENTS_COUNTER",
    "JSONScalar",
    "JSONValue",
    "MetricsRegistry",
    "Summary",
    "series_id",
    "series_key",
]
