"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum, StrEnum
from typing import NoReturn, TypeVar, cast

from hive_scheduler.domain import ids as domain_ids

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 65_536


class Priority(IntEnum):
    """Ordered scheduling priority; larger values are dequeued first."""

    BACKGROUND = 100
    LOW = 250
    NORMAL = 500
    HIGH = 750
    CRITICAL = 1000

    @classmethod
    def parse(cls, value: object) -> Priority:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        allowed = ", ".join(item.name.lower() for item in cls)
        raise ValueError(f"invalid priority {value!r}; expected one of: {allowed}")


class TaskType(StrEnum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    REVIEW = "review"
    DEPLOYMENT = "deployment"
    DOCUMENTATION = "documentation"


class WorkItemStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY_SCHEDULED = "retry_scheduled"


class CyclePhase(StrEnum):
    DEFINE = "define"
    TEST = "test"
    IMPLEMENT = "implement"
    REFACTOR = "refactor"
    REVIEW = "review"
    COMPLETED = "completed"


class CycleStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(StrEnum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class AssignmentStatus(StrEnum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueryUrgency(StrEnum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


class QueryStatus(StrEnum):
    PENDING = "pending"
    ANSWERED = "answered"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


CYCLE_PHASE_ORDER: tuple[CyclePhase, ...] = (
    CyclePhase.DEFINE,
    CyclePhase.TEST,
    CyclePhase.IMPLEMENT,
    CyclePhase.REFACTOR,
    CyclePhase.REVIEW,
    CyclePhase.COMPLETED,
)

TERMINAL_WORK_ITEM_STATUSES: frozenset[WorkItemStatus] = frozenset(
    {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED}
)
TERMINAL_CYCLE_STATUSES: frozenset[CycleStatus] = frozenset(
    {CycleStatus.COMPLETED, CycleStatus.FAILED}
)


def successor_phase(phase: CyclePhase) -> CyclePhase:
    """Return the phase that follows ``phase`` in the fixed methodology order."""
    if phase is CyclePhase.COMPLETED:
        raise ValueError("completed cycles have no successor phase")
    return CYCLE_PHASE_ORDER[CYCLE_PHASE_ORDER.index(phase) + 1]


def utc_now() -> datetime:
    return datetime.now(UTC)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    __slots__ = ()

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


@dataclass(frozen=True, slots=True)
class WorkPayload(CanonicalModel):
    """Opaque directive handed to a worker plus the outcome it should produce."""

    directive: str
    expected_outcome: str = ""

    def __post_init__(self) -> None:
        _as_str(self.directive, "WorkPayload.directive")
        if not isinstance(self.expected_outcome, str):
            _fail("WorkPayload.expected_outcome", "must be a string")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkPayload:
        parsed = _expect_object(
            data, "WorkPayload", required={"directive"}, optional={"expected_outcome"}
        )
        return cls(
            directive=_as_str(parsed["directive"], "WorkPayload.directive"),
            expected_outcome=str(parsed.get("expected_outcome", "")),
        )


@dataclass(slots=True)
class WorkItem(CanonicalModel):
    id: str
    project_id: str
    payload: WorkPayload
    priority: Priority = Priority.NORMAL
    task_type: TaskType = TaskType.DEVELOPMENT
    status: WorkItemStatus = WorkItemStatus.PENDING
    dependencies: tuple[str, ...] = ()
    retry_count: int = 0
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    tags: tuple[str, ...] = ()
    estimated_duration_seconds: float | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: JSONValue = None
    error: str | None = None
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "WorkItem.id")
        self.project_id = _as_str(self.project_id, "WorkItem.project_id")
        if not isinstance(self.payload, WorkPayload):
            _fail("WorkItem.payload", "must be WorkPayload")
        self.priority = Priority.parse(self.priority)
        self.task_type = _as_enum(TaskType, self.task_type, "WorkItem.task_type")
        self.status = _as_enum(WorkItemStatus, self.status, "WorkItem.status")
        self.dependencies = _as_str_tuple(self.dependencies, "WorkItem.dependencies")
        if self.id in self.dependencies:
            _fail("WorkItem.dependencies", "work item cannot depend on itself")
        self.max_retries = _as_int(self.max_retries, "WorkItem.max_retries", minimum=0)
        self.retry_count = _as_int(self.retry_count, "WorkItem.retry_count", minimum=0)
        if self.retry_count > self.max_retries:
            _fail("WorkItem.retry_count", "must be <= WorkItem.max_retries")
        self.retry_delay_seconds = _as_float(
            self.retry_delay_seconds, "WorkItem.retry_delay_seconds", minimum=0.0
        )
        self.tags = _as_str_tuple(self.tags, "WorkItem.tags")
        if self.estimated_duration_seconds is not None:
            self.estimated_duration_seconds = _as_float(
                self.estimated_duration_seconds,
                "WorkItem.estimated_duration_seconds",
                minimum=0.0,
            )
        self.created_at = _as_datetime(self.created_at, "WorkItem.created_at")
        self.started_at = _as_optional_datetime(self.started_at, "WorkItem.started_at")
        self.completed_at = _as_optional_datetime(self.completed_at, "WorkItem.completed_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORK_ITEM_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        parsed = _expect_object(
            data,
            "WorkItem",
            required={"id", "project_id", "payload"},
            optional={
                "priority",
                "task_type",
                "status",
                "dependencies",
                "retry_count",
                "max_retries",
                "retry_delay_seconds",
                "tags",
                "estimated_duration_seconds",
                "created_at",
                "started_at",
                "completed_at",
                "result",
                "error",
                "metadata",
            },
        )
        payload_raw = parsed["payload"]
        payload = (
            payload_raw
            if isinstance(payload_raw, WorkPayload)
            else WorkPayload.from_dict(cast("Mapping[str, object]", payload_raw))
        )
        metadata = parsed.get("metadata", {})
        return cls(
            id=_as_str(parsed["id"], "WorkItem.id"),
            project_id=_as_str(parsed["project_id"], "WorkItem.project_id"),
            payload=payload,
            priority=Priority.parse(parsed.get("priority", Priority.NORMAL)),
            task_type=_as_enum(
                TaskType, parsed.get("task_type", TaskType.DEVELOPMENT), "WorkItem.task_type"
            ),
            status=_as_enum(
                WorkItemStatus, parsed.get("status", WorkItemStatus.PENDING), "WorkItem.status"
            ),
            dependencies=_as_str_tuple(parsed.get("dependencies", ()), "WorkItem.dependencies"),
            retry_count=_as_int(parsed.get("retry_count", 0), "WorkItem.retry_count"),
            max_retries=_as_int(parsed.get("max_retries", 3), "WorkItem.max_retries"),
            retry_delay_seconds=_as_float(
                parsed.get("retry_delay_seconds", 5.0), "WorkItem.retry_delay_seconds"
            ),
            tags=_as_str_tuple(parsed.get("tags", ()), "WorkItem.tags"),
            estimated_duration_seconds=cast(
                "float | None", parsed.get("estimated_duration_seconds")
            ),
            created_at=_as_datetime(parsed.get("created_at", utc_now()), "WorkItem.created_at"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "WorkItem.started_at"),
            completed_at=_as_optional_datetime(
                parsed.get("completed_at"), "WorkItem.completed_at"
            ),
            result=_as_json_value(parsed.get("result"), "WorkItem.result"),
            error=_as_optional_str(parsed.get("error"), "WorkItem.error"),
            metadata=cast("dict[str, JSONValue]", _as_json_value(metadata, "WorkItem.metadata")),
        )


@dataclass(slots=True)
class CycleMetrics(CanonicalModel):
    total_elapsed_seconds: float = 0.0
    phase_elapsed_seconds: dict[str, float] = field(default_factory=dict)
    iterations: int = 0
    validations_passed: int = 0
    validations_failed: int = 0
    tokens_used: int = 0

    def record_phase_time(self, phase: CyclePhase, seconds: float) -> None:
        elapsed = max(0.0, seconds)
        key = phase.value
        self.phase_elapsed_seconds[key] = self.phase_elapsed_seconds.get(key, 0.0) + elapsed
        self.total_elapsed_seconds += elapsed

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CycleMetrics:
        phase_raw = data.get("phase_elapsed_seconds", {})
        if not isinstance(phase_raw, Mapping):
            _fail("CycleMetrics.phase_elapsed_seconds", "expected object")
        return cls(
            total_elapsed_seconds=_as_float(
                data.get("total_elapsed_seconds", 0.0), "CycleMetrics.total_elapsed_seconds"
            ),
            phase_elapsed_seconds={
                str(key): _as_float(value, f"CycleMetrics.phase_elapsed_seconds.{key}")
                for key, value in phase_raw.items()
            },
            iterations=_as_int(data.get("iterations", 0), "CycleMetrics.iterations"),
            validations_passed=_as_int(
                data.get("validations_passed", 0), "CycleMetrics.validations_passed"
            ),
            validations_failed=_as_int(
                data.get("validations_failed", 0), "CycleMetrics.validations_failed"
            ),
            tokens_used=_as_int(data.get("tokens_used", 0), "CycleMetrics.tokens_used"),
        )


@dataclass(slots=True)
class Cycle(CanonicalModel):
    """Phase state machine record bound to exactly one work item."""

    id: str
    project_id: str
    work_item_id: str
    title: str
    phase: CyclePhase = CyclePhase.DEFINE
    status: CycleStatus = CycleStatus.PENDING
    iteration: int = 0
    metrics: CycleMetrics = field(default_factory=CycleMetrics)
    artifacts: list[str] = field(default_factory=list)
    blocked_query_id: str | None = None
    pause_reason: str | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    phase_started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Cycle.id")
        self.project_id = _as_str(self.project_id, "Cycle.project_id")
        self.work_item_id = _as_str(self.work_item_id, "Cycle.work_item_id")
        self.title = _as_str(self.title, "Cycle.title")
        self.phase = _as_enum(CyclePhase, self.phase, "Cycle.phase")
        self.status = _as_enum(CycleStatus, self.status, "Cycle.status")
        self.iteration = _as_int(self.iteration, "Cycle.iteration", minimum=0)
        self.created_at = _as_datetime(self.created_at, "Cycle.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Cycle.updated_at")
        self.phase_started_at = _as_optional_datetime(
            self.phase_started_at, "Cycle.phase_started_at"
        )
        self.completed_at = _as_optional_datetime(self.completed_at, "Cycle.completed_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CYCLE_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Cycle:
        parsed = _expect_object(
            data,
            "Cycle",
            required={"id", "project_id", "work_item_id", "title"},
            optional={
                "phase",
                "status",
                "iteration",
                "metrics",
                "artifacts",
                "blocked_query_id",
                "pause_reason",
                "last_error",
                "created_at",
                "updated_at",
                "phase_started_at",
                "completed_at",
            },
        )
        metrics_raw = parsed.get("metrics", {})
        if not isinstance(metrics_raw, Mapping):
            _fail("Cycle.metrics", "expected object")
        return cls(
            id=_as_str(parsed["id"], "Cycle.id"),
            project_id=_as_str(parsed["project_id"], "Cycle.project_id"),
            work_item_id=_as_str(parsed["work_item_id"], "Cycle.work_item_id"),
            title=_as_str(parsed["title"], "Cycle.title"),
            phase=_as_enum(CyclePhase, parsed.get("phase", CyclePhase.DEFINE), "Cycle.phase"),
            status=_as_enum(
                CycleStatus, parsed.get("status", CycleStatus.PENDING), "Cycle.status"
            ),
            iteration=_as_int(parsed.get("iteration", 0), "Cycle.iteration"),
            metrics=CycleMetrics.from_dict(metrics_raw),
            artifacts=list(_as_str_tuple(parsed.get("artifacts", ()), "Cycle.artifacts")),
            blocked_query_id=_as_optional_str(
                parsed.get("blocked_query_id"), "Cycle.blocked_query_id"
            ),
            pause_reason=_as_optional_str(parsed.get("pause_reason"), "Cycle.pause_reason"),
            last_error=_as_optional_str(parsed.get("last_error"), "Cycle.last_error"),
            created_at=_as_datetime(parsed.get("created_at", utc_now()), "Cycle.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", utc_now()), "Cycle.updated_at"),
            phase_started_at=_as_optional_datetime(
                parsed.get("phase_started_at"), "Cycle.phase_started_at"
            ),
            completed_at=_as_optional_datetime(parsed.get("completed_at"), "Cycle.completed_at"),
        )


@dataclass(frozen=True, slots=True)
class UsageEvent(CanonicalModel):
    """One append-only entry in a project's budget ledger."""

    id: str
    project_id: str
    timestamp: datetime
    input_tokens: int
    output_tokens: int
    success: bool = True
    work_item_id: str | None = None

    def __post_init__(self) -> None:
        _as_str(self.id, "UsageEvent.id")
        _as_str(self.project_id, "UsageEvent.project_id")
        _as_datetime(self.timestamp, "UsageEvent.timestamp")
        _as_int(self.input_tokens, "UsageEvent.input_tokens", minimum=0)
        _as_int(self.output_tokens, "UsageEvent.output_tokens", minimum=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> UsageEvent:
        parsed = _expect_object(
            data,
            "UsageEvent",
            required={"id", "project_id", "timestamp", "input_tokens", "output_tokens"},
            optional={"success", "work_item_id"},
        )
        return cls(
            id=_as_str(parsed["id"], "UsageEvent.id"),
            project_id=_as_str(parsed["project_id"], "UsageEvent.project_id"),
            timestamp=_as_datetime(parsed["timestamp"], "UsageEvent.timestamp"),
            input_tokens=_as_int(parsed["input_tokens"], "UsageEvent.input_tokens"),
            output_tokens=_as_int(parsed["output_tokens"], "UsageEvent.output_tokens"),
            success=bool(parsed.get("success", True)),
            work_item_id=_as_optional_str(parsed.get("work_item_id"), "UsageEvent.work_item_id"),
        )


@dataclass(frozen=True, slots=True)
class AdmissionLimits(CanonicalModel):
    daily_token_cap: int = 1_000_000
    per_request_token_cap: int = 50_000
    requests_per_minute_cap: int = 20
    requests_per_hour_cap: int = 100
    max_queue_depth: int = 10
    max_parallel_workers: int = 3

    def __post_init__(self) -> None:
        for item in fields(self):
            _as_int(getattr(self, item.name), f"AdmissionLimits.{item.name}", minimum=1)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AdmissionLimits:
        allowed = {item.name for item in fields(cls)}
        parsed = _expect_object(data, "AdmissionLimits", required=set(), optional=allowed)
        return cls(
            **{key: _as_int(value, f"AdmissionLimits.{key}") for key, value in parsed.items()}
        )


@dataclass(frozen=True, slots=True)
class WorkerCapability(CanonicalModel):
    """Static descriptor of what a class of workers can do and how well."""

    id: str
    task_types: frozenset[TaskType]
    max_concurrent_tasks: int = 1
    average_execution_ms: int = 120_000
    success_rate: float = 0.8
    specializations: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_str(self.id, "WorkerCapability.id")
        if not self.task_types:
            _fail("WorkerCapability.task_types", "must not be empty")
        object.__setattr__(
            self,
            "task_types",
            frozenset(
                _as_enum(TaskType, item, "WorkerCapability.task_types") for item in self.task_types
            ),
        )
        _as_int(self.max_concurrent_tasks, "WorkerCapability.max_concurrent_tasks", minimum=1)
        _as_int(self.average_execution_ms, "WorkerCapability.average_execution_ms", minimum=1)
        rate = _as_float(self.success_rate, "WorkerCapability.success_rate", minimum=0.0)
        if rate > 1.0:
            _fail("WorkerCapability.success_rate", "must be <= 1.0")

    def supports(self, task_type: TaskType) -> bool:
        return task_type in self.task_types


@dataclass(slots=True)
class WorkerPerformance(CanonicalModel):
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_execution_ms: int = 0
    tokens_used: int = 0

    @property
    def success_rate(self) -> float:
        total = self.tasks_completed + self.tasks_failed
        return self.tasks_completed / total if total else 0.0


@dataclass(slots=True)
class WorkerInstance(CanonicalModel):
    id: str
    capability_id: str
    status: WorkerStatus = WorkerStatus.IDLE
    current_task_ids: list[str] = field(default_factory=list)
    last_heartbeat: datetime = field(default_factory=utc_now)
    registered_at: datetime = field(default_factory=utc_now)
    performance: WorkerPerformance = field(default_factory=WorkerPerformance)

    @property
    def current_task_id(self) -> str | None:
        return self.current_task_ids[0] if self.current_task_ids else None

    @property
    def load(self) -> int:
        return len(self.current_task_ids)


@dataclass(slots=True)
class Assignment(CanonicalModel):
    """Links one work item to one worker instance for a single execution attempt."""

    id: str
    task_id: str
    agent_id: str
    priority: Priority
    assigned_at: datetime = field(default_factory=utc_now)
    estimated_completion: datetime | None = None
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    finished_at: datetime | None = None


@dataclass(slots=True)
class Query(CanonicalModel):
    id: str
    project_id: str
    cycle_id: str | None
    question: str
    context: str = ""
    urgency: QueryUrgency = QueryUrgency.BLOCKING
    status: QueryStatus = QueryStatus.PENDING
    answer: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Query.id")
        self.project_id = _as_str(self.project_id, "Query.project_id")
        self.question = _as_str(self.question, "Query.question")
        self.urgency = _as_enum(QueryUrgency, self.urgency, "Query.urgency")
        self.status = _as_enum(QueryStatus, self.status, "Query.status")
        self.created_at = _as_datetime(self.created_at, "Query.created_at")
        self.resolved_at = _as_optional_datetime(self.resolved_at, "Query.resolved_at")

    @property
    def is_blocking_pending(self) -> bool:
        return self.urgency is QueryUrgency.BLOCKING and self.status is QueryStatus.PENDING

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Query:
        parsed = _expect_object(
            data,
            "Query",
            required={"id", "project_id", "question"},
            optional={
                "cycle_id",
                "context",
                "urgency",
                "status",
                "answer",
                "created_at",
                "resolved_at",
            },
        )
        return cls(
            id=_as_str(parsed["id"], "Query.id"),
            project_id=_as_str(parsed["project_id"], "Query.project_id"),
            cycle_id=_as_optional_str(parsed.get("cycle_id"), "Query.cycle_id"),
            question=_as_str(parsed["question"], "Query.question"),
            context=str(parsed.get("context", "")),
            urgency=_as_enum(
                QueryUrgency, parsed.get("urgency", QueryUrgency.BLOCKING), "Query.urgency"
            ),
            status=_as_enum(QueryStatus, parsed.get("status", QueryStatus.PENDING), "Query.status"),
            answer=_as_optional_str(parsed.get("answer"), "Query.answer"),
            created_at=_as_datetime(parsed.get("created_at", utc_now()), "Query.created_at"),
            resolved_at=_as_optional_datetime(parsed.get("resolved_at"), "Query.resolved_at"),
        )


def new_work_item(
    project_id: str,
    payload: WorkPayload,
    **options: object,
) -> WorkItem:
    """Build a pending work item with a freshly generated id."""
    return WorkItem(
        id=domain_ids.generate_work_item_id(),
        project_id=project_id,
        payload=payload,
        **options,  # type: ignore[arg-type]
    )


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        _fail(path, f"expected array, got {type(value).__name__}")
    parsed = [_as_str(item, f"{path}[{index}]") for index, item in enumerate(value)]
    return tuple(dict.fromkeys(parsed))


def _as_json_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}")
        return parsed
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(
            (_serialize_value(item, f"{path}[]") for item in value), key=lambda item: str(item)
        )
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            out[str(key)] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


DEFAULT_WORKER_CAPABILITIES: tuple[WorkerCapability, ...] = (
    WorkerCapability(
        id="frontend",
        task_types=frozenset({TaskType.DEVELOPMENT, TaskType.REVIEW, TaskType.DOCUMENTATION}),
        max_concurrent_tasks=3,
        average_execution_ms=120_000,
        success_rate=0.85,
        specializations=("react", "typescript", "css", "ui"),
    ),
    WorkerCapability(
        id="backend",
        task_types=frozenset({TaskType.DEVELOPMENT, TaskType.REVIEW, TaskType.TESTING}),
        max_concurrent_tasks=2,
        average_execution_ms=180_000,
        success_rate=0.88,
        specializations=("api", "database", "services"),
    ),
    WorkerCapability(
        id="tester",
        task_types=frozenset({TaskType.TESTING, TaskType.REVIEW}),
        max_concurrent_tasks=4,
        average_execution_ms=90_000,
        success_rate=0.92,
        specializations=("unit", "integration", "e2e"),
    ),
    WorkerCapability(
        id="devops",
        task_types=frozenset({TaskType.DEPLOYMENT, TaskType.REVIEW}),
        max_concurrent_tasks=2,
        average_execution_ms=240_000,
        success_rate=0.82,
        specializations=("ci", "containers", "infrastructure"),
    ),
)


__all__ = [
    "CYCLE_PHASE_ORDER",
    "DEFAULT_WORKER_CAPABILITIES",
    "TERMINAL_CYCLE_STATUSES",
    "TERMINAL_WORK_ITEM_STATUSES",
    "AdmissionLimits",
    "Assignment",
    "AssignmentStatus",
    "CanonicalModel",
    "Cycle",
    "CycleMetrics",
    "CyclePhase",
    "CycleStatus",
    "JSONScalar",
    "JSONValue",
    "Priority",
    "Query",
    "QueryStatus",
    "QueryUrgency",
    "TaskType",
    "UsageEvent",
    "WorkItem",
    "WorkItemStatus",
    "WorkPayload",
    "WorkerCapability",
    "WorkerInstance",
    "WorkerPerformance",
    "WorkerStatus",
    "new_work_item",
    "successor_phase",
    "utc_now",
]
