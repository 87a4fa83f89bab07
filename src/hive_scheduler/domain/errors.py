"""Error taxonomy shared by the control and execution planes.

Admission refusals are values (``AdmissionDecision``), not exceptions. Every
other failure category maps to an exception type below so call boundaries can
fail fast and the coordination loop can classify what it caught.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hive_scheduler.control_plane.admission import AdmissionDecision


class ErrorCategory(StrEnum):
    ADMISSION = "admission"
    TRANSIENT = "transient"
    AMBIGUITY = "ambiguity"
    STRUCTURAL = "structural"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class FailureReport:
    """User-facing description of why something did not proceed."""

    category: ErrorCategory
    reason: str
    next_step: str | None = None
    reset_at: datetime | None = None
    subject_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "reason": self.reason,
            "next_step": self.next_step,
            "reset_at": self.reset_at.isoformat() if self.reset_at is not None else None,
            "subject_id": self.subject_id,
        }


class SchedulerError(Exception):
    """Base class for scheduler failures raised across module boundaries."""

    category: ErrorCategory = ErrorCategory.FATAL
    next_step: str | None = None

    def report(self, *, subject_id: str | None = None) -> FailureReport:
        return FailureReport(
            category=self.category,
            reason=str(self) or self.__class__.__name__,
            next_step=self.next_step,
            subject_id=subject_id,
        )


class StructuralError(SchedulerError, ValueError):
    """Caller error detected at the call boundary."""

    category = ErrorCategory.STRUCTURAL
    next_step = "fix the request and resubmit"


class QueueFullError(StructuralError):
    next_step = "wait for in-flight work to drain or increase the queue limit"

    def __init__(
        self,
        message: str = "Queue is full",
        *,
        decision: AdmissionDecision | None = None,
    ) -> None:
        super().__init__(message)
        self.decision = decision


class UnknownDependencyError(StructuralError):
    def __init__(self, dependency_id: str) -> None:
        super().__init__(f"Dependency {dependency_id} not found")
        self.dependency_id = dependency_id


class UnknownWorkItemError(StructuralError):
    def __init__(self, work_item_id: str) -> None:
        super().__init__(f"Work item {work_item_id} not found")
        self.work_item_id = work_item_id


class UnknownStrategyError(StructuralError):
    def __init__(self, name: str, known: tuple[str, ...] = ()) -> None:
        detail = f"; known strategies: {', '.join(known)}" if known else ""
        super().__init__(f"Unknown assignment strategy {name!r}{detail}")
        self.name = name


class UnknownCapabilityError(StructuralError):
    def __init__(self, capability_id: str) -> None:
        super().__init__(f"Unknown worker capability {capability_id!r}")
        self.capability_id = capability_id


class UnknownWorkerError(StructuralError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Unknown worker instance {instance_id!r}")
        self.instance_id = instance_id


class CycleTransitionError(StructuralError):
    """Raised when a cycle is asked to move anywhere but forward by one phase."""


class QueryStateError(StructuralError):
    """Raised when a query is resolved from a non-pending state."""


class NeedsHumanInputError(SchedulerError):
    """Phase execution cannot continue without a human decision."""

    category = ErrorCategory.AMBIGUITY
    next_step = "answer the pending question"

    def __init__(self, message: str = "human input required", *, tokens_used: int = 0) -> None:
        super().__init__(message)
        self.tokens_used = tokens_used


class ExecutionError(SchedulerError):
    category = ErrorCategory.TRANSIENT
    next_step = "the work item will be retried with backoff"


class ExecutionTimeoutError(ExecutionError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"execution timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ExecutionFailedError(ExecutionError):
    pass


__all__ = [
    "CycleTransitionError",
    "ErrorCategory",
    "ExecutionError",
    "ExecutionFailedError",
    "ExecutionTimeoutError",
    "FailureReport",
    "NeedsHumanInputError",
    "QueryStateError",
    "QueueFullError",
    "SchedulerError",
    "StructuralError",
    "UnknownCapabilityError",
    "UnknownDependencyError",
    "UnknownStrategyError",
    "UnknownWorkItemError",
    "UnknownWorkerError",
]
