"""Cycle state machine: define, test, implement, refactor, review.

A cycle only moves forward one phase at a time. A failed phase is retried in
place until ``max_phase_iterations`` attempts have failed. Ambiguous failures
block the cycle behind a human query; budget refusals pause it. Every
transition is written through the state store before the call returns.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from hive_scheduler.constants import DEFAULT_AMBIGUITY_KEYWORDS, MAX_PHASE_ITERATIONS
from hive_scheduler.domain import ids as domain_ids
from hive_scheduler.domain.errors import (
    CycleTransitionError,
    ExecutionError,
    NeedsHumanInputError,
)
from hive_scheduler.domain.events import EventType
from hive_scheduler.domain.models import (
    TERMINAL_CYCLE_STATUSES,
    Cycle,
    CyclePhase,
    CycleStatus,
    Query,
    QueryUrgency,
    WorkItem,
    successor_phase,
)
from hive_scheduler.execution_plane.executor import ExecutionRequest

if TYPE_CHECKING:
    from hive_scheduler.control_plane.admission import AdmissionController, AdmissionDecision
    from hive_scheduler.control_plane.queries import QueryManager
    from hive_scheduler.execution_plane.executor import Executor
    from hive_scheduler.observability.events import EventBus
    from hive_scheduler.persistence.store import StateStore
    from hive_scheduler.utils.concurrency import CancellationToken

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_ARTIFACT_MAX_CHARS = 4000
_TITLE_MAX_CHARS = 120
_NON_TERMINAL_STATUSES = tuple(
    status for status in CycleStatus if status not in TERMINAL_CYCLE_STATUSES
)


@dataclass(frozen=True, slots=True)
class PhaseOutcome:
    success: bool
    artifacts: tuple[str, ...] = ()
    validation_results: Mapping[str, bool] = field(default_factory=dict)
    next_phase: CyclePhase | None = None
    should_retry: bool = True
    tokens_used: int = 0
    error: str | None = None
    input_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class PhaseStepResult:
    """What one ``execute_phase`` call did to a cycle."""

    cycle: Cycle
    phase: CyclePhase
    outcome: PhaseOutcome | None = None
    admission: AdmissionDecision | None = None
    query: Query | None = None
    elapsed_seconds: float = 0.0
    skipped: bool = False

    @property
    def status(self) -> CycleStatus:
        return self.cycle.status

    @property
    def advanced(self) -> bool:
        return self.outcome is not None and self.outcome.success


@runtime_checkable
class NeedsHumanInputClassifier(Protocol):
    def needs_human_input(self, text: str) -> bool: ...


class KeywordAmbiguityClassifier:
    """Flags failure text that mentions a design-level decision keyword."""

    def __init__(self, keywords: Iterable[str] = DEFAULT_AMBIGUITY_KEYWORDS) -> None:
        words = tuple(word.strip().lower() for word in keywords if word.strip())
        self._keywords = words
        self._pattern = (
            re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")")
            if words
            else None
        )

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._keywords

    def needs_human_input(self, text: str) -> bool:
        if self._pattern is None or not text:
            return False
        return self._pattern.search(text.lower()) is not None


@runtime_checkable
class PhaseRunner(Protocol):
    async def run_phase(
        self,
        cycle: Cycle,
        work_item: WorkItem,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PhaseOutcome: ...


class ExecutorPhaseRunner:
    """Adapts the execution callback to the phase runner protocol."""

    def __init__(
        self,
        executor: Executor,
        *,
        timeout_seconds: float = 300.0,
        initialization_timeout_seconds: float = 900.0,
        classifier: NeedsHumanInputClassifier | None = None,
    ) -> None:
        self._executor = executor
        self._timeout_seconds = timeout_seconds
        self._initialization_timeout_seconds = initialization_timeout_seconds
        self._classifier = classifier if classifier is not None else KeywordAmbiguityClassifier()

    async def run_phase(
        self,
        cycle: Cycle,
        work_item: WorkItem,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PhaseOutcome:
        first_attempt = cycle.phase is CyclePhase.DEFINE and cycle.iteration == 0
        request = ExecutionRequest(
            project_id=cycle.project_id,
            work_item_id=work_item.id,
            cycle_id=cycle.id,
            phase=cycle.phase.value,
            directive=build_phase_directive(cycle, work_item),
            expected_outcome=work_item.payload.expected_outcome,
            timeout_seconds=(
                self._initialization_timeout_seconds if first_attempt else self._timeout_seconds
            ),
            cancel_token=cancel_token,
        )
        try:
            result = await self._executor.execute(request)
        except ExecutionError as exc:
            return PhaseOutcome(success=False, should_retry=True, error=str(exc))

        if result.success:
            return PhaseOutcome(
                success=True,
                artifacts=_artifacts_from(result.output),
                next_phase=successor_phase(cycle.phase),
                tokens_used=result.tokens_used,
                input_tokens=result.input_tokens,
            )

        error = result.error or "execution failed"
        if self._classifier.needs_human_input(error):
            raise NeedsHumanInputError(error, tokens_used=result.tokens_used)
        return PhaseOutcome(
            success=False,
            should_retry=True,
            tokens_used=result.tokens_used,
            input_tokens=result.input_tokens,
            error=error,
        )


def build_phase_directive(cycle: Cycle, work_item: WorkItem) -> str:
    lines = [
        f"Phase: {cycle.phase.value}",
        f"Attempt: {cycle.iteration + 1}",
        f"Task type: {work_item.task_type.value}",
        "",
        work_item.payload.directive,
    ]
    if work_item.payload.expected_outcome:
        lines.extend(["", f"Expected outcome: {work_item.payload.expected_outcome}"])
    if cycle.last_error:
        lines.extend(["", f"Notes from the previous attempt: {cycle.last_error}"])
    return "\n".join(lines)


class CycleStateMachine:
    """Drives cycles through their phases and persists every transition."""

    def __init__(
        self,
        *,
        store: StateStore,
        admission: AdmissionController,
        queries: QueryManager,
        runner: PhaseRunner,
        event_bus: EventBus | None = None,
        classifier: NeedsHumanInputClassifier | None = None,
        estimated_tokens_per_phase: int = 2000,
        max_phase_iterations: int = MAX_PHASE_ITERATIONS,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_phase_iterations <= 0:
            raise ValueError("max_phase_iterations must be > 0")
        self._store = store
        self._admission = admission
        self._queries = queries
        self._runner = runner
        self._event_bus = event_bus
        self._classifier = classifier if classifier is not None else KeywordAmbiguityClassifier()
        self._estimated_tokens = estimated_tokens_per_phase
        self._max_iterations = max_phase_iterations
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def estimated_tokens_per_phase(self) -> int:
        return self._estimated_tokens

    def start(self, project_id: str, work_item: WorkItem) -> Cycle:
        now = self._clock()
        cycle = Cycle(
            id=domain_ids.generate_cycle_id(),
            project_id=project_id,
            work_item_id=work_item.id,
            title=_title_for(work_item),
            phase=CyclePhase.DEFINE,
            status=CycleStatus.IN_PROGRESS,
            created_at=now,
            updated_at=now,
            phase_started_at=now,
        )
        self._store.save_cycle(cycle)
        self._logger.info(
            "cycle_started",
            project_id=project_id,
            cycle_id=cycle.id,
            work_item_id=work_item.id,
        )
        self._emit(EventType.CYCLE_STARTED, cycle)
        return cycle

    async def execute_phase(
        self,
        cycle: Cycle,
        work_item: WorkItem,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PhaseStepResult:
        phase = cycle.phase
        if cycle.is_terminal or cycle.status in {CycleStatus.BLOCKED, CycleStatus.PAUSED}:
            return PhaseStepResult(cycle=cycle, phase=phase, skipped=True)

        decision = self._admission.admit(
            cycle.project_id, self._estimated_tokens, work_item_id=work_item.id
        )
        if not decision.allowed:
            self.pause(cycle, decision.reason)
            self._emit(
                EventType.BUDGET_BLOCKED,
                cycle,
                reason=decision.reason,
                reason_code=decision.reason_code,
                reset_at=(
                    decision.reset_at.isoformat() if decision.reset_at is not None else None
                ),
            )
            return PhaseStepResult(cycle=cycle, phase=phase, admission=decision)

        self._emit(EventType.CYCLE_PHASE_STARTED, cycle, iteration=cycle.iteration)
        started = time.monotonic()
        try:
            outcome = await self._runner.run_phase(cycle, work_item, cancel_token=cancel_token)
        except NeedsHumanInputError as exc:
            self._settle(cycle, work_item, decision, exc.tokens_used, None, success=False)
            query = self._block(cycle, str(exc))
            return PhaseStepResult(
                cycle=cycle,
                phase=phase,
                admission=decision,
                query=query,
                elapsed_seconds=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            if decision.reservation_id is not None:
                self._admission.release(decision.reservation_id)
            raise
        except Exception as exc:  # noqa: BLE001 - runner failures become phase retries.
            if self._classifier.needs_human_input(str(exc)):
                self._settle(cycle, work_item, decision, 0, None, success=False)
                query = self._block(cycle, str(exc))
                return PhaseStepResult(
                    cycle=cycle,
                    phase=phase,
                    admission=decision,
                    query=query,
                    elapsed_seconds=time.monotonic() - started,
                )
            outcome = PhaseOutcome(
                success=False,
                should_retry=True,
                error=str(exc) or type(exc).__name__,
            )

        elapsed = time.monotonic() - started
        self._settle(
            cycle,
            work_item,
            decision,
            outcome.tokens_used,
            outcome.input_tokens,
            success=outcome.success,
        )
        cycle.metrics.iterations += 1
        checks = list(outcome.validation_results.values())
        cycle.metrics.validations_passed += sum(1 for ok in checks if ok)
        cycle.metrics.validations_failed += sum(1 for ok in checks if not ok)

        if outcome.success:
            self._advance(cycle, outcome, elapsed)
        else:
            self._record_failure(cycle, outcome)
        return PhaseStepResult(
            cycle=cycle,
            phase=phase,
            outcome=outcome,
            admission=decision,
            elapsed_seconds=elapsed,
        )

    def pause(self, cycle: Cycle, reason: str) -> Cycle:
        if cycle.status is not CycleStatus.IN_PROGRESS:
            return cycle
        cycle.status = CycleStatus.PAUSED
        cycle.pause_reason = reason
        self._touch_and_save(cycle)
        self._logger.info(
            "cycle_paused", project_id=cycle.project_id, cycle_id=cycle.id, reason=reason
        )
        self._emit(EventType.CYCLE_PAUSED, cycle, reason=reason)
        return cycle

    def resume(self, cycle: Cycle) -> Cycle:
        if cycle.status is not CycleStatus.PAUSED:
            return cycle
        cycle.status = CycleStatus.IN_PROGRESS
        cycle.pause_reason = None
        self._touch_and_save(cycle)
        self._logger.info("cycle_resumed", project_id=cycle.project_id, cycle_id=cycle.id)
        self._emit(EventType.CYCLE_RESUMED, cycle)
        return cycle

    def resume_after_query(self, query: Query, *, note: str | None = None) -> Cycle | None:
        """Move the cycle blocked on ``query`` back to in_progress at the same phase.

        ``note`` replaces the blocking reason and is carried into the next directive.
        """

        if query.cycle_id is None:
            return None
        cycle = self._store.get_cycle(query.cycle_id)
        if cycle is None or cycle.status is not CycleStatus.BLOCKED:
            return cycle
        if cycle.blocked_query_id is not None and cycle.blocked_query_id != query.id:
            return cycle
        cycle.status = CycleStatus.IN_PROGRESS
        cycle.blocked_query_id = None
        if note is not None:
            cycle.last_error = note
        self._touch_and_save(cycle)
        self._logger.info(
            "cycle_unblocked",
            project_id=cycle.project_id,
            cycle_id=cycle.id,
            query_id=query.id,
        )
        self._emit(EventType.CYCLE_RESUMED, cycle, query_id=query.id)
        return cycle

    def fail(self, cycle: Cycle, reason: str) -> Cycle:
        if cycle.is_terminal:
            return cycle
        cycle.status = CycleStatus.FAILED
        cycle.last_error = reason
        cycle.blocked_query_id = None
        cycle.completed_at = self._clock()
        self._touch_and_save(cycle)
        self._logger.warning(
            "cycle_failed", project_id=cycle.project_id, cycle_id=cycle.id, reason=reason
        )
        self._emit(EventType.CYCLE_FAILED, cycle, reason=reason)
        return cycle

    def active_cycles(self, project_id: str) -> list[Cycle]:
        return self._store.list_cycles(project_id, statuses=_NON_TERMINAL_STATUSES)

    def _advance(self, cycle: Cycle, outcome: PhaseOutcome, elapsed: float) -> None:
        expected = successor_phase(cycle.phase)
        if outcome.next_phase is not None and outcome.next_phase is not expected:
            message = (
                f"Cycle {cycle.id} cannot move from {cycle.phase.value} to "
                f"{outcome.next_phase.value}; next phase is {expected.value}"
            )
            # Usage is already settled; a runnable cycle would re-run and re-bill the phase.
            self.fail(cycle, message)
            raise CycleTransitionError(message)

        completed_phase = cycle.phase
        cycle.metrics.record_phase_time(completed_phase, elapsed)
        for artifact in outcome.artifacts:
            if artifact.strip() and artifact not in cycle.artifacts:
                cycle.artifacts.append(artifact)
        cycle.last_error = None
        cycle.iteration = 0
        now = self._clock()
        cycle.phase = expected
        if expected is CyclePhase.COMPLETED:
            cycle.status = CycleStatus.COMPLETED
            cycle.completed_at = now
            cycle.phase_started_at = None
        else:
            cycle.phase_started_at = now
        self._touch_and_save(cycle)

        self._logger.info(
            "cycle_phase_completed",
            project_id=cycle.project_id,
            cycle_id=cycle.id,
            phase=completed_phase.value,
            next_phase=expected.value,
            elapsed_seconds=round(elapsed, 6),
        )
        self._emit(
            EventType.CYCLE_PHASE_COMPLETED,
            cycle,
            phase=completed_phase,
            next_phase=expected,
            elapsed_seconds=round(elapsed, 6),
            tokens_used=outcome.tokens_used,
        )
        if cycle.status is CycleStatus.COMPLETED:
            self._emit(EventType.CYCLE_COMPLETED, cycle)

    def _record_failure(self, cycle: Cycle, outcome: PhaseOutcome) -> None:
        cycle.iteration += 1
        cycle.last_error = outcome.error or "phase failed"
        exhausted = cycle.iteration >= self._max_iterations
        if exhausted or not outcome.should_retry:
            reason = (
                f"Phase {cycle.phase.value} failed after {cycle.iteration} attempts: "
                f"{cycle.last_error}"
                if exhausted
                else cycle.last_error
            )
            self.fail(cycle, reason)
            return
        self._touch_and_save(cycle)
        self._logger.warning(
            "cycle_phase_retry",
            project_id=cycle.project_id,
            cycle_id=cycle.id,
            phase=cycle.phase.value,
            iteration=cycle.iteration,
            error=cycle.last_error,
        )

    def _block(self, cycle: Cycle, reason: str) -> Query:
        query = self._queries.create(
            cycle.project_id,
            cycle.id,
            f"Design decision needed for {cycle.title}",
            context=reason,
            urgency=QueryUrgency.BLOCKING,
        )
        cycle.status = CycleStatus.BLOCKED
        cycle.blocked_query_id = query.id
        cycle.last_error = reason
        self._touch_and_save(cycle)
        self._logger.info(
            "cycle_blocked",
            project_id=cycle.project_id,
            cycle_id=cycle.id,
            query_id=query.id,
            phase=cycle.phase.value,
        )
        self._emit(EventType.CYCLE_BLOCKED, cycle, query_id=query.id, reason=reason)
        return query

    def _settle(
        self,
        cycle: Cycle,
        work_item: WorkItem,
        decision: AdmissionDecision,
        tokens_used: int,
        input_tokens: int | None,
        *,
        success: bool,
    ) -> None:
        total = max(0, tokens_used)
        if input_tokens is None:
            spent_input = 0 if success else total
        else:
            spent_input = min(max(0, input_tokens), total)
        event = self._admission.record_usage(
            cycle.project_id,
            spent_input,
            total - spent_input,
            success=success,
            work_item_id=work_item.id,
            reservation_id=decision.reservation_id,
        )
        cycle.metrics.tokens_used += event.total_tokens

    def _touch_and_save(self, cycle: Cycle) -> None:
        cycle.updated_at = self._clock()
        self._store.save_cycle(cycle)

    def _emit(self, event_type: EventType, cycle: Cycle, **payload: object) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            event_type,
            cycle.project_id,
            {
                "cycle_id": cycle.id,
                "work_item_id": cycle.work_item_id,
                "phase": cycle.phase,
                "status": cycle.status,
                **payload,
            },
        )


def _title_for(work_item: WorkItem) -> str:
    first_line = work_item.payload.directive.strip().splitlines()[0].strip()
    if len(first_line) > _TITLE_MAX_CHARS:
        return first_line[: _TITLE_MAX_CHARS - 3].rstrip() + "..."
    return first_line


def _artifacts_from(output: str) -> tuple[str, ...]:
    text = output.strip()
    if not text:
        return ()
    if len(text) > _ARTIFACT_MAX_CHARS:
        text = text[:_ARTIFACT_MAX_CHARS] + "..."
    return (text,)


__all__ = [
    "CycleStateMachine",
    "ExecutorPhaseRunner",
    "KeywordAmbiguityClassifier",
    "NeedsHumanInputClassifier",
    "PhaseOutcome",
    "PhaseRunner",
    "PhaseStepResult",
    "build_phase_directive",
]
