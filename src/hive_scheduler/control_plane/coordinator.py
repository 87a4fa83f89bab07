"""
hive-scheduler coordination loop.

Purpose
- Own one logical coordination pass per project: budget gate, human queries,
  cycle advancement, and pulling new work off the queue.

What should be included
- ``CoordinationService`` wiring admission, queues, cycles, queries, workers
  and assignment strategies behind ``submit``/``coordinate``/``resolve_query``.
- ``WorkflowState``: the value every coordination pass returns.
- Startup recovery of queues and cycles from the state store.

Functional requirements
- Passes for the same project never overlap (per-project ``asyncio.Lock``).
- Unexpected exceptions inside a pass are logged and surface as a BLOCKED
  state carrying ``COORDINATION_ERROR``; they never escape ``coordinate``.
- Active cycles advance concurrently, bounded by ``max_parallel_workers``;
  one failing cycle does not stop the others.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from hive_scheduler.config.schema import SchedulerConfig, default_config
from hive_scheduler.constants import COORDINATION_ERROR_MARKER, TOKEN_LIMIT_BLOCK_MARKER
from hive_scheduler.control_plane.admission import (
    AdmissionController,
    AdmissionPurpose,
    BudgetLevel,
    BudgetStatus,
    QueueCounts,
)
from hive_scheduler.control_plane.assignment import (
    AssignmentContext,
    ProjectRequirements,
    StrategyRegistry,
)
from hive_scheduler.control_plane.cycle import (
    CycleStateMachine,
    ExecutorPhaseRunner,
    KeywordAmbiguityClassifier,
    PhaseRunner,
    PhaseStepResult,
)
from hive_scheduler.control_plane.queries import QueryManager
from hive_scheduler.control_plane.work_queue import ScheduleLater, WorkQueue
from hive_scheduler.control_plane.workers import WorkerRegistry
from hive_scheduler.domain.errors import (
    ErrorCategory,
    FailureReport,
    QueueFullError,
    SchedulerError,
)
from hive_scheduler.domain.events import EventType
from hive_scheduler.domain.models import (
    TERMINAL_CYCLE_STATUSES,
    Assignment,
    AssignmentStatus,
    Cycle,
    CycleStatus,
    Priority,
    Query,
    QueryUrgency,
    TaskType,
    WorkItem,
    WorkItemStatus,
    WorkPayload,
)
from hive_scheduler.observability.logging import correlation_scope
from hive_scheduler.observability.metrics import MetricsRegistry
from hive_scheduler.utils.concurrency import CancellationToken, gather_bounded

if TYPE_CHECKING:
    from hive_scheduler.execution_plane.executor import Executor
    from hive_scheduler.observability.events import EventBus
    from hive_scheduler.persistence.store import StateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

CYCLES_COMPLETED = "cycles_completed"
CYCLES_FAILED = "cycles_failed"
ADMISSION_REFUSALS = "admission_refusals"
PHASE_DURATION_SECONDS = "phase_duration_seconds"

_NON_TERMINAL_CYCLE_STATUSES = tuple(
    status for status in CycleStatus if status not in TERMINAL_CYCLE_STATUSES
)


class WorkflowPhase(StrEnum):
    PLANNING = "planning"
    DEVELOPMENT = "development"
    BLOCKED = "blocked"
    IDLE = "idle"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class WorkflowState:
    """Result of one coordination pass for a project."""

    project_id: str
    phase: WorkflowPhase
    active_agents: tuple[str, ...] = ()
    active_work: tuple[str, ...] = ()
    blocked_work: tuple[str, ...] = ()
    pending_queries: tuple[str, ...] = ()
    token_status: BudgetLevel = BudgetLevel.ACTIVE
    failures: tuple[FailureReport, ...] = field(default_factory=tuple)

    @property
    def settled(self) -> bool:
        return self.phase in {WorkflowPhase.COMPLETED, WorkflowPhase.IDLE, WorkflowPhase.BLOCKED}

    def to_dict(self) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "phase": self.phase.value,
            "active_agents": list(self.active_agents),
            "active_work": list(self.active_work),
            "blocked_work": list(self.blocked_work),
            "pending_queries": list(self.pending_queries),
            "token_status": self.token_status.value,
            "failures": [failure.to_dict() for failure in self.failures],
        }


@dataclass(frozen=True, slots=True)
class _StepReport:
    cycle: Cycle
    step: PhaseStepResult | None
    agent_id: str | None = None
    failure: FailureReport | None = None


class CoordinationService:
    """Per-project coordination over injected control-plane collaborators."""

    def __init__(
        self,
        *,
        config: SchedulerConfig | None = None,
        store: StateStore,
        admission: AdmissionController,
        queries: QueryManager,
        cycles: CycleStateMachine,
        registry: WorkerRegistry | None = None,
        strategies: StrategyRegistry | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
        schedule_later: ScheduleLater | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config: SchedulerConfig = config if config is not None else default_config()
        self._store = store
        self._admission = admission
        self._queries = queries
        self._cycles = cycles
        self._registry = registry
        self._strategies = strategies if strategies is not None else StrategyRegistry.default()
        self._strategy_name = str(self._config["workers"]["default_strategy"])
        self._event_bus = event_bus
        self._metrics = metrics if metrics is not None else MetricsRegistry()
        self._schedule_later = schedule_later
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._guard = threading.Lock()
        self._queues: dict[str, WorkQueue] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._requirements: dict[str, ProjectRequirements] = {}

        self._admission.set_queue_counts(self._queue_counts)
        self._strategies.get(self._strategy_name)

    @classmethod
    def build(
        cls,
        config: SchedulerConfig,
        *,
        store: StateStore,
        executor: Executor | None = None,
        runner: PhaseRunner | None = None,
        registry: WorkerRegistry | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
        schedule_later: ScheduleLater | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> CoordinationService:
        """Wire the default collaborators from ``config``; pass ``runner`` or ``executor``."""

        cycle_cfg = config["cycle"]
        execution_cfg = config["execution"]
        classifier = KeywordAmbiguityClassifier(cycle_cfg["ambiguity_keywords"])
        if runner is None:
            if executor is None:
                raise ValueError("CoordinationService.build requires an executor or a phase runner")
            runner = ExecutorPhaseRunner(
                executor,
                timeout_seconds=float(execution_cfg["default_timeout_seconds"]),
                initialization_timeout_seconds=float(
                    execution_cfg["initialization_timeout_seconds"]
                ),
                classifier=classifier,
            )
        admission = AdmissionController.from_config(
            config, store=store, event_bus=event_bus, clock=clock, logger=logger
        )
        queries = QueryManager(store=store, event_bus=event_bus, clock=clock, logger=logger)
        cycles = CycleStateMachine(
            store=store,
            admission=admission,
            queries=queries,
            runner=runner,
            event_bus=event_bus,
            classifier=classifier,
            estimated_tokens_per_phase=int(cycle_cfg["estimated_tokens_per_phase"]),
            max_phase_iterations=int(cycle_cfg["max_phase_iterations"]),
            clock=clock,
            logger=logger,
        )
        return cls(
            config=config,
            store=store,
            admission=admission,
            queries=queries,
            cycles=cycles,
            registry=registry,
            event_bus=event_bus,
            metrics=metrics,
            schedule_later=schedule_later,
            clock=clock,
            logger=logger,
        )

    # ------------------------------------------------------------------ accessors

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    @property
    def queries(self) -> QueryManager:
        return self._queries

    @property
    def cycles(self) -> CycleStateMachine:
        return self._cycles

    @property
    def registry(self) -> WorkerRegistry | None:
        return self._registry

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    def queue(self, project_id: str) -> WorkQueue:
        with self._guard:
            queue = self._queues.get(project_id)
            if queue is None:
                queue = WorkQueue.from_config(
                    project_id,
                    dict(self._config),
                    store=self._store,
                    event_bus=self._event_bus,
                    schedule_later=self._schedule_later,
                    clock=self._clock,
                    logger=self._logger,
                )
                self._queues[project_id] = queue
            return queue

    def set_requirements(self, project_id: str, requirements: ProjectRequirements) -> None:
        with self._guard:
            self._requirements[project_id] = requirements

    def budget_status(self, project_id: str) -> BudgetStatus:
        return self._admission.budget_status(project_id)

    # ------------------------------------------------------------------ operations

    def submit(
        self,
        project_id: str,
        directive: str,
        expected_outcome: str = "",
        *,
        priority: Priority | int | str = Priority.NORMAL,
        dependencies: Iterable[str] = (),
        task_type: TaskType | str = TaskType.DEVELOPMENT,
        tags: Iterable[str] = (),
        max_retries: int | None = None,
    ) -> str:
        """Admission-check and enqueue a new work item; returns its id."""

        decision = self._admission.can_admit(
            project_id,
            self._cycles.estimated_tokens_per_phase,
            purpose=AdmissionPurpose.ENQUEUE,
        )
        if not decision.allowed:
            self._metrics.inc(
                ADMISSION_REFUSALS, labels={"reason_code": decision.reason_code}
            )
            raise QueueFullError(decision.reason, decision=decision)
        return self.queue(project_id).enqueue(
            WorkPayload(directive=directive, expected_outcome=expected_outcome),
            priority=priority,
            task_type=task_type,
            dependencies=dependencies,
            tags=tags,
            max_retries=max_retries,
        )

    async def coordinate(self, project_id: str) -> WorkflowState:
        async with self._project_lock(project_id):
            with correlation_scope(project_id=project_id):
                try:
                    return await self._coordinate_locked(project_id)
                except Exception as exc:  # noqa: BLE001 - the loop boundary never propagates.
                    self._logger.error(
                        "coordination_loop_error",
                        project_id=project_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                        exc_info=True,
                    )
                    report = (
                        exc.report(subject_id=project_id)
                        if isinstance(exc, SchedulerError)
                        else FailureReport(
                            category=ErrorCategory.FATAL,
                            reason=str(exc) or type(exc).__name__,
                            next_step="inspect the scheduler logs",
                            subject_id=project_id,
                        )
                    )
                    return WorkflowState(
                        project_id=project_id,
                        phase=WorkflowPhase.BLOCKED,
                        blocked_work=(COORDINATION_ERROR_MARKER,),
                        failures=(report,),
                    )

    async def resolve_query(
        self, query_id: str, decision: str, *, dismiss: bool = False
    ) -> WorkflowState:
        """Answer or dismiss ``query_id``, unblock its cycle and run a coordination pass."""

        query = self.apply_resolution(query_id, decision, dismiss=dismiss)
        return await self.coordinate(query.project_id)

    def apply_resolution(self, query_id: str, decision: str, *, dismiss: bool = False) -> Query:
        """Resolve ``query_id`` and unblock its cycle without running a pass."""

        query = (
            self._queries.dismiss(query_id, decision)
            if dismiss
            else self._queries.answer(query_id, decision)
        )
        evaluation = self._queries.evaluate_answer(None if dismiss else decision)
        note = None
        if not dismiss:
            note = f"Human decision: {decision.strip()}"
            if not evaluation.should_continue:
                note = f"{note} ({evaluation.alternative})"
        if query.urgency is QueryUrgency.BLOCKING:
            self._cycles.resume_after_query(query, note=note)
        self._logger.info(
            "coordination_query_resolved",
            project_id=query.project_id,
            query_id=query_id,
            dismissed=dismiss,
            should_continue=evaluation.should_continue,
        )
        return query

    def cancel(self, project_id: str, work_item_id: str) -> bool:
        """Cancel a work item; an in-flight execution is killed before this returns."""

        queue = self.queue(project_id)
        item = queue.get(work_item_id)
        if item is None or item.is_terminal:
            return False
        with self._guard:
            token = self._tokens.pop(work_item_id, None)
        if token is not None:
            token.cancel(f"work item {work_item_id} cancelled")
        cancelled = queue.cancel(work_item_id)
        for cycle in self._cycles_for_item(project_id, work_item_id):
            self._cycles.fail(cycle, "Work item cancelled")
        self._logger.info(
            "coordination_work_item_cancelled",
            project_id=project_id,
            work_item_id=work_item_id,
            had_execution=token is not None,
        )
        return cancelled

    async def run_until_settled(self, project_id: str, max_rounds: int = 100) -> WorkflowState:
        if max_rounds <= 0:
            raise ValueError("max_rounds must be > 0")
        state = await self.coordinate(project_id)
        rounds = 1
        while not state.settled and rounds < max_rounds:
            state = await self.coordinate(project_id)
            rounds += 1
        self._logger.info(
            "coordination_settled",
            project_id=project_id,
            phase=state.phase.value,
            rounds=rounds,
        )
        return state

    def recover(self, project_id: str) -> int:
        """Rebuild the project's queue from the store; returns the restored item count.

        Non-terminal cycles are kept: once their work item is dequeued again the
        existing cycle continues from its recorded phase.
        """

        items = self._store.list_work_items(project_id)
        restored = self.queue(project_id).restore(items)
        resumable = 0
        for cycle in self._cycles.active_cycles(project_id):
            if cycle.status is CycleStatus.IN_PROGRESS:
                self._cycles.pause(cycle, "Scheduler restarted")
            resumable += 1
        self._logger.info(
            "coordination_recovered",
            project_id=project_id,
            work_items=restored,
            cycles=resumable,
        )
        return restored

    # ------------------------------------------------------------------ coordination pass

    async def _coordinate_locked(self, project_id: str) -> WorkflowState:
        queue = self.queue(project_id)
        self._queries.expire_stale(project_id)
        budget = self._admission.budget_status(project_id)
        active = self._active_cycles(project_id, queue)

        if budget.level is BudgetLevel.BLOCKED:
            for cycle in active:
                self._cycles.pause(cycle, "Daily token limit reached")
            self._logger.warning(
                "coordination_budget_blocked",
                project_id=project_id,
                used_today=budget.used_today,
                daily_cap=budget.daily_cap,
            )
            return WorkflowState(
                project_id=project_id,
                phase=WorkflowPhase.BLOCKED,
                blocked_work=(TOKEN_LIMIT_BLOCK_MARKER,),
                token_status=budget.level,
                failures=(
                    FailureReport(
                        category=ErrorCategory.ADMISSION,
                        reason=(
                            f"Daily token limit reached ({budget.used_today}/{budget.daily_cap})"
                        ),
                        next_step="wait for the daily budget to reset",
                        reset_at=budget.reset_at,
                        subject_id=project_id,
                    ),
                ),
            )

        blocking = self._queries.pending(project_id, QueryUrgency.BLOCKING)
        if blocking:
            return WorkflowState(
                project_id=project_id,
                phase=WorkflowPhase.BLOCKED,
                blocked_work=tuple(
                    cycle.work_item_id for cycle in active if cycle.status is CycleStatus.BLOCKED
                ),
                pending_queries=tuple(query.id for query in blocking),
                token_status=budget.level,
            )

        runnable = [
            cycle
            for cycle in active
            if cycle.status in {CycleStatus.IN_PROGRESS, CycleStatus.PAUSED}
        ]
        if runnable:
            return await self._advance_cycles(project_id, queue, runnable, budget)

        return self._pull_work(project_id, queue, budget)

    async def _advance_cycles(
        self,
        project_id: str,
        queue: WorkQueue,
        runnable: list[Cycle],
        budget: BudgetStatus,
    ) -> WorkflowState:
        failures: list[FailureReport] = []
        ready: list[Cycle] = []
        for cycle in runnable:
            if cycle.status is CycleStatus.PAUSED:
                decision = self._admission.can_admit(
                    project_id,
                    self._cycles.estimated_tokens_per_phase,
                    purpose=AdmissionPurpose.EXECUTE,
                    work_item_id=cycle.work_item_id,
                )
                if not decision.allowed:
                    failures.append(decision.failure_report())
                    continue
                self._cycles.resume(cycle)
            ready.append(cycle)

        if not ready:
            self._metrics.inc(ADMISSION_REFUSALS, float(len(failures)))
            return WorkflowState(
                project_id=project_id,
                phase=WorkflowPhase.BLOCKED,
                blocked_work=tuple(cycle.work_item_id for cycle in runnable),
                token_status=budget.level,
                failures=_dedupe_failures(failures),
            )

        limit = self._admission.limits_for(project_id).max_parallel_workers
        results = await gather_bounded(
            [self._step_cycle(project_id, queue, cycle) for cycle in ready], limit
        )
        agents: list[str] = []
        for cycle, result in zip(ready, results, strict=True):
            if isinstance(result, Exception):
                self._logger.error(
                    "coordination_cycle_error",
                    project_id=project_id,
                    cycle_id=cycle.id,
                    work_item_id=cycle.work_item_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                failures.append(_report_for(result, cycle.work_item_id))
                self._settle_work_item(queue, cycle)
                continue
            if result.agent_id is not None:
                agents.append(result.agent_id)
            if result.failure is not None:
                failures.append(result.failure)

        return WorkflowState(
            project_id=project_id,
            phase=WorkflowPhase.DEVELOPMENT,
            active_agents=tuple(dict.fromkeys(agents)),
            active_work=tuple(cycle.work_item_id for cycle in ready),
            token_status=self._admission.budget_status(project_id).level,
            failures=_dedupe_failures(failures),
        )

    async def _step_cycle(self, project_id: str, queue: WorkQueue, cycle: Cycle) -> _StepReport:
        item = queue.require(cycle.work_item_id)
        with self._guard:
            token = self._tokens.setdefault(item.id, CancellationToken())
        assignment = self._assign(project_id, item)
        with correlation_scope(work_item_id=item.id, cycle_id=cycle.id):
            try:
                step = await self._cycles.execute_phase(cycle, item, cancel_token=token)
            except asyncio.CancelledError:
                self._finish_assignment(project_id, assignment, AssignmentStatus.CANCELLED)
                if not token.is_cancelled:
                    raise
                # Work item cancel: the execution is gone, the pass carries on.
                return _StepReport(cycle=cycle, step=None)
            except Exception:
                self._finish_assignment(project_id, assignment, AssignmentStatus.FAILED)
                raise

        if token.is_cancelled:
            self._finish_assignment(project_id, assignment, AssignmentStatus.CANCELLED)
            self._cycles.fail(step.cycle, "Work item cancelled")
            return _StepReport(cycle=step.cycle, step=step)

        failure: FailureReport | None = None
        if step.admission is not None and not step.admission.allowed:
            self._metrics.inc(
                ADMISSION_REFUSALS, labels={"reason_code": step.admission.reason_code}
            )
            self._finish_assignment(project_id, assignment, None)
            failure = step.admission.failure_report()
        elif step.outcome is not None or step.query is not None:
            self._metrics.observe(
                PHASE_DURATION_SECONDS,
                step.elapsed_seconds,
                labels={"phase": step.phase.value},
            )
            self._finish_assignment(
                project_id,
                assignment,
                AssignmentStatus.COMPLETED if step.advanced else AssignmentStatus.FAILED,
                duration_ms=int(step.elapsed_seconds * 1000),
                tokens_used=step.outcome.tokens_used if step.outcome is not None else 0,
            )
        else:
            self._finish_assignment(project_id, assignment, None)

        self._settle_work_item(queue, step.cycle)
        return _StepReport(
            cycle=step.cycle,
            step=step,
            agent_id=assignment.agent_id if assignment is not None else None,
            failure=failure,
        )

    def _settle_work_item(self, queue: WorkQueue, cycle: Cycle) -> None:
        if cycle.status is CycleStatus.COMPLETED:
            queue.complete(
                cycle.work_item_id,
                {"cycle_id": cycle.id, "artifacts": list(cycle.artifacts)},
            )
            self._metrics.inc(CYCLES_COMPLETED)
            self._drop_token(cycle.work_item_id)
        elif cycle.status is CycleStatus.FAILED:
            queue.fail(cycle.work_item_id, cycle.last_error or "cycle failed")
            self._metrics.inc(CYCLES_FAILED)
            self._drop_token(cycle.work_item_id)

    def _pull_work(
        self, project_id: str, queue: WorkQueue, budget: BudgetStatus
    ) -> WorkflowState:
        failures: tuple[FailureReport, ...] = ()
        if queue.pending_count:
            decision = self._admission.can_admit(
                project_id,
                self._cycles.estimated_tokens_per_phase,
                purpose=AdmissionPurpose.EXECUTE,
            )
            if decision.allowed:
                started: list[str] = []
                for _ in range(self._pull_capacity(project_id, queue)):
                    item = queue.dequeue()
                    if item is None:
                        break
                    self._cycle_for(project_id, item)
                    started.append(item.id)
                if started:
                    return WorkflowState(
                        project_id=project_id,
                        phase=WorkflowPhase.PLANNING,
                        active_work=tuple(started),
                        token_status=budget.level,
                    )
            else:
                self._metrics.inc(
                    ADMISSION_REFUSALS, labels={"reason_code": decision.reason_code}
                )
                failures = (decision.failure_report(),)

        if queue.pending_count or queue.retry_scheduled_count or queue.processing_count:
            return WorkflowState(
                project_id=project_id,
                phase=WorkflowPhase.IDLE,
                token_status=budget.level,
                failures=failures,
            )
        return WorkflowState(
            project_id=project_id,
            phase=WorkflowPhase.COMPLETED,
            token_status=budget.level,
        )

    # ------------------------------------------------------------------ helpers

    def _pull_capacity(self, project_id: str, queue: WorkQueue) -> int:
        """How many items one pull may dequeue.

        Every processing item must stay admissible against the project's
        ``max_parallel_workers``, whatever the queue's own concurrency allows.
        """

        parallel = self._admission.limits_for(project_id).max_parallel_workers
        return max(0, min(queue.free_slots, parallel - queue.processing_count))

    def _active_cycles(self, project_id: str, queue: WorkQueue) -> list[Cycle]:
        """Non-terminal cycles whose work item currently holds a processing slot.

        A processing item without a live cycle gets one here, so nothing the queue
        handed out is left without an owner.
        """

        processing = {item.id: item for item in queue.items_by_status(WorkItemStatus.PROCESSING)}
        active: list[Cycle] = []
        owned: set[str] = set()
        for cycle in self._cycles.active_cycles(project_id):
            if cycle.work_item_id in processing and cycle.work_item_id not in owned:
                active.append(cycle)
                owned.add(cycle.work_item_id)
        for work_item_id, item in processing.items():
            if work_item_id not in owned:
                active.append(self._cycles.start(project_id, item))
        return active

    def _cycle_for(self, project_id: str, item: WorkItem) -> Cycle:
        for cycle in self._cycles_for_item(project_id, item.id):
            if cycle.status is CycleStatus.PAUSED:
                self._cycles.resume(cycle)
            return cycle
        return self._cycles.start(project_id, item)

    def _cycles_for_item(self, project_id: str, work_item_id: str) -> list[Cycle]:
        return [
            cycle
            for cycle in self._store.list_cycles(project_id, statuses=_NON_TERMINAL_CYCLE_STATUSES)
            if cycle.work_item_id == work_item_id
        ]

    def _assign(self, project_id: str, item: WorkItem) -> Assignment | None:
        registry = self._registry
        if registry is None or registry.stats().total == 0:
            return None
        with self._guard:
            requirements = self._requirements.get(project_id, ProjectRequirements())
        context = AssignmentContext(
            project_id=project_id,
            available_agents=registry.available_agents(),
            capabilities=registry.capabilities(),
            pending_items=(item,),
            current_load=registry.current_load(),
            requirements=requirements,
            now=self._clock(),
        )
        plan = self._strategies.plan(self._strategy_name, context)
        for warning in plan.warnings:
            self._logger.warning(
                "coordination_assignment_warning",
                project_id=project_id,
                work_item_id=item.id,
                strategy=plan.strategy,
                detail=warning,
            )
        assignment = plan.assignment_for(item.id)
        if assignment is None:
            return None
        registry.mark_assigned(assignment.agent_id, item.id)
        assignment.status = AssignmentStatus.IN_PROGRESS
        self._emit(
            EventType.ASSIGNMENT_STARTED,
            project_id,
            assignment_id=assignment.id,
            work_item_id=item.id,
            agent_id=assignment.agent_id,
            strategy=plan.strategy,
        )
        return assignment

    def _finish_assignment(
        self,
        project_id: str,
        assignment: Assignment | None,
        status: AssignmentStatus | None,
        *,
        duration_ms: int = 0,
        tokens_used: int = 0,
    ) -> None:
        """Close ``assignment``; ``status=None`` means the phase never ran."""

        if assignment is None or self._registry is None:
            return
        assignment.finished_at = self._clock()
        if status is None or status is AssignmentStatus.CANCELLED:
            assignment.status = AssignmentStatus.CANCELLED
            self._registry.unassign(assignment.agent_id, assignment.task_id)
            return
        assignment.status = status
        success = status is AssignmentStatus.COMPLETED
        self._registry.release(
            assignment.agent_id,
            assignment.task_id,
            success=success,
            duration_ms=duration_ms,
            tokens_used=tokens_used,
        )
        self._emit(
            EventType.ASSIGNMENT_COMPLETED if success else EventType.ASSIGNMENT_FAILED,
            project_id,
            assignment_id=assignment.id,
            work_item_id=assignment.task_id,
            agent_id=assignment.agent_id,
            duration_ms=duration_ms,
        )

    def _queue_counts(self, project_id: str) -> QueueCounts:
        with self._guard:
            queue = self._queues.get(project_id)
        return queue.counts() if queue is not None else QueueCounts()

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[project_id] = lock
            return lock

    def _drop_token(self, work_item_id: str) -> None:
        with self._guard:
            self._tokens.pop(work_item_id, None)

    def _emit(self, event_type: EventType, project_id: str, **payload: object) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, project_id, payload)


def pending_query_summary(queries: Iterable[Query]) -> list[Mapping[str, object]]:
    return [
        {
            "query_id": query.id,
            "cycle_id": query.cycle_id,
            "question": query.question,
            "urgency": query.urgency.value,
            "created_at": query.created_at.isoformat(),
        }
        for query in queries
    ]


def _report_for(exc: Exception, work_item_id: str) -> FailureReport:
    if isinstance(exc, SchedulerError):
        return exc.report(subject_id=work_item_id)
    return FailureReport(
        category=ErrorCategory.FATAL,
        reason=str(exc) or type(exc).__name__,
        next_step="inspect the scheduler logs",
        subject_id=work_item_id,
    )


def _dedupe_failures(failures: Iterable[FailureReport]) -> tuple[FailureReport, ...]:
    return tuple(dict.fromkeys(failures))


__all__ = [
    "ADMISSION_REFUSALS",
    "CYCLES_COMPLETED",
    "CYCLES_FAILED",
    "PHASE_DURATION_SECONDS",
    "CoordinationService",
    "WorkflowPhase",
    "WorkflowState",
    "pending_query_summary",
]
