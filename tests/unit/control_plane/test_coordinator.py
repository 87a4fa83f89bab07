"""Coordination service tests driven by a recording phase runner."""

from __future__ import annotations

import asyncio
from collections import deque

import pytest

from hive_scheduler.config.schema import SchedulerConfig, default_config
from hive_scheduler.constants import COORDINATION_ERROR_MARKER, TOKEN_LIMIT_BLOCK_MARKER
from hive_scheduler.control_plane.admission import BudgetLevel
from hive_scheduler.control_plane.coordinator import (
    ADMISSION_REFUSALS,
    CYCLES_COMPLETED,
    CYCLES_FAILED,
    CoordinationService,
    WorkflowPhase,
    WorkflowState,
    pending_query_summary,
)
from hive_scheduler.control_plane.cycle import PhaseOutcome
from hive_scheduler.control_plane.workers import WorkerRegistry
from hive_scheduler.domain.errors import ErrorCategory, NeedsHumanInputError, QueueFullError
from hive_scheduler.domain.events import EventType, SchedulerEvent
from hive_scheduler.domain.models import (
    Cycle,
    CyclePhase,
    CycleStatus,
    WorkItem,
    WorkItemStatus,
    successor_phase,
)
from hive_scheduler.observability.events import EventBus
from hive_scheduler.persistence.store import InMemoryStateStore
from hive_scheduler.utils.concurrency import CancellationToken


class _RecordingRunner:
    """Succeeds every phase unless a queued step says otherwise."""

    def __init__(self, *steps: PhaseOutcome | Exception, delay: float = 0.0) -> None:
        self.steps: deque[PhaseOutcome | Exception] = deque(steps)
        self.calls: list[tuple[str, CyclePhase]] = []
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def run_phase(
        self,
        cycle: Cycle,
        work_item: WorkItem,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PhaseOutcome:
        self.calls.append((work_item.id, cycle.phase))
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        step = (
            self.steps.popleft()
            if self.steps
            else PhaseOutcome(success=True, next_phase=successor_phase(cycle.phase), tokens_used=50)
        )
        if isinstance(step, Exception):
            raise step
        return step


def _config(**admission: int) -> SchedulerConfig:
    config = default_config()
    config["admission"].update(
        {"requests_per_minute_cap": 1000, "requests_per_hour_cap": 10_000, **admission}
    )
    config["cycle"]["estimated_tokens_per_phase"] = 100
    return config


def _service(
    runner: _RecordingRunner,
    *,
    config: SchedulerConfig | None = None,
    store: InMemoryStateStore | None = None,
    registry: WorkerRegistry | None = None,
    bus: EventBus | None = None,
) -> CoordinationService:
    return CoordinationService.build(
        config if config is not None else _config(),
        store=store if store is not None else InMemoryStateStore(),
        runner=runner,
        registry=registry,
        event_bus=bus,
    )


def test_build_requires_runner_or_executor() -> None:
    with pytest.raises(ValueError, match="executor or a phase runner"):
        CoordinationService.build(default_config(), store=InMemoryStateStore())


def test_submit_refuses_when_queue_depth_reached() -> None:
    service = _service(_RecordingRunner(), config=_config(max_queue_depth=2))
    service.submit("web", "Add login form")
    service.submit("web", "Add signup form")

    with pytest.raises(QueueFullError, match=r"Queue is full \(2/2\)") as excinfo:
        service.submit("web", "Add reset form")

    assert excinfo.value.decision is not None
    assert excinfo.value.decision.reason_code == "queue_full"
    assert service.metrics.get_counter(ADMISSION_REFUSALS, labels={"reason_code": "queue_full"})
    assert service.queue("web").depth == 2
    assert service.queue("other").depth == 0


@pytest.mark.asyncio
async def test_run_until_settled_drives_items_through_every_phase() -> None:
    runner = _RecordingRunner()
    service = _service(runner)
    first = service.submit("web", "Add login form", "Form renders")
    second = service.submit("web", "Add signup form", dependencies=[first])

    planning = await service.coordinate("web")
    assert planning.phase is WorkflowPhase.PLANNING
    assert planning.active_work == (first,)

    state = await service.run_until_settled("web")

    assert state.phase is WorkflowPhase.COMPLETED
    assert state.failures == ()
    queue = service.queue("web")
    assert queue.is_completed(first) and queue.is_completed(second)
    assert [phase for item_id, phase in runner.calls if item_id == first] == [
        CyclePhase.DEFINE,
        CyclePhase.TEST,
        CyclePhase.IMPLEMENT,
        CyclePhase.REFACTOR,
        CyclePhase.REVIEW,
    ]
    assert runner.calls.index((second, CyclePhase.DEFINE)) > runner.calls.index(
        (first, CyclePhase.REVIEW)
    )
    assert service.metrics.get_counter(CYCLES_COMPLETED) == 2
    assert service.budget_status("web").used_today == 500


@pytest.mark.asyncio
async def test_parallel_cap_below_queue_concurrency_still_completes() -> None:
    runner = _RecordingRunner(delay=0.001)
    config = _config(max_parallel_workers=1)
    assert config["queue"]["max_concurrent"] == 3
    service = _service(runner, config=config)
    item_ids = [service.submit("web", f"Build page {index}") for index in range(3)]

    planning = await service.coordinate("web")
    assert planning.phase is WorkflowPhase.PLANNING
    assert planning.active_work == (item_ids[0],)
    assert service.queue("web").processing_count == 1

    state = await service.run_until_settled("web", max_rounds=60)

    assert state.phase is WorkflowPhase.COMPLETED
    assert state.failures == ()
    assert all(service.queue("web").is_completed(item_id) for item_id in item_ids)
    assert runner.peak == 1
    assert service.metrics.get_counter(CYCLES_COMPLETED) == 3


@pytest.mark.asyncio
async def test_pull_fills_free_parallel_slots_in_one_pass() -> None:
    runner = _RecordingRunner()
    service = _service(runner, config=_config(max_parallel_workers=2))
    item_ids = [service.submit("web", f"Build page {index}") for index in range(3)]

    planning = await service.coordinate("web")

    assert planning.phase is WorkflowPhase.PLANNING
    assert planning.active_work == tuple(item_ids[:2])
    development = await service.coordinate("web")
    assert development.phase is WorkflowPhase.DEVELOPMENT
    assert development.failures == ()
    assert sorted(item_id for item_id, _ in runner.calls) == sorted(item_ids[:2])

    state = await service.run_until_settled("web", max_rounds=60)
    assert state.phase is WorkflowPhase.COMPLETED


@pytest.mark.asyncio
async def test_failed_cycle_fails_the_work_item() -> None:
    failure = PhaseOutcome(success=False, error="tests failed")
    runner = _RecordingRunner(failure, failure, failure)
    service = _service(runner)
    item_id = service.submit("web", "Fix flaky test", max_retries=0)

    state = await service.run_until_settled("web")

    assert state.phase is WorkflowPhase.COMPLETED
    item = service.queue("web").get(item_id)
    assert item is not None and item.status is WorkItemStatus.FAILED
    assert item.error is not None and "failed after 3 attempts" in item.error
    assert service.metrics.get_counter(CYCLES_FAILED) == 1
    assert len(runner.calls) == 3


@pytest.mark.asyncio
async def test_out_of_order_phase_fails_the_item_without_rerunning() -> None:
    skipped = PhaseOutcome(success=True, next_phase=CyclePhase.REVIEW, tokens_used=30)
    runner = _RecordingRunner(skipped)
    service = _service(runner)
    item_id = service.submit("web", "Add login form", max_retries=0)

    state = await service.run_until_settled("web", max_rounds=10)

    assert state.phase is WorkflowPhase.COMPLETED
    item = service.queue("web").get(item_id)
    assert item is not None and item.status is WorkItemStatus.FAILED
    assert len(runner.calls) == 1
    assert service.metrics.get_counter(CYCLES_FAILED) == 1


@pytest.mark.asyncio
async def test_budget_block_pauses_cycles_and_reports_marker() -> None:
    service = _service(_RecordingRunner(), config=_config(daily_token_cap=1000))
    service.submit("web", "Add login form")
    await service.coordinate("web")
    service.admission.record_usage("web", 600, 400)

    state = await service.coordinate("web")

    assert state.phase is WorkflowPhase.BLOCKED
    assert state.settled
    assert state.blocked_work == (TOKEN_LIMIT_BLOCK_MARKER,)
    assert state.token_status is BudgetLevel.BLOCKED
    assert state.failures[0].category is ErrorCategory.ADMISSION
    assert state.failures[0].reason == "Daily token limit reached (1000/1000)"
    assert state.failures[0].reset_at is not None
    cycle = service.cycles.active_cycles("web")[0]
    assert cycle.status is CycleStatus.PAUSED
    assert cycle.pause_reason == "Daily token limit reached"


@pytest.mark.asyncio
async def test_blocking_query_blocks_until_resolved() -> None:
    runner = _RecordingRunner(NeedsHumanInputError("Which database should we use?"))
    service = _service(runner)
    item_id = service.submit("web", "Add persistence layer")

    blocked = await service.run_until_settled("web")

    assert blocked.phase is WorkflowPhase.BLOCKED
    assert blocked.blocked_work == (item_id,)
    (query,) = service.queries.pending("web")
    assert blocked.pending_queries == (query.id,)
    assert query.context == "Which database should we use?"
    summary = pending_query_summary([query])
    assert summary[0]["query_id"] == query.id
    assert str(summary[0]["question"]).startswith("Design decision needed for")

    resumed = await service.resolve_query(query.id, "Use Postgres")

    assert resumed.phase is WorkflowPhase.DEVELOPMENT
    state = await service.run_until_settled("web")
    assert state.phase is WorkflowPhase.COMPLETED
    assert runner.calls[:2] == [(item_id, CyclePhase.DEFINE), (item_id, CyclePhase.DEFINE)]


@pytest.mark.asyncio
async def test_negative_answer_is_carried_as_retry_note() -> None:
    runner = _RecordingRunner(NeedsHumanInputError("Should we keep the legacy API?"))
    service = _service(runner)
    service.submit("web", "Refactor API layer")
    await service.run_until_settled("web")
    (query,) = service.queries.pending("web")

    service.apply_resolution(query.id, "No, drop it")

    (cycle,) = service.cycles.active_cycles("web")
    assert cycle.status is CycleStatus.IN_PROGRESS
    assert cycle.last_error == "Human decision: No, drop it (retry_with_different_approach)"


@pytest.mark.asyncio
async def test_unexpected_error_becomes_blocked_state(monkeypatch: pytest.MonkeyPatch) -> None:
    service = _service(_RecordingRunner())

    def _explode(project_id: str) -> None:
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(service.admission, "budget_status", _explode)

    state = await service.coordinate("web")

    assert state.phase is WorkflowPhase.BLOCKED
    assert state.blocked_work == (COORDINATION_ERROR_MARKER,)
    assert state.failures[0].category is ErrorCategory.FATAL
    assert state.failures[0].reason == "store unavailable"


@pytest.mark.asyncio
async def test_passes_for_one_project_never_overlap() -> None:
    runner = _RecordingRunner(delay=0.05)
    service = _service(runner)
    service.submit("web", "Add login form")
    await service.coordinate("web")

    await asyncio.gather(service.coordinate("web"), service.coordinate("web"))

    assert runner.peak == 1
    assert [phase for _, phase in runner.calls] == [CyclePhase.DEFINE, CyclePhase.TEST]


@pytest.mark.asyncio
async def test_active_cycles_advance_concurrently() -> None:
    runner = _RecordingRunner(delay=0.05)
    service = _service(runner)
    service.submit("web", "Add login form")
    service.submit("web", "Add signup form")
    await service.coordinate("web")

    state = await service.coordinate("web")

    assert state.phase is WorkflowPhase.DEVELOPMENT
    assert len(state.active_work) == 2
    assert runner.peak == 2


@pytest.mark.asyncio
async def test_cancel_fails_cycle_and_cancels_item() -> None:
    service = _service(_RecordingRunner())
    item_id = service.submit("web", "Add login form")
    await service.coordinate("web")

    assert service.cancel("web", item_id)
    assert not service.cancel("web", item_id)

    item = service.queue("web").get(item_id)
    assert item is not None and item.status is WorkItemStatus.CANCELLED
    assert service.cycles.active_cycles("web") == []
    assert (await service.coordinate("web")).phase is WorkflowPhase.COMPLETED


@pytest.mark.asyncio
async def test_recover_resumes_cycle_from_recorded_phase() -> None:
    store = InMemoryStateStore()
    first = _service(_RecordingRunner(), store=store)
    item_id = first.submit("web", "Add login form")
    await first.coordinate("web")
    await first.coordinate("web")
    await first.coordinate("web")

    runner = _RecordingRunner()
    second = _service(runner, store=store)
    assert second.recover("web") == 1
    (cycle,) = second.cycles.active_cycles("web")
    assert cycle.status is CycleStatus.PAUSED
    assert cycle.pause_reason == "Scheduler restarted"

    state = await second.run_until_settled("web")

    assert state.phase is WorkflowPhase.COMPLETED
    assert runner.calls[0] == (item_id, CyclePhase.IMPLEMENT)
    assert len(runner.calls) == 3


@pytest.mark.asyncio
async def test_registered_workers_receive_assignments() -> None:
    bus = EventBus()
    seen: list[SchedulerEvent] = []
    bus.subscribe(None, seen.append)
    registry = WorkerRegistry()
    agent_id = registry.register("backend")
    service = _service(_RecordingRunner(), registry=registry, bus=bus)
    service.submit("web", "Add login form")
    await service.coordinate("web")

    state = await service.coordinate("web")

    assert state.active_agents == (agent_id,)
    started = [e for e in seen if e.event_type is EventType.ASSIGNMENT_STARTED]
    completed = [e for e in seen if e.event_type is EventType.ASSIGNMENT_COMPLETED]
    assert started[0].payload["agent_id"] == agent_id
    assert len(completed) == 1
    instance = registry.get(agent_id)
    assert instance is not None
    assert instance.performance.tasks_completed == 1
    assert instance.current_task_ids == []


def test_workflow_state_serializes() -> None:
    state = WorkflowState(project_id="web", phase=WorkflowPhase.IDLE)

    data = state.to_dict()

    assert data["phase"] == "idle"
    assert data["token_status"] == "active"
    assert data["failures"] == []
    assert state.settled
    assert not WorkflowState(project_id="web", phase=WorkflowPhase.PLANNING).settled
