"""Pluggable strategies that map pending work items onto worker instances."""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Protocol, runtime_checkable

from hive_scheduler.domain import ids as domain_ids
from hive_scheduler.domain.errors import UnknownStrategyError
from hive_scheduler.domain.models import (
    Assignment,
    Priority,
    WorkerCapability,
    WorkerInstance,
    WorkerStatus,
    WorkItem,
    utc_now,
)

_INELIGIBLE_STATUSES = frozenset({WorkerStatus.OFFLINE, WorkerStatus.ERROR})
_SPEED_BASELINE_MS = 300_000
_TOKENS_PER_SECOND = 10
_COST_PER_SECOND = 0.01


class ProjectUrgency(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def is_urgent(self) -> bool:
        return self in {ProjectUrgency.HIGH, ProjectUrgency.CRITICAL}


@dataclass(frozen=True, slots=True)
class AssignmentBudget:
    max_tokens: int
    cost_per_token: float = 1.0

    def __post_init__(self) -> None:
        if self.max_tokens < 0:
            raise ValueError("AssignmentBudget.max_tokens must be >= 0")
        if self.cost_per_token < 0:
            raise ValueError("AssignmentBudget.cost_per_token must be >= 0")

    @property
    def limit(self) -> float:
        return self.max_tokens * self.cost_per_token


@dataclass(frozen=True, slots=True)
class ProjectRequirements:
    urgency: ProjectUrgency = ProjectUrgency.NORMAL
    skills_required: tuple[str, ...] = ()
    budget: AssignmentBudget | None = None


@dataclass(frozen=True, slots=True)
class AssignmentContext:
    project_id: str
    available_agents: Sequence[WorkerInstance]
    capabilities: Mapping[str, WorkerCapability]
    pending_items: Sequence[WorkItem]
    current_load: Mapping[str, int] = field(default_factory=dict)
    requirements: ProjectRequirements = field(default_factory=ProjectRequirements)
    now: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class AssignmentPlan:
    strategy: str
    assignments: tuple[Assignment, ...]
    estimated_completion: datetime
    estimated_cost: float
    confidence: float
    recommendations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def assignment_for(self, task_id: str) -> Assignment | None:
        for assignment in self.assignments:
            if assignment.task_id == task_id:
                return assignment
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "strategy": self.strategy,
            "assignments": [assignment.to_dict() for assignment in self.assignments],
            "estimated_completion": self.estimated_completion.isoformat(),
            "estimated_cost": round(self.estimated_cost, 6),
            "confidence": round(self.confidence, 6),
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
        }


@runtime_checkable
class AssignmentStrategy(Protocol):
    name: str

    def plan(self, context: AssignmentContext) -> AssignmentPlan: ...


class _PlanBuilder:
    """Running state for one plan: load so far, chosen assignments, warnings."""

    def __init__(self, context: AssignmentContext) -> None:
        self.context = context
        self.load: dict[str, int] = {
            agent.id: int(context.current_load.get(agent.id, agent.load))
            for agent in context.available_agents
        }
        self.assignments: list[Assignment] = []
        self.chosen: list[WorkerCapability] = []
        self.warnings: list[str] = []
        self.recommendations: list[str] = []

    def capability(self, agent: WorkerInstance) -> WorkerCapability | None:
        return self.context.capabilities.get(agent.capability_id)

    def eligible(self, item: WorkItem) -> list[WorkerInstance]:
        out: list[WorkerInstance] = []
        for agent in self.context.available_agents:
            capability = self.capability(agent)
            if capability is None or agent.status in _INELIGIBLE_STATUSES:
                continue
            if not capability.supports(item.task_type):
                continue
            if self.load[agent.id] >= capability.max_concurrent_tasks:
                continue
            out.append(agent)
        return out

    def assign(self, item: WorkItem, agent: WorkerInstance) -> Assignment:
        capability = self.capability(agent)
        if capability is None:
            raise ValueError(f"worker {agent.id} has no registered capability")
        assignment = Assignment(
            id=domain_ids.generate_assignment_id(),
            task_id=item.id,
            agent_id=agent.id,
            priority=item.priority,
            assigned_at=self.context.now,
            estimated_completion=self.context.now
            + timedelta(milliseconds=capability.average_execution_ms),
        )
        self.assignments.append(assignment)
        self.chosen.append(capability)
        self.load[agent.id] += 1
        return assignment

    def no_worker(self, item: WorkItem) -> None:
        self.warnings.append(f"No eligible worker for task {item.id}")

    def build(self, strategy: str, *, estimated_cost: float | None = None) -> AssignmentPlan:
        total = len(self.context.pending_items)
        assigned = len(self.assignments)
        unassigned = total - assigned
        recommendations = list(self.recommendations)
        if unassigned > 0:
            recommendations.append(
                f"Add more workers: {unassigned} of {total} tasks could not be assigned"
            )
        if self.context.requirements.urgency.is_urgent and strategy != "skill-matched":
            recommendations.append("Use the skill-matched strategy for urgent projects")

        longest_ms = max((cap.average_execution_ms for cap in self.chosen), default=0)
        cost = (
            estimated_cost
            if estimated_cost is not None
            else sum(cap.average_execution_ms / 1000 * _COST_PER_SECOND for cap in self.chosen)
        )
        return AssignmentPlan(
            strategy=strategy,
            assignments=tuple(self.assignments),
            estimated_completion=self.context.now + timedelta(milliseconds=longest_ms),
            estimated_cost=cost,
            confidence=assigned / total if total else 1.0,
            recommendations=tuple(dict.fromkeys(recommendations)),
            warnings=tuple(self.warnings),
        )


def skill_score(capability: WorkerCapability) -> float:
    return 0.7 * capability.success_rate + 0.3 * (
        1 - capability.average_execution_ms / _SPEED_BASELINE_MS
    )


def cost_effectiveness(capability: WorkerCapability) -> float:
    return capability.success_rate / (capability.average_execution_ms / 1000)


def estimated_tokens(capability: WorkerCapability) -> float:
    return capability.average_execution_ms / 1000 * _TOKENS_PER_SECOND


class LoadBalancedStrategy:
    """Least-loaded eligible worker first."""

    name = "load-balanced"

    def plan(self, context: AssignmentContext) -> AssignmentPlan:
        builder = _PlanBuilder(context)
        for item in context.pending_items:
            candidates = builder.eligible(item)
            if not candidates:
                builder.no_worker(item)
                continue
            agent = min(candidates, key=lambda candidate: builder.load[candidate.id])
            builder.assign(item, agent)
        return builder.build(self.name)


class SkillMatchedStrategy:
    """Highest ``skill_score`` eligible worker for each item."""

    name = "skill-matched"

    def plan(self, context: AssignmentContext) -> AssignmentPlan:
        builder = _PlanBuilder(context)
        for item in context.pending_items:
            candidates = builder.eligible(item)
            if not candidates:
                builder.no_worker(item)
                continue
            agent = max(
                candidates, key=lambda candidate: _score_of(builder, candidate, skill_score)
            )
            builder.assign(item, agent)

        type_counts = Counter(item.task_type for item in context.pending_items)
        for task_type, count in sorted(type_counts.items()):
            capable = sum(
                1
                for agent in context.available_agents
                if (cap := builder.capability(agent)) is not None and cap.supports(task_type)
            )
            if count > capable * 2:
                builder.recommendations.append(
                    f"Many {task_type.value} tasks pending; add more {task_type.value} workers"
                )
        return builder.build(self.name)


class PriorityFirstStrategy:
    """Highest priority items first; HIGH and above get the best worker."""

    name = "priority-first"

    def __init__(self, threshold: Priority = Priority.HIGH) -> None:
        self._threshold = threshold

    def plan(self, context: AssignmentContext) -> AssignmentPlan:
        builder = _PlanBuilder(context)
        ordered = sorted(context.pending_items, key=lambda item: -int(item.priority))
        for item in ordered:
            candidates = builder.eligible(item)
            if not candidates:
                builder.no_worker(item)
                continue
            if item.priority >= self._threshold:
                agent = max(
                    candidates,
                    key=lambda candidate: _score_of(builder, candidate, skill_score),
                )
            else:
                agent = candidates[0]
            builder.assign(item, agent)
        return builder.build(self.name)


class CostOptimizedStrategy:
    """Most cost-effective worker while the plan stays within the project budget."""

    name = "cost-optimized"

    def __init__(self, fallback: LoadBalancedStrategy | None = None) -> None:
        self._fallback = fallback if fallback is not None else LoadBalancedStrategy()

    def plan(self, context: AssignmentContext) -> AssignmentPlan:
        budget = context.requirements.budget
        if budget is None:
            return self._fallback.plan(context)

        builder = _PlanBuilder(context)
        total_cost = 0.0
        for item in context.pending_items:
            candidates = builder.eligible(item)
            if not candidates:
                builder.no_worker(item)
                continue
            agent = max(
                candidates,
                key=lambda candidate: _score_of(builder, candidate, cost_effectiveness),
            )
            capability = builder.capability(agent)
            if capability is None:
                builder.no_worker(item)
                continue
            task_cost = estimated_tokens(capability) * budget.cost_per_token
            if total_cost + task_cost > budget.limit:
                builder.warnings.append(f"Task {item.id} exceeds budget")
                continue
            builder.assign(item, agent)
            total_cost += task_cost

        if budget.limit > 0:
            builder.recommendations.append(f"Budget usage: {total_cost / budget.limit * 100:.1f}%")
        return builder.build(self.name, estimated_cost=total_cost)


def _score_of(
    builder: _PlanBuilder,
    agent: WorkerInstance,
    scorer: Callable[[WorkerCapability], float],
) -> float:
    capability = builder.capability(agent)
    if capability is None:
        return float("-inf")
    return scorer(capability)


class StrategyRegistry:
    """Name to strategy lookup; unknown names fail loudly."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._strategies: dict[str, AssignmentStrategy] = {}

    @classmethod
    def default(cls) -> StrategyRegistry:
        registry = cls()
        for strategy in (
            LoadBalancedStrategy(),
            SkillMatchedStrategy(),
            PriorityFirstStrategy(),
            CostOptimizedStrategy(),
        ):
            registry.register(strategy.name, strategy)
        return registry

    def register(self, name: str, strategy: AssignmentStrategy) -> None:
        key = name.strip()
        if not key:
            raise ValueError("strategy name must not be empty")
        with self._lock:
            self._strategies[key] = strategy

    def get(self, name: str) -> AssignmentStrategy:
        with self._lock:
            strategy = self._strategies.get(name)
            if strategy is None:
                raise UnknownStrategyError(name, tuple(sorted(self._strategies)))
            return strategy

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._strategies))

    def plan(self, name: str, context: AssignmentContext) -> AssignmentPlan:
        return self.get(name).plan(context)


__all__ = [
    "AssignmentBudget",
    "AssignmentContext",
    "AssignmentPlan",
    "AssignmentStrategy",
    "CostOptimizedStrategy",
    "LoadBalancedStrategy",
    "PriorityFirstStrategy",
    "ProjectRequirements",
    "ProjectUrgency",
    "SkillMatchedStrategy",
    "StrategyRegistry",
    "cost_effectiveness",
    "estimated_tokens",
    "skill_score",
]
