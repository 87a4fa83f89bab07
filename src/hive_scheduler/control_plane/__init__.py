"""Control-plane public API."""

from hive_scheduler.control_plane.admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionPurpose,
    BudgetLevel,
    BudgetStatus,
    QueueCounts,
)
from hive_scheduler.control_plane.assignment import (
    AssignmentBudget,
    AssignmentContext,
    AssignmentPlan,
    AssignmentStrategy,
    CostOptimizedStrategy,
    LoadBalancedStrategy,
    PriorityFirstStrategy,
    ProjectRequirements,
    ProjectUrgency,
    SkillMatchedStrategy,
    StrategyRegistry,
)
from hive_scheduler.control_plane.coordinator import (
    CoordinationService,
    WorkflowPhase,
    WorkflowState,
)
from hive_scheduler.control_plane.cycle import (
    CycleStateMachine,
    ExecutorPhaseRunner,
    KeywordAmbiguityClassifier,
    NeedsHumanInputClassifier,
    PhaseOutcome,
    PhaseRunner,
    PhaseStepResult,
)
from hive_scheduler.control_plane.queries import AnswerEvaluation, DecisionStats, QueryManager
from hive_scheduler.control_plane.work_queue import QueueStats, WorkQueue
from hive_scheduler.control_plane.workers import HealthMonitor, WorkerRegistry, WorkerStats

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionPurpose",
    "AnswerEvaluation",
    "AssignmentBudget",
    "AssignmentContext",
    "AssignmentPlan",
    "AssignmentStrategy",
    "BudgetLevel",
    "BudgetStatus",
    "CoordinationService",
    "CostOptimizedStrategy",
    "CycleStateMachine",
    "DecisionStats",
    "ExecutorPhaseRunner",
    "HealthMonitor",
    "KeywordAmbiguityClassifier",
    "LoadBalancedStrategy",
    "NeedsHumanInputClassifier",
    "PhaseOutcome",
    "PhaseRunner",
    "PhaseStepResult",
    "PriorityFirstStrategy",
    "ProjectRequirements",
    "ProjectUrgency",
    "QueryManager",
    "QueueCounts",
    "QueueStats",
    "SkillMatchedStrategy",
    "StrategyRegistry",
    "WorkQueue",
    "WorkerRegistry",
    "WorkerStats",
    "WorkflowPhase",
    "WorkflowState",
]
