"""Human-in-the-loop questions raised by cycles and their resolution."""

from __future__ import annotations

import re
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog

from hive_scheduler.constants import NEGATIVE_ANSWER_SIGNALS, QUERY_MAX_AGE_SECONDS
from hive_scheduler.domain import ids as domain_ids
from hive_scheduler.domain.errors import QueryStateError
from hive_scheduler.domain.events import EventType
from hive_scheduler.domain.models import Query, QueryStatus, QueryUrgency

if TYPE_CHECKING:
    from hive_scheduler.observability.events import EventBus
    from hive_scheduler.persistence.store import StateStore

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_WORD = re.compile(r"[a-z']+")
RETRY_WITH_DIFFERENT_APPROACH = "retry_with_different_approach"


@dataclass(frozen=True, slots=True)
class AnswerEvaluation:
    should_continue: bool
    alternative: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionStats:
    total: int
    by_status: dict[str, int]
    average_response_seconds: float

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "average_response_seconds": round(self.average_response_seconds, 6),
        }


class QueryManager:
    """Creates, resolves and expires queries; every change is persisted."""

    def __init__(
        self,
        *,
        store: StateStore,
        event_bus: EventBus | None = None,
        negative_signals: tuple[str, ...] = NEGATIVE_ANSWER_SIGNALS,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._negative_signals = frozenset(signal.lower() for signal in negative_signals)
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()

    def create(
        self,
        project_id: str,
        cycle_id: str | None,
        question: str,
        *,
        context: str = "",
        urgency: QueryUrgency = QueryUrgency.BLOCKING,
    ) -> Query:
        query = Query(
            id=domain_ids.generate_query_id(),
            project_id=project_id,
            cycle_id=cycle_id,
            question=question,
            context=context,
            urgency=urgency,
            created_at=self._clock(),
        )
        with self._lock:
            self._store.save_query(query)
        self._logger.info(
            "query_created",
            project_id=project_id,
            query_id=query.id,
            cycle_id=cycle_id,
            urgency=query.urgency.value,
        )
        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.QUERY_CREATED,
                project_id,
                {
                    "query_id": query.id,
                    "cycle_id": cycle_id,
                    "question": query.question,
                    "urgency": query.urgency,
                },
            )
        return query

    def get(self, query_id: str) -> Query | None:
        return self._store.get_query(query_id)

    def pending(self, project_id: str, urgency: QueryUrgency | None = None) -> list[Query]:
        queries = self._store.list_queries(project_id, statuses=(QueryStatus.PENDING,))
        if urgency is None:
            return queries
        return [query for query in queries if query.urgency is urgency]

    def answer(self, query_id: str, answer: str) -> Query:
        return self._resolve(query_id, QueryStatus.ANSWERED, answer)

    def dismiss(self, query_id: str, reason: str = "") -> Query:
        return self._resolve(query_id, QueryStatus.DISMISSED, reason or None)

    def expire_stale(
        self,
        project_id: str,
        now: datetime | None = None,
        *,
        max_age: timedelta = timedelta(seconds=QUERY_MAX_AGE_SECONDS),
    ) -> list[str]:
        """Expire pending advisory queries older than ``max_age``; blocking ones never expire."""

        current = now if now is not None else self._clock()
        expired: list[str] = []
        with self._lock:
            for query in self._store.list_queries(project_id, statuses=(QueryStatus.PENDING,)):
                if query.urgency is not QueryUrgency.ADVISORY:
                    continue
                if current - query.created_at <= max_age:
                    continue
                query.status = QueryStatus.EXPIRED
                query.resolved_at = current
                self._store.save_query(query)
                expired.append(query.id)
        if expired:
            self._logger.info("query_expired", project_id=project_id, query_ids=expired)
        return expired

    def evaluate_answer(self, answer: str | None) -> AnswerEvaluation:
        """Read a human answer: any negative signal word means do not continue as planned."""

        if answer is None or not answer.strip():
            return AnswerEvaluation(should_continue=True)
        words = set(_WORD.findall(answer.lower()))
        if words & self._negative_signals:
            return AnswerEvaluation(
                should_continue=False, alternative=RETRY_WITH_DIFFERENT_APPROACH
            )
        return AnswerEvaluation(should_continue=True)

    def decision_stats(self, project_id: str) -> DecisionStats:
        queries = self._store.list_queries(project_id)
        by_status = Counter(query.status.value for query in queries)
        response_times = [
            (query.resolved_at - query.created_at).total_seconds()
            for query in queries
            if query.status in {QueryStatus.ANSWERED, QueryStatus.DISMISSED}
            and query.resolved_at is not None
        ]
        return DecisionStats(
            total=len(queries),
            by_status={status.value: by_status.get(status.value, 0) for status in QueryStatus},
            average_response_seconds=(
                sum(response_times) / len(response_times) if response_times else 0.0
            ),
        )

    def _resolve(self, query_id: str, status: QueryStatus, answer: str | None) -> Query:
        with self._lock:
            query = self._store.get_query(query_id)
            if query is None:
                raise QueryStateError(f"Query {query_id} not found")
            if query.status is not QueryStatus.PENDING:
                raise QueryStateError(
                    f"Query {query_id} is {query.status.value}; "
                    "only pending queries can be resolved"
                )
            query.status = status
            query.answer = answer
            query.resolved_at = self._clock()
            self._store.save_query(query)

        self._logger.info(
            "query_resolved",
            project_id=query.project_id,
            query_id=query_id,
            cycle_id=query.cycle_id,
            status=status.value,
        )
        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.QUERY_RESOLVED,
                query.project_id,
                {"query_id": query_id, "cycle_id": query.cycle_id, "status": status},
            )
        return query


__all__ = [
    "RETRY_WITH_DIFFERENT_APPROACH",
    "AnswerEvaluation",
    "DecisionStats",
    "QueryManager",
]
