"""Stable constants shared across scheduler planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Admission windows.
MINUTE_WINDOW_SECONDS: Final[float] = 60.0
HOUR_WINDOW_SECONDS: Final[float] = 3600.0
BUDGET_WARNING_RATIO: Final[float] = 0.8
BUDGET_CRITICAL_RATIO: Final[float] = 0.95
LOW_BUDGET_REMAINING_RATIO: Final[float] = 0.2

# Work queue.
COMPLETED_HISTORY_SIZE: Final[int] = 100
THROUGHPUT_WINDOW_SECONDS: Final[float] = 60.0

# Cycles and queries.
MAX_PHASE_ITERATIONS: Final[int] = 3
QUERY_MAX_AGE_SECONDS: Final[float] = 7 * 24 * 3600.0
DEFAULT_AMBIGUITY_KEYWORDS: Final[tuple[str, ...]] = (
    "design",
    "decision",
    "choice",
    "unclear",
    "ambiguous",
)
NEGATIVE_ANSWER_SIGNALS: Final[tuple[str, ...]] = ("no", "stop", "cancel", "abort", "different")

# Worker health.
WORKER_LIVENESS_WINDOW_SECONDS: Final[float] = 120.0
WORKER_SWEEP_INTERVAL_SECONDS: Final[float] = 30.0

# Blocked-work markers surfaced by the coordination loop.
TOKEN_LIMIT_BLOCK_MARKER: Final[str] = "ALL_WORK_BLOCKED_BY_TOKEN_LIMIT"
COORDINATION_ERROR_MARKER: Final[str] = "COORDINATION_ERROR"

__all__ = [
    "BUDGET_CRITICAL_RATIO",
    "BUDGET_WARNING_RATIO",
    "COMPLETED_HISTORY_SIZE",
    "CONFIG_SCHEMA_VERSION",
    "COORDINATION_ERROR_MARKER",
    "DEFAULT_AMBIGUITY_KEYWORDS",
    "HOUR_WINDOW_SECONDS",
    "LOG_DIR",
    "LOW_BUDGET_REMAINING_RATIO",
    "MAX_PHASE_ITERATIONS",
    "MINUTE_WINDOW_SECONDS",
    "NEGATIVE_ANSWER_SIGNALS",
    "QUERY_MAX_AGE_SECONDS",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "THROUGHPUT_WINDOW_SECONDS",
    "TOKEN_LIMIT_BLOCK_MARKER",
    "WORKER_LIVENESS_WINDOW_SECONDS",
    "WORKER_SWEEP_INTERVAL_SECONDS",
]
