"""
hive-scheduler persistence layer.

Purpose
- SQLite state database with migrations, plus the ``StateStore`` callback the
  control plane writes every transition through.

Functional requirements
- Must support safe resume after crash and concurrent readers.
"""

from hive_scheduler.persistence.state_db import (
    MigrationRecord,
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
    canonical_json,
)
from hive_scheduler.persistence.store import InMemoryStateStore, SQLiteStateStore, StateStore

__all__ = [
    "InMemoryStateStore",
    "MigrationRecord",
    "SQLiteStateStore",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "StateStore",
    "canonical_json",
]
