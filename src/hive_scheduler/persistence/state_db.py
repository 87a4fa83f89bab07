"""
SQLite storage for scheduler state.

The database holds four tables (work items, cycles, queries and usage events)
plus a ``schema_versions`` ledger. Every migration is recorded with a digest of
its statements, and a database whose recorded digest no longer matches the
code is refused instead of silently drifting.

Connections are opened per call and closed right away so a ``status`` command
never queues behind a long ``run``. WAL journaling lets readers proceed while a
writer holds its transaction; writers that hit ``SQLITE_BUSY`` back off
exponentially a bounded number of times.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Final, TypeVar

from hive_scheduler.constants import STATE_DB_SCHEMA_VERSION
from hive_scheduler.domain.models import (
    CycleStatus,
    QueryStatus,
    QueryUrgency,
    WorkItemStatus,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = SQLValue
Row = dict[str, RowValue]

_T = TypeVar("_T")

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


class StateDBError(RuntimeError):
    """Base class for state database failures."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be reconciled with this build."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a damaged or foreign file."""


def _one_of(column: str, enum_type: type[StrEnum]) -> str:
    allowed = ", ".join(f"'{member.value}'" for member in enum_type)
    return f"CHECK ({column} IN ({allowed}))"


_LEDGER_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""

_SCHEDULER_TABLES: Final[tuple[str, ...]] = (
    f"""
    CREATE TABLE work_items (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        status TEXT NOT NULL {_one_of("status", WorkItemStatus)},
        priority INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX idx_work_items_project_status ON work_items(project_id, status)",
    f"""
    CREATE TABLE cycles (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        work_item_id TEXT NOT NULL,
        status TEXT NOT NULL {_one_of("status", CycleStatus)},
        phase TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX idx_cycles_project_status ON cycles(project_id, status)",
    f"""
    CREATE TABLE queries (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        cycle_id TEXT,
        status TEXT NOT NULL {_one_of("status", QueryStatus)},
        urgency TEXT NOT NULL {_one_of("urgency", QueryUrgency)},
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX idx_queries_project_status ON queries(project_id, status)",
    """
    CREATE TABLE usage_events (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        input_tokens INTEGER NOT NULL CHECK (input_tokens >= 0),
        output_tokens INTEGER NOT NULL CHECK (output_tokens >= 0),
        success INTEGER NOT NULL CHECK (success IN (0, 1)),
        work_item_id TEXT
    )
    """,
    "CREATE INDEX idx_usage_events_project_timestamp ON usage_events(project_id, timestamp)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """A row of ``schema_versions``."""

    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        # Whitespace-insensitive at line ends so reformatting the DDL is harmless.
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        return digest.hexdigest()


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(1, "initial_scheduler_schema", _SCHEDULER_TABLES),
)

if [migration.version for migration in MIGRATIONS] != list(
    range(1, STATE_DB_SCHEMA_VERSION + 1)
):
    raise StateDBMigrationError(
        f"migrations must cover versions 1..{STATE_DB_SCHEMA_VERSION} without gaps"
    )


def _codes(*names: str) -> frozenset[int]:
    return frozenset(
        code for code in (getattr(sqlite3, name, None) for name in names) if isinstance(code, int)
    )


_BUSY_CODES: Final[frozenset[int]] = _codes(
    "SQLITE_BUSY",
    "SQLITE_BUSY_RECOVERY",
    "SQLITE_BUSY_SNAPSHOT",
    "SQLITE_LOCKED",
    "SQLITE_LOCKED_SHAREDCACHE",
)
_CORRUPT_CODES: Final[frozenset[int]] = _codes("SQLITE_CORRUPT", "SQLITE_NOTADB")
_BUSY_HINTS: Final[tuple[str, ...]] = ("is locked",)
_CORRUPT_HINTS: Final[tuple[str, ...]] = ("malformed", "not a database")


def _matches(exc: sqlite3.Error, codes: frozenset[int], hints: tuple[str, ...]) -> bool:
    if getattr(exc, "sqlite_errorcode", None) in codes:
        return True
    text = str(exc).lower()
    return any(hint in text for hint in hints)


def is_busy(exc: sqlite3.Error) -> bool:
    return _matches(exc, _BUSY_CODES, _BUSY_HINTS)


def is_corrupt(exc: sqlite3.Error) -> bool:
    return _matches(exc, _CORRUPT_CODES, _CORRUPT_HINTS)


class StateDB:
    """Owns one SQLite file: opens connections, migrates, and runs statements."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        self._path = Path(path).expanduser()
        self._timeout_ms = busy_timeout_ms
        self._retries = busy_retry_limit
        self._backoff_s = busy_retry_backoff_ms / 1000.0
        self._savepoints = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    # -- connections -----------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open a WAL-mode connection in autocommit mode; the caller closes it."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = self._open(self._path)
        except sqlite3.Error as exc:
            raise self._wrap(exc, "connect") from exc
        try:
            conn.execute(f"PRAGMA busy_timeout={self._timeout_ms}")
            row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
            mode = None if row is None else row[0]
            if str(mode).lower() != "wal":
                raise StateDBError(f"{self._path} refused WAL journaling (mode={mode!r})")
        except sqlite3.Error as exc:
            conn.close()
            raise self._wrap(exc, "configure connection") from exc
        except StateDBError:
            conn.close()
            raise
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Atomic block; nests as a savepoint when ``conn`` is already in a transaction."""

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate):
                yield owned
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            opener, on_error, on_success = (
                f"SAVEPOINT {name}",
                (f"ROLLBACK TO SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"),
                (f"RELEASE SAVEPOINT {name}",),
            )
        else:
            opener = "BEGIN IMMEDIATE" if immediate else "BEGIN"
            on_error, on_success = ("ROLLBACK",), ("COMMIT",)

        self._run(conn, opener, (), "begin")
        try:
            yield conn
        except BaseException:
            for statement in on_error:
                self._run(conn, statement, (), "rollback")
            raise
        for statement in on_success:
            self._run(conn, statement, (), "commit")

    # -- schema ----------------------------------------------------------

    def migrate(self) -> int:
        """Bring the file up to ``STATE_DB_SCHEMA_VERSION`` and return the version."""

        with self.connection() as conn:
            self._run(conn, _LEDGER_DDL, (), "create schema_versions")
            recorded = self.applied_migrations(conn=conn)
            newest = max(recorded, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"{self._path} has schema version {newest}, newer than the "
                    f"{STATE_DB_SCHEMA_VERSION} this build understands"
                )
            for migration in MIGRATIONS:
                record = recorded.get(migration.version)
                if record is None:
                    self._apply(conn, migration)
                elif record.checksum != migration.checksum:
                    raise StateDBMigrationError(
                        f"checksum mismatch for migration {migration.version} "
                        f"({migration.name}): recorded {record.checksum}, "
                        f"expected {migration.checksum}"
                    )
            return self.schema_version(conn=conn)

    def applied_migrations(
        self, *, conn: sqlite3.Connection | None = None
    ) -> dict[int, MigrationRecord]:
        rows = self.query_all(
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            conn=conn,
        )
        records: dict[int, MigrationRecord] = {}
        for row in rows:
            version = row["version"]
            if not isinstance(version, int):
                raise StateDBMigrationError(f"non-integer schema version {version!r}")
            records[version] = MigrationRecord(
                version=version,
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
        return records

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        version = 0 if row is None else row["version"]
        if not isinstance(version, int):
            raise StateDBMigrationError(f"non-integer schema version {version!r}")
        return version

    def _apply(self, conn: sqlite3.Connection, migration: Migration) -> None:
        operation = f"migration {migration.version}"
        with self.transaction(conn=conn) as tx:
            for statement in migration.statements:
                self._run(tx, statement, (), operation)
            self._run(
                tx,
                "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                "VALUES (?, ?, ?, ?)",
                (migration.version, migration.name, migration.checksum, _now_iso()),
                operation,
            )

    # -- statements ------------------------------------------------------

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run one write statement and return ``rowcount``.

        Without ``conn`` the statement gets its own immediate transaction.
        """

        if conn is not None:
            return self._run(conn, sql, params, "execute").rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params, "execute").rowcount

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        batch = [tuple(params) for params in params_iter]

        def run(target: sqlite3.Connection) -> int:
            return self._retrying(
                "execute many", lambda: target.executemany(sql, batch).rowcount
            )

        if conn is not None:
            return run(conn)
        with self.transaction() as tx:
            return run(tx)

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[Row]:
        with self._reader(conn) as target:
            return [_as_dict(row) for row in self._run(target, sql, params, "query all")]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> Row | None:
        with self._reader(conn) as target:
            row = self._run(target, sql, params, "query one").fetchone()
            return None if row is None else _as_dict(row)

    # -- maintenance -----------------------------------------------------

    def backup(self, destination: str | Path) -> Path:
        """Write a consistent copy of the database to ``destination``."""

        target_path = Path(destination).expanduser()
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as source, self._open(target_path) as target:
            source.backup(target)
        return target_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Problems reported by ``PRAGMA integrity_check``; empty when healthy."""

        if max_errors < 1:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        problems = tuple(str(next(iter(row.values()), "")) for row in rows)
        return () if problems == ("ok",) else problems

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        return None

    # -- internals -------------------------------------------------------

    def _open(self, path: Path) -> sqlite3.Connection:
        return sqlite3.connect(
            path,
            timeout=self._timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )

    @contextmanager
    def _reader(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connection() as owned:
            yield owned

    def _run(
        self, conn: sqlite3.Connection, sql: str, params: SQLParams, operation: str
    ) -> sqlite3.Cursor:
        values = tuple(params)
        return self._retrying(operation, lambda: conn.execute(sql, values))

    def _retrying(self, operation: str, call: Callable[[], _T]) -> _T:
        for attempt in itertools.count():
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if attempt < self._retries and is_busy(exc):
                    time.sleep(self._backoff_s * 2**attempt)
                    continue
                raise self._wrap(exc, operation, attempts=attempt + 1) from exc
        raise AssertionError("unreachable")

    def _wrap(self, exc: sqlite3.Error, operation: str, *, attempts: int = 1) -> StateDBError:
        if is_corrupt(exc):
            return StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}; run integrity_check() and "
                "restore from a backup() copy"
            )
        if is_busy(exc):
            return StateDBBusyError(
                f"{operation} still locked after {attempts} attempt(s) on {self._path}: {exc}"
            )
        return StateDBError(f"{operation} failed for {self._path}: {exc}")


def _as_dict(row: sqlite3.Row) -> Row:
    return dict(zip(row.keys(), tuple(row), strict=True))


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Sorted, compact JSON used for every ``payload_json`` column."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "Row",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "is_busy",
    "is_corrupt",
]
