"""Unit tests for the SQLite state DB: migrations, pragmas and transaction helpers."""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path

import pytest

from hive_scheduler.constants import STATE_DB_SCHEMA_VERSION
from hive_scheduler.persistence.state_db import (
    StateDB,
    StateDBError,
    StateDBMigrationError,
    canonical_json,
)

_EXPECTED_TABLES = {"schema_versions", "work_items", "cycles", "queries", "usage_events"}
_EXPECTED_INDEXES = {
    "idx_work_items_project_status",
    "idx_cycles_project_status",
    "idx_queries_project_status",
    "idx_usage_events_project_timestamp",
}


def _insert_usage(db: StateDB, event_id: str, *, conn: sqlite3.Connection | None = None) -> None:
    db.execute(
        """
        INSERT INTO usage_events (
            id, project_id, timestamp, input_tokens, output_tokens, success, work_item_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (event_id, "web", "2026-03-01T09:30:00.000000Z", 10, 5, 1, None),
        conn=conn,
    )


def _usage_ids(db: StateDB) -> list[str]:
    rows = db.query_all("SELECT id FROM usage_events ORDER BY id")
    return [str(row["id"]) for row in rows]


def test_migrate_is_idempotent_and_creates_schema(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "hive.sqlite")

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.schema_version() == STATE_DB_SCHEMA_VERSION

    objects = db.query_all("SELECT type, name FROM sqlite_master WHERE name NOT LIKE 'sqlite_%'")
    tables = {str(row["name"]) for row in objects if row["type"] == "table"}
    indexes = {str(row["name"]) for row in objects if row["type"] == "index"}
    assert _EXPECTED_TABLES <= tables
    assert _EXPECTED_INDEXES <= indexes

    versions = db.query_all("SELECT version, name FROM schema_versions")
    assert len(versions) == STATE_DB_SCHEMA_VERSION


def test_connections_use_wal_and_busy_timeout(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite", busy_timeout_ms=1234)

    with db.connection() as conn:
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()
        busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()

    assert journal_mode is not None
    assert str(journal_mode[0]).lower() == "wal"
    assert busy_timeout is not None
    assert int(busy_timeout[0]) == 1234


def test_constructor_rejects_negative_settings(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="busy_timeout_ms"):
        StateDB(tmp_path / "a.sqlite", busy_timeout_ms=-1)
    with pytest.raises(ValueError, match="busy_retry_limit"):
        StateDB(tmp_path / "b.sqlite", busy_retry_limit=-1)


def test_checksum_mismatch_is_reported(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()
    db.execute("UPDATE schema_versions SET checksum = 'tampered' WHERE version = 1")

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        db.migrate()


def test_newer_database_schema_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "x", "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        db.migrate()


def test_status_check_constraint_rejects_unknown_values(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()

    with pytest.raises(sqlite3.IntegrityError):
        db.execute(
            """
            INSERT INTO work_items (
                id, project_id, status, priority, created_at, updated_at, payload_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            ("wi-1", "web", "exploded", 500, "t", "t", "{}"),
        )


def test_transaction_rolls_back_on_error(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()

    with pytest.raises(RuntimeError, match="boom"), db.transaction() as conn:
        _insert_usage(db, "ue-1", conn=conn)
        raise RuntimeError("boom")

    assert _usage_ids(db) == []


def test_nested_transaction_rolls_back_only_savepoint(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()

    with db.transaction() as conn:
        _insert_usage(db, "ue-outer", conn=conn)
        with pytest.raises(RuntimeError), db.transaction(conn=conn) as nested:
            _insert_usage(db, "ue-inner", conn=nested)
            raise RuntimeError("inner failure")

    assert _usage_ids(db) == ["ue-outer"]


def test_executemany_inserts_all_rows(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()

    db.executemany(
        """
        INSERT INTO usage_events (
            id, project_id, timestamp, input_tokens, output_tokens, success, work_item_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [(f"ue-{index}", "web", "2026-03-01T00:00:00Z", index, 0, 1, None) for index in range(4)],
    )

    row = db.query_one("SELECT COUNT(*) AS total, SUM(input_tokens) AS tokens FROM usage_events")
    assert row == {"total": 4, "tokens": 6}


def test_query_errors_are_wrapped(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()

    with pytest.raises(StateDBError, match="query one failed"):
        db.query_one("SELECT * FROM missing_table")


def test_backup_produces_consistent_copy(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()
    _insert_usage(db, "ue-1")

    backup_path = db.backup(tmp_path / "backups" / "hive-copy.sqlite")
    restored = StateDB(backup_path)

    assert backup_path.exists()
    assert restored.schema_version() == STATE_DB_SCHEMA_VERSION
    assert _usage_ids(restored) == ["ue-1"]
    assert restored.integrity_check() == ()


def test_integrity_check_rejects_invalid_limit(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    with pytest.raises(ValueError):
        db.integrity_check(max_errors=0)


def test_context_manager_migrates(tmp_path: Path) -> None:
    with StateDB(tmp_path / "hive.sqlite") as db:
        assert db.schema_version() == STATE_DB_SCHEMA_VERSION


def test_wal_reader_is_not_blocked_by_open_writer(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "hive.sqlite")
    db.migrate()
    _insert_usage(db, "ue-1")

    writer_conn = db.connect()
    reader_conn = db.connect()
    writer_started = threading.Event()
    reader_finished = threading.Event()
    errors: list[str] = []
    reader_count: int | None = None
    reader_elapsed: float | None = None

    def writer() -> None:
        try:
            writer_conn.execute("BEGIN IMMEDIATE")
            writer_conn.execute("UPDATE usage_events SET input_tokens = 99 WHERE id = 'ue-1'")
            writer_started.set()
            if not reader_finished.wait(timeout=2.0):
                errors.append("reader did not finish while writer transaction was open")
            writer_conn.execute("ROLLBACK")
        except Exception as exc:  # noqa: BLE001
            errors.append(f"writer failed: {exc}")

    def reader() -> None:
        nonlocal reader_count, reader_elapsed
        if not writer_started.wait(timeout=2.0):
            errors.append("writer did not start")
            reader_finished.set()
            return
        try:
            start = time.monotonic()
            row = reader_conn.execute("SELECT COUNT(*) FROM usage_events").fetchone()
            reader_elapsed = time.monotonic() - start
            reader_count = None if row is None else int(row[0])
        except Exception as exc:  # noqa: BLE001
            errors.append(f"reader failed: {exc}")
        finally:
            reader_finished.set()

    writer_thread = threading.Thread(target=writer, name="state-db-writer", daemon=True)
    reader_thread = threading.Thread(target=reader, name="state-db-reader", daemon=True)
    writer_thread.start()
    reader_thread.start()
    writer_thread.join(timeout=5.0)
    reader_thread.join(timeout=5.0)
    writer_conn.close()
    reader_conn.close()

    assert not errors
    assert reader_count == 1
    assert reader_elapsed is not None
    assert reader_elapsed < 0.75


def test_canonical_json_is_sorted_and_compact() -> None:
    assert canonical_json({"b": 1, "a": [1, "é"]}) == '{"a":[1,"é"],"b":1}'
