"""
hive-scheduler unit tests for observability logging.

Purpose
- Validate structured JSON logging with redaction, correlation metadata and
  queue-backed delivery.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation, including structlog keyword fields.
- Multi-threaded logging stability and shutdown draining.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from hive_scheduler.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"hive_scheduler_tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(log_dir=tmp_path, logger_name=logger_name, log_to_stderr=False)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(project_id="web", cycle_id="cyc-1"):
        logger.info(
            "payload api_key=sk-FAKE123456789012345 ready",
            extra={"nested": {"password": "hunter2", "safe": "ok"}, "tokens_used": 42},
        )

    shutdown_logging(handle)

    assert handle.log_path is not None
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["project_id"] == "web"
    assert first["cycle_id"] == "cyc-1"
    assert first["fields"]["tokens_used"] == 42  # type: ignore[index]
    assert first["fields"]["nested"]["safe"] == "ok"  # type: ignore[index]

    line = handle.log_path.read_text(encoding="utf-8")
    assert "sk-FAKE" not in line
    assert "hunter2" not in line
    assert "***REDACTED***" in line


def test_structlog_events_carry_keyword_fields(tmp_path: Path) -> None:
    handle = setup_structured_logging(LoggingConfig(log_dir=tmp_path, log_to_stderr=False))

    structlog.get_logger("hive_scheduler.tests").info(
        "queue_item_enqueued", work_item_id="wi-9", priority=750
    )
    shutdown_logging(handle)

    assert handle.log_path is not None
    (record,) = _read_json_lines(handle.log_path)
    assert record["event"] == "queue_item_enqueued"
    assert record["logger"] == "hive_scheduler.tests"
    assert record["work_item_id"] == "wi-9"
    assert record["fields"] == {"priority": 750, "work_item_id": "wi-9"}


def test_setup_logging_wrapper_uses_observability_config(tmp_path: Path) -> None:
    logger = setup_logging(
        {
            "log_level": "WARNING",
            "log_format": "text",
            "log_dir": str(tmp_path),
            "redact_secrets": True,
        }
    )
    assert logger.name == "hive_scheduler"

    logger.info("dropped below level")
    logger.warning("budget low", extra={"client_secret": "abc-123"})
    shutdown_logging()

    content = (tmp_path / "hive-scheduler.jsonl").read_text(encoding="utf-8")
    assert "dropped below level" not in content
    assert "WARNING" in content
    assert "budget low" in content
    assert "abc-123" not in content


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=tmp_path,
            logger_name=logger_name,
            log_to_stderr=False,
            redact_secrets=False,
        )
    )
    logging.getLogger(logger_name).info("password=plain")
    shutdown_logging(handle)

    assert handle.log_path is not None
    assert "password=plain" in handle.log_path.read_text(encoding="utf-8")


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=tmp_path,
            logger_name=logger_name,
            log_to_stderr=False,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        for i in range(per_thread):
            logger.info(
                f"thread={thread_idx} index={i} password=pw-{thread_idx}-{i}",
                extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
            )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    assert handle.log_path is not None
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert "event" in parsed
        assert "pw-" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=tmp_path,
            logger_name=logger_name,
            log_to_stderr=False,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)
    shutdown_logging(handle)

    assert handle.is_shutdown
    assert handle.log_path is not None
    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected


def test_correlation_scope_nests_and_resets() -> None:
    assert get_correlation_context() == {}
    with correlation_scope(project_id="web"):
        with correlation_scope(cycle_id="cyc-1"):
            assert get_correlation_context() == {"project_id": "web", "cycle_id": "cyc-1"}
        assert get_correlation_context() == {"project_id": "web"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="must not be empty"):
        with correlation_scope(project_id="  "):
            pass


def test_default_redactor_masks_bearer_tokens() -> None:
    redacted = default_log_redactor({"header": "sent Bearer abc.def", "ok": "fine"})
    assert redacted == {"header": "sent Bearer ***REDACTED***", "ok": "fine"}
