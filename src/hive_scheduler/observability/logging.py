"""Structured logging for the scheduler process.

Modules log through ``structlog.get_logger(__name__)`` with an event name and
keyword fields. ``setup_structured_logging`` hands those events to the stdlib
``hive_scheduler`` logger, which puts records on a bounded queue; a listener
thread renders them as JSON lines (or ``key=value`` text) into the configured
sinks. A full queue drops records instead of stalling a work cycle.

Correlation identifiers (``project_id``, ``cycle_id``...) come from
``correlation_scope`` or from the record's own fields, and secret-looking keys
and inline credentials are masked before anything is written.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Final, Literal

import structlog

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]
LogFormat = Literal["json", "text"]

MASK: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "project_id",
    "work_item_id",
    "cycle_id",
    "query_id",
    "agent_id",
)

# Whole ``_``/``-``/``.`` separated segments, so ``tokens_used`` is left alone.
_SECRET_SEGMENTS: Final[frozenset[str]] = frozenset(
    {"secret", "password", "passphrase", "apikey", "authorization", "credential", "cookie"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "auth_token",
    "private_key",
    "client_secret",
)
_INLINE_SECRETS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|password|secret|client_secret|authorization)\b"
            r"\s*([:=])\s*[^\s,;]+"
        ),
        rf"\1\2{MASK}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {MASK}"),
    (re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b"), MASK),
)

_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime"}
)

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "hive_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: int | str = "INFO"
    log_format: LogFormat = "json"
    log_dir: Path | str | None = None
    log_filename: str = "hive-scheduler.jsonl"
    logger_name: str = "hive_scheduler"
    log_to_stderr: bool = True
    queue_size: int = 4096
    redact_secrets: bool = True

    @classmethod
    def from_observability(cls, section: Mapping[str, object]) -> LoggingConfig:
        """Build from an ``[observability]`` config section."""

        level = section.get("log_level", "INFO")
        log_dir = section.get("log_dir")
        return cls(
            level=level if isinstance(level, (int, str)) else "INFO",
            log_format="text" if section.get("log_format") == "text" else "json",
            log_dir=log_dir if isinstance(log_dir, (str, Path)) and log_dir else None,
            redact_secrets=bool(section.get("redact_secrets", True)),
        )


# -- correlation -----------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


def set_correlation_fields(
    **fields: str | None,
) -> contextvars.Token[tuple[tuple[str, str], ...]]:
    """Overlay ``fields`` on the current context; ``None`` removes a key."""

    merged = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        elif not value.strip():
            raise ValueError(f"correlation value for {key!r} must not be empty")
        else:
            merged[key] = value.strip()
    return _correlation.set(tuple(merged.items()))


def reset_correlation_fields(token: contextvars.Token[tuple[tuple[str, str], ...]]) -> None:
    _correlation.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


# -- redaction -------------------------------------------------------------


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(phrase in lowered for phrase in _SECRET_PHRASES) or not _SECRET_SEGMENTS.isdisjoint(
        re.split(r"[_\-.]", lowered)
    )


def redact_text(text: str) -> str:
    for pattern, replacement in _INLINE_SECRETS:
        text = pattern.sub(replacement, text)
    return text


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and credentials embedded in strings."""

    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: MASK if is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _no_redaction(value: JSONValue) -> JSONValue:
    return value


# -- rendering -------------------------------------------------------------


def to_json_value(value: object) -> JSONValue:
    """Best-effort conversion of a log field to something ``json.dumps`` accepts."""

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else MASK
    if isinstance(value, Enum):
        return to_json_value(value.value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, (Path, bytes)):
        return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
    if isinstance(value, Mapping):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((to_json_value(item) for item in value), key=str)
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    return repr(value)


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _timestamp(created: float) -> str:
    moment = datetime.fromtimestamp(created, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _record_fields(record: logging.LogRecord) -> dict[str, JSONValue]:
    prepared = getattr(record, "fields", None)
    if isinstance(prepared, dict):
        return prepared
    return {
        key: to_json_value(value)
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRIBUTES
        and key not in {"correlation", "fields"}
        and not key.startswith("_")
    }


def _record_correlation(record: logging.LogRecord) -> dict[str, str]:
    found = {str(k): str(v) for k, v in dict(getattr(record, "correlation", {}) or {}).items()}
    fields = getattr(record, "fields", None) or {}
    for key in CORRELATION_KEYS:
        value = fields.get(key)
        if isinstance(value, str) and value.strip():
            found[key] = value.strip()
    return found


class _RecordFormatter(logging.Formatter):
    """Shared record flattening for both output formats."""

    def __init__(self, redactor: LogRedactor) -> None:
        super().__init__()
        self.redactor = redactor

    def parts(self, record: logging.LogRecord) -> tuple[dict[str, JSONValue], JSONValue]:
        head: dict[str, JSONValue] = {
            "timestamp": _timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self.redactor(record.getMessage())),
        }
        head.update(sorted(_record_correlation(record).items()))
        fields = getattr(record, "fields", None)
        return head, self.redactor(to_json_value(fields)) if fields else None

    def traceback_text(self, record: logging.LogRecord) -> str | None:
        if record.exc_info is None:
            return None
        return _as_text(self.redactor(self.formatException(record.exc_info)))


class JsonLineFormatter(_RecordFormatter):
    def format(self, record: logging.LogRecord) -> str:
        line, fields = self.parts(record)
        if fields:
            line["fields"] = fields
        trace = self.traceback_text(record)
        if trace is not None:
            line["exception"] = trace
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class TextFormatter(_RecordFormatter):
    def format(self, record: logging.LogRecord) -> str:
        head, fields = self.parts(record)
        extras = {key: head.pop(key) for key in list(head) if key in CORRELATION_KEYS}
        if isinstance(fields, dict):
            extras.update(fields)
        words = [
            str(head["timestamp"]),
            f"{head['level']:<7}",
            str(head["logger"]),
            str(head["event"]),
        ]
        words += [f"{key}={_as_text(extras[key])}" for key in sorted(extras)]
        trace = self.traceback_text(record)
        return " ".join(words) if trace is None else " ".join(words) + "\n" + trace


# -- queue plumbing --------------------------------------------------------


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Captures correlation and fields on the caller's thread; never blocks."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = get_correlation_context()
        if context:
            record.correlation = context
        record.fields = _record_fields(record)
        return super().prepare(record)  # type: ignore[no-any-return]

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class StructuredLoggingHandle:
    """A running logging setup; ``shutdown`` drains the queue and closes sinks."""

    def __init__(
        self,
        logger: logging.Logger,
        log_path: Path | None,
        entry: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._entry = entry
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._entry.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self) -> None:
        for sink in self._sinks:
            sink.flush()

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._listener.stop()
            self.logger.removeHandler(self._entry)
            self._entry.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


class _ActiveHandle:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._hooked = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def replace(self, handle: StructuredLoggingHandle | None) -> None:
        with self._lock:
            self._handle = handle
            if handle is not None and not self._hooked:
                atexit.register(shutdown_logging)
                self._hooked = True

    def clear_if(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_active = _ActiveHandle()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    number = logging.getLevelName(value.strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return number


def _sinks(config: LoggingConfig) -> tuple[list[logging.Handler], Path | None]:
    sinks: list[logging.Handler] = []
    log_path: Path | None = None
    if config.log_dir is not None:
        if Path(config.log_filename).name != config.log_filename:
            raise ValueError("log_filename must not include path separators")
        log_path = Path(config.log_dir) / config.log_filename
        log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    return sinks, log_path


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install queue-backed sinks on ``config.logger_name`` and route structlog there.

    Any previously active setup is shut down first.
    """

    previous = _active.get()
    if previous is not None:
        shutdown_logging(previous)
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")

    level = _level(config.level)
    redactor = default_log_redactor if config.redact_secrets else _no_redaction
    formatter = (TextFormatter if config.log_format == "text" else JsonLineFormatter)(redactor)
    sinks, log_path = _sinks(config)
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    entry = _DroppingQueueHandler(log_queue)
    entry.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(entry)
    configure_structlog()

    handle = StructuredLoggingHandle(logger, log_path, entry, tuple(sinks), listener)
    _active.replace(handle)
    return handle


def setup_logging(observability_config: Mapping[str, object] | None = None) -> logging.Logger:
    return setup_structured_logging(
        LoggingConfig.from_observability(observability_config or {})
    ).logger


def configure_structlog() -> None:
    """Render structlog events as stdlib records: event name as message, kwargs as extra."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def flush_logging(handle: StructuredLoggingHandle | None = None) -> None:
    target = handle or _active.get()
    if target is not None:
        target.flush()


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    target = handle or _active.get()
    if target is None:
        return
    target.shutdown()
    _active.clear_if(target)


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "JsonLineFormatter",
    "LogFormat",
    "LogRedactor",
    "LoggingConfig",
    "MASK",
    "StructuredLoggingHandle",
    "TextFormatter",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "is_secret_key",
    "redact_text",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
    "to_json_value",
]
