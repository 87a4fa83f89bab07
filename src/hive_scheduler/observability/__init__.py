"""Public observability primitives: structured logging, metrics, and the event bus."""

from hive_scheduler.observability.events import (
    DispatchError,
    EventBus,
    EventFilter,
    Subscriber,
)
from hive_scheduler.observability.logging import (
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    flush_logging,
    get_active_logging_handle,
    get_correlation_context,
    reset_correlation_fields,
    set_correlation_fields,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from hive_scheduler.observability.metrics import EVENTS_COUNTER, MetricsRegistry

__all__ = [
    "EVENTS_COUNTER",
    "DispatchError",
    "EventBus",
    "EventFilter",
    "LogRedactor",
    "LoggingConfig",
    "MetricsRegistry",
    "StructuredLoggingHandle",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
