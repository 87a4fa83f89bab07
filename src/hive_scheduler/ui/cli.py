"""Command-line interface router for hive-scheduler."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from hive_scheduler.config import (
    ConfigLoadError,
    ConfigValidationError,
    assert_valid_config,
    effective_config,
    load_config,
)
from hive_scheduler.control_plane import CoordinationService, WorkflowPhase, WorkflowState
from hive_scheduler.control_plane.coordinator import pending_query_summary
from hive_scheduler.domain.errors import QueryStateError, QueueFullError, StructuralError
from hive_scheduler.domain.models import Priority, TaskType
from hive_scheduler.execution_plane import SubprocessExecutor
from hive_scheduler.observability import (
    EventBus,
    MetricsRegistry,
    configure_structlog,
    setup_logging,
    shutdown_logging,
)
from hive_scheduler.persistence import SQLiteStateStore
from hive_scheduler.ui.render import CLIRenderer, create_renderer

DEFAULT_STATE_DB_PATH: Final[str] = "state/hive.sqlite"
DEFAULT_POLL_SECONDS: Final[float] = 1.0


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class _Runtime:
    config: dict[str, Any]
    store: SQLiteStateStore
    service: CoordinationService
    metrics: MetricsRegistry


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="hive-scheduler",
        description=(
            "hive-scheduler: admission-controlled scheduling of AI work cycles.\n\n"
            "Common workflows:\n"
            "  hive-scheduler submit web 'Add login form'   Enqueue a work item\n"
            "  hive-scheduler run web                       Coordinate until settled\n"
            "  hive-scheduler status web                    Queue, budget and queries\n"
            "  hive-scheduler answer <query-id> 'Use JWT'   Unblock a waiting cycle\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to scheduler TOML config (default: ./hive.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--state-db",
        dest="state_db",
        default=None,
        help="Override paths.state_db for this invocation.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit JSON output.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and profile.\n"
            "Sensitive values are redacted.\n\n"
            "Examples:\n"
            "  hive-scheduler config\n"
            "  hive-scheduler config --profile conservative --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    # submit --------------------------------------------------------------
    submit_parser = subparsers.add_parser(
        "submit",
        parents=[common],
        help="Enqueue a work item for a project",
        description=(
            "Admission-check and enqueue one work item into the state DB.\n\n"
            "Examples:\n"
            "  hive-scheduler submit web 'Add login form' --priority high\n"
            "  hive-scheduler submit web 'Write login tests' --depends-on <id>\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    submit_parser.add_argument("project_id", help="Project identifier")
    submit_parser.add_argument("directive", help="What the worker should do")
    submit_parser.add_argument(
        "--expected-outcome", default="", help="Acceptance description for the item"
    )
    submit_parser.add_argument(
        "--priority",
        default="normal",
        choices=[item.name.lower() for item in Priority],
        help="Scheduling priority (default: normal)",
    )
    submit_parser.add_argument(
        "--task-type",
        default=TaskType.DEVELOPMENT.value,
        choices=[item.value for item in TaskType],
        help="Task type used for worker matching (default: development)",
    )
    submit_parser.add_argument(
        "--depends-on",
        dest="dependencies",
        action="append",
        default=[],
        metavar="WORK_ITEM_ID",
        help="Work item that must complete first (repeatable)",
    )
    submit_parser.add_argument(
        "--tag", dest="tags", action="append", default=[], help="Free-form tag (repeatable)"
    )
    submit_parser.add_argument(
        "--max-retries", type=int, default=None, help="Override queue.default_max_retries"
    )
    submit_parser.set_defaults(handler=_cmd_submit)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show queue stats, budget status and pending queries",
        description=(
            "Summarize one project from the state DB.\n\n"
            "Examples:\n"
            "  hive-scheduler status web\n"
            "  hive-scheduler status web --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("project_id", help="Project identifier")
    status_parser.set_defaults(handler=_cmd_status)

    # answer --------------------------------------------------------------
    answer_parser = subparsers.add_parser(
        "answer",
        parents=[common],
        help="Answer or dismiss a pending query",
        description=(
            "Resolve a query and unblock the cycle waiting on it.\n"
            "The cycle continues on the next 'run'.\n\n"
            "Examples:\n"
            "  hive-scheduler answer <query-id> 'Use session cookies'\n"
            "  hive-scheduler answer <query-id> 'not needed' --dismiss\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    answer_parser.add_argument("query_id", help="Query identifier")
    answer_parser.add_argument("decision", help="Answer text (or dismissal reason)")
    answer_parser.add_argument(
        "--dismiss", action="store_true", default=False, help="Dismiss instead of answering"
    )
    answer_parser.set_defaults(handler=_cmd_answer)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run the coordination loop for a project until it settles",
        description=(
            "Recover the project from the state DB and coordinate until the loop reports\n"
            "completed, idle or blocked. Work executes through execution.command.\n\n"
            "Examples:\n"
            "  hive-scheduler run web\n"
            "  hive-scheduler run web --wait-retries --max-rounds 500\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("project_id", help="Project identifier")
    run_parser.add_argument(
        "--max-rounds", type=int, default=100, help="Coordination passes per settle attempt"
    )
    run_parser.add_argument(
        "--wait-retries",
        action="store_true",
        default=False,
        help="Keep polling while items wait on a retry timer",
    )
    run_parser.add_argument(
        "--poll-seconds",
        type=float,
        default=DEFAULT_POLL_SECONDS,
        help=f"Poll interval for --wait-retries (default: {DEFAULT_POLL_SECONDS:g})",
    )
    run_parser.set_defaults(handler=_cmd_run)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    # Control-plane loggers stay quiet on stdout until `run` installs sinks.
    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


def _cmd_submit(args: argparse.Namespace) -> int:
    project_id = _require_str(getattr(args, "project_id", None), "project_id")
    directive = _require_str(getattr(args, "directive", None), "directive")
    runtime = _open_runtime(args)
    runtime.service.recover(project_id)
    try:
        work_item_id = runtime.service.submit(
            project_id,
            directive,
            str(getattr(args, "expected_outcome", "") or ""),
            priority=str(args.priority),
            task_type=str(args.task_type),
            dependencies=tuple(args.dependencies),
            tags=tuple(args.tags),
            max_retries=args.max_retries,
        )
    except QueueFullError as exc:
        raise CLIError(_refusal_text(exc), exit_code=1) from exc
    except (StructuralError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json(
            {"command": "submit", "project_id": project_id, "work_item_id": work_item_id}
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Submitted", work_item_id)
    renderer.next_steps([f"hive-scheduler run {project_id}"])
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    project_id = _require_str(getattr(args, "project_id", None), "project_id")
    service = _open_runtime(args).service
    service.recover(project_id)
    stats = service.queue(project_id).stats()
    budget = service.budget_status(project_id)
    queries = service.queries.pending(project_id)
    cycles = service.cycles.active_cycles(project_id)

    payload: dict[str, object] = {
        "command": "status",
        "project_id": project_id,
        "queue": stats.to_dict(),
        "budget": budget.to_dict(),
        "pending_queries": pending_query_summary(queries),
        "active_cycles": [
            {
                "cycle_id": cycle.id,
                "work_item_id": cycle.work_item_id,
                "phase": cycle.phase.value,
                "status": cycle.status.value,
                "iteration": cycle.iteration,
            }
            for cycle in cycles
        ],
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Project {project_id}")
    renderer.counts("Queue:", stats.to_dict())
    renderer.counts(
        "Budget:",
        {
            "level": budget.level.value,
            "used_today": f"{budget.used_today}/{budget.daily_cap}",
            "remaining": budget.remaining,
            "requests_this_minute": budget.requests_this_minute,
            "requests_this_hour": budget.requests_this_hour,
            "resets_at": budget.reset_at.isoformat(),
        },
    )
    renderer.table(
        ("cycle", "work item", "phase", "status", "attempt"),
        [
            (
                cycle.id,
                cycle.work_item_id,
                cycle.phase.value,
                cycle.status.value,
                str(cycle.iteration),
            )
            for cycle in cycles
        ],
        title="Active cycles:",
    )
    if queries:
        renderer.section("Pending queries:")
        for query in queries:
            renderer.text(f"  [{query.urgency.value}] {query.id}: {query.question}")
            if query.context and renderer.verbose:
                renderer.text(f"      {query.context}")
        renderer.next_steps([f"hive-scheduler answer {queries[0].id} '<decision>'"])
    if budget.low_budget:
        renderer.warning(f"low budget: {budget.remaining} tokens left today")
    return 0


def _cmd_answer(args: argparse.Namespace) -> int:
    query_id = _require_str(getattr(args, "query_id", None), "query_id")
    decision = str(getattr(args, "decision", "") or "")
    dismiss = _flag(args, "dismiss")
    service = _open_runtime(args).service
    try:
        query = service.apply_resolution(query_id, decision, dismiss=dismiss)
    except QueryStateError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "answer",
                "query_id": query.id,
                "project_id": query.project_id,
                "status": query.status.value,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Query", query.id)
    renderer.kv("Status", query.status.value)
    renderer.next_steps([f"hive-scheduler run {query.project_id}"])
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    project_id = _require_str(getattr(args, "project_id", None), "project_id")
    max_rounds = int(getattr(args, "max_rounds", 100))
    poll_seconds = float(getattr(args, "poll_seconds", DEFAULT_POLL_SECONDS))
    if max_rounds <= 0:
        raise CLIError("--max-rounds must be > 0", exit_code=2)
    if poll_seconds <= 0:
        raise CLIError("--poll-seconds must be > 0", exit_code=2)

    config = _load_effective_config(args)
    if not config["execution"]["command"]:
        raise CLIError(
            "execution.command is empty; set it in hive.toml or HIVE_EXECUTION_COMMAND",
            exit_code=2,
        )
    handle_logger = setup_logging(config["observability"])
    runtime = _open_runtime(args, config=config)
    try:
        state = asyncio.run(
            _run_project(
                runtime.service,
                project_id,
                max_rounds=max_rounds,
                wait_retries=_flag(args, "wait_retries"),
                poll_seconds=poll_seconds,
            )
        )
        stats = runtime.service.queue(project_id).stats()
    finally:
        handle_logger.debug("cli_run_finished")
        shutdown_logging()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "run",
                "state": state.to_dict(),
                "queue": stats.to_dict(),
                "metrics": runtime.metrics.snapshot(),
            }
        )
        return _exit_code_for(state)

    renderer = _get_renderer(args)
    renderer.kv("Project", project_id)
    renderer.kv("Workflow phase", state.phase.value)
    renderer.kv("Token status", state.token_status.value)
    renderer.counts("Queue:", stats.to_dict())
    if state.blocked_work:
        renderer.section("Blocked work:")
        renderer.items(list(state.blocked_work))
    for failure in state.failures:
        suffix = f" ({failure.next_step})" if failure.next_step else ""
        renderer.warning(f"{failure.reason}{suffix}")
    if state.pending_queries:
        renderer.next_steps([f"hive-scheduler status {project_id}"])
    return _exit_code_for(state)


async def _run_project(
    service: CoordinationService,
    project_id: str,
    *,
    max_rounds: int,
    wait_retries: bool,
    poll_seconds: float,
) -> WorkflowState:
    service.recover(project_id)
    state = await service.run_until_settled(project_id, max_rounds)
    queue = service.queue(project_id)
    while wait_retries and state.phase is WorkflowPhase.IDLE and (
        queue.retry_scheduled_count or queue.pending_count
    ):
        await asyncio.sleep(poll_seconds)
        state = await service.run_until_settled(project_id, max_rounds)
    return state


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _open_runtime(args: argparse.Namespace, *, config: dict[str, Any] | None = None) -> _Runtime:
    effective = config if config is not None else _load_effective_config(args)
    state_db = _state_db_path(args, effective)
    store = SQLiteStateStore.open(state_db)
    bus = EventBus()
    metrics = MetricsRegistry()
    metrics.attach(bus)
    execution_cfg = effective["execution"]
    executor = SubprocessExecutor(
        tuple(execution_cfg["command"]),
        working_dir=str(execution_cfg["working_dir"]),
    )
    service = CoordinationService.build(
        effective,  # type: ignore[arg-type]
        store=store,
        executor=executor,
        event_bus=bus,
        metrics=metrics,
    )
    return _Runtime(config=effective, store=store, service=service, metrics=metrics)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        loaded = load_config(config_path, profile=profile)
        validated = assert_valid_config(loaded, active_profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in validated.items()}


def _state_db_path(args: argparse.Namespace, config: Mapping[str, Any]) -> Path:
    override = _optional_str(getattr(args, "state_db", None))
    if override is not None:
        return Path(override).expanduser().resolve()
    raw = config.get("paths", {}).get("state_db") or DEFAULT_STATE_DB_PATH
    return Path(str(raw)).expanduser()


def _exit_code_for(state: WorkflowState) -> int:
    if state.phase is WorkflowPhase.BLOCKED and state.failures:
        return 1
    return 0


def _refusal_text(exc: QueueFullError) -> str:
    decision = exc.decision
    if decision is None or decision.next_step is None:
        return str(exc)
    return f"{decision.reason}; {decision.next_step}"


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"{name} must be a non-empty string", exit_code=2)
    return value.strip()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
