"""
Execution callback boundary.

Purpose
- Runs one phase directive on an external worker and reports tokens spent.

What should be included in this file
- ``ExecutionRequest`` / ``ExecutionResult`` contracts.
- ``Executor`` protocol used by the cycle state machine.
- ``SubprocessExecutor`` that pipes the directive to a configured command.

Functional requirements
- Timeouts and cancellation kill the child process and wait for it before
  returning, so no orphaned worker keeps spending tokens.
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from hive_scheduler.domain.errors import ExecutionFailedError, ExecutionTimeoutError
from hive_scheduler.utils.concurrency import CancellationToken

_MAX_OUTPUT_CHARS = 16_384
_CHARS_PER_TOKEN = 4


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    project_id: str
    work_item_id: str
    directive: str
    timeout_seconds: float
    cycle_id: str | None = None
    phase: str | None = None
    expected_outcome: str = ""
    cancel_token: CancellationToken | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.directive.strip():
            raise ValueError("ExecutionRequest.directive must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("ExecutionRequest.timeout_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    success: bool
    output: str = ""
    tokens_used: int = 0
    error: str | None = None
    input_tokens: int | None = None
    duration_ms: int = 0
    exit_code: int | None = None


@runtime_checkable
class Executor(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


class SubprocessExecutor:
    """Run ``command`` once per request with the directive on stdin.

    The command may print a JSON object ``{"output", "tokens_used", "error"}``
    (optionally ``input_tokens``). Any other stdout is taken as raw output and
    tokens are estimated from the characters exchanged.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        working_dir: str | None = None,
        env: Mapping[str, str] | None = None,
        max_output_chars: int = _MAX_OUTPUT_CHARS,
        logger: Any | None = None,
    ) -> None:
        self._command = tuple(command)
        self._working_dir = working_dir
        self._env = dict(env) if env is not None else None
        self._max_output_chars = max_output_chars
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        if not self._command:
            raise ExecutionFailedError("no execution command configured (execution.command)")

        token = request.cancel_token
        if token is not None and token.is_cancelled:
            raise asyncio.CancelledError(token.reason or "execution cancelled")

        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                cwd=self._working_dir,
                env=self._build_env(request),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutionFailedError(f"could not start {self._command[0]!r}: {exc}") from exc

        unregister = (
            token.on_cancel(lambda: _kill(process)) if token is not None else (lambda: None)
        )
        self._logger.info(
            "execution_started",
            project_id=request.project_id,
            work_item_id=request.work_item_id,
            cycle_id=request.cycle_id,
            phase=request.phase,
            pid=process.pid,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(request.directive.encode("utf-8")),
                timeout=request.timeout_seconds,
            )
        except TimeoutError as exc:
            _kill(process)
            await process.wait()
            self._logger.warning(
                "execution_timed_out",
                project_id=request.project_id,
                work_item_id=request.work_item_id,
                timeout_seconds=request.timeout_seconds,
            )
            raise ExecutionTimeoutError(request.timeout_seconds) from exc
        except asyncio.CancelledError:
            _kill(process)
            await process.wait()
            raise
        finally:
            unregister()

        if token is not None and token.is_cancelled:
            raise asyncio.CancelledError(token.reason or "execution cancelled")

        result = self._parse(
            request,
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
            exit_code=process.returncode,
            duration_ms=(time.monotonic_ns() - started_ns) // 1_000_000,
        )
        self._logger.info(
            "execution_finished",
            project_id=request.project_id,
            work_item_id=request.work_item_id,
            success=result.success,
            exit_code=result.exit_code,
            tokens_used=result.tokens_used,
            duration_ms=result.duration_ms,
        )
        return result

    def _build_env(self, request: ExecutionRequest) -> dict[str, str]:
        env = dict(os.environ if self._env is None else self._env)
        env["HIVE_PROJECT_ID"] = request.project_id
        env["HIVE_WORK_ITEM_ID"] = request.work_item_id
        if request.cycle_id is not None:
            env["HIVE_CYCLE_ID"] = request.cycle_id
        if request.phase is not None:
            env["HIVE_PHASE"] = request.phase
        return env

    def _parse(
        self,
        request: ExecutionRequest,
        *,
        stdout: str,
        stderr: str,
        exit_code: int | None,
        duration_ms: int,
    ) -> ExecutionResult:
        structured = _structured_output(stdout)
        if structured is not None:
            output = str(structured.get("output") or "")
            error_raw = structured.get("error")
            error = str(error_raw) if error_raw else None
            tokens = _as_token_count(structured.get("tokens_used"))
            input_tokens = _as_token_count(structured.get("input_tokens"))
            if tokens is None:
                tokens = _estimate_tokens(request.directive, output)
        else:
            output = stdout
            error = None
            tokens = _estimate_tokens(request.directive, stdout)
            input_tokens = _estimate_tokens(request.directive, "")

        if exit_code != 0 and error is None:
            error = stderr.strip() or f"worker exited with status {exit_code}"
        return ExecutionResult(
            success=exit_code == 0 and error is None,
            output=_truncate(output, self._max_output_chars),
            tokens_used=tokens,
            error=error,
            input_tokens=input_tokens,
            duration_ms=duration_ms,
            exit_code=exit_code,
        )


def _structured_output(stdout: str) -> dict[str, object] | None:
    text = stdout.strip()
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not ({"output", "tokens_used", "error"} & set(parsed)):
        return None
    return parsed


def _as_token_count(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


def _estimate_tokens(directive: str, output: str) -> int:
    return math.ceil((len(directive) + len(output)) / _CHARS_PER_TOKEN)


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()


def _decode(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "Executor",
    "SubprocessExecutor",
]
