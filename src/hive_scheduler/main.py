"""Process entrypoint: runs the CLI and turns every outcome into an exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    REFUSED = 1
    CONFIG_ERROR = 2
    EXECUTION_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run ``hive-scheduler`` with ``argv`` and return the process exit code.

    Exceptions escaping a command are mapped to an :class:`ExitCode` by walking
    their cause chain; only unexpected ones print a traceback.
    """

    try:
        from hive_scheduler.ui.cli import run_cli

        return _coerce(run_cli(argv))
    except SystemExit as exc:
        return _coerce(exc.code)
    except BaseException as exc:  # noqa: BLE001 - process boundary
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            _stderr(str(exc).strip() or type(exc).__name__)
        return int(code)


def classify_exception(exc: BaseException) -> ExitCode:
    from hive_scheduler.config import ConfigLoadError, ConfigValidationError
    from hive_scheduler.domain.errors import ExecutionError, QueueFullError, StructuralError
    from hive_scheduler.persistence import StateDBError

    # First match wins, checked against each link of the chain in turn.
    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((QueueFullError,), ExitCode.REFUSED),
        (
            (
                ConfigLoadError,
                ConfigValidationError,
                StructuralError,
                FileNotFoundError,
                NotADirectoryError,
                PermissionError,
            ),
            ExitCode.CONFIG_ERROR,
        ),
        ((ExecutionError, StateDBError), ExitCode.EXECUTION_ERROR),
    )
    for link in _causes(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


def _coerce(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in ExitCode._value2member_map_:
        return raw
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
