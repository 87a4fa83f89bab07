"""Plain-text output for the hive-scheduler CLI.

Handlers describe *what* to show (a heading, a count block, a table of
workers) and the renderer decides how it looks. ANSI bold is the only styling
and it is used only on an interactive terminal without ``NO_COLOR`` or
``--no-color``.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

_BOLD = "\033[1m{}\033[0m"
_INDENT = "  "
_GUTTER = "  "


def color_enabled(stream: TextIO, *, no_color: bool = False) -> bool:
    if no_color or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class CLIRenderer:
    """Writes human-readable command output to ``stream`` (stdout by default)."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream
        self._no_color = no_color

    @property
    def stream(self) -> TextIO:
        # Looked up per write so a swapped sys.stdout is honoured.
        return self._stream if self._stream is not None else sys.stdout

    def _line(self, text: str = "", *, depth: int = 0) -> None:
        self.stream.write(f"{_INDENT * depth}{text}\n")

    def heading(self, text: str) -> None:
        styled = color_enabled(self.stream, no_color=self._no_color)
        self._line(_BOLD.format(text) if styled else text)

    def kv(self, key: str, value: object) -> None:
        self._line(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._line(line)

    def section(self, title: str) -> None:
        self._line()
        self._line(title)

    def warning(self, text: str) -> None:
        self._line(f"Warning: {text}", depth=1)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._line(f"{prefix}{entry}", depth=1)

    def counts(self, title: str, values: Mapping[str, object]) -> None:
        """Section of ``key  value`` lines with keys padded to one width."""

        self.section(title)
        if not values:
            self._line("(none)", depth=1)
            return
        width = max(map(len, values))
        for key, value in values.items():
            self._line(f"{key:<{width}}{_GUTTER}{value}", depth=1)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Column-aligned table; nothing is printed for an empty ``rows``."""

        if not rows:
            return
        grid = [
            [str(row[column]) if column < len(row) else "" for column in range(len(headers))]
            for row in rows
        ]
        widths = [
            max(len(header), *(len(cells[column]) for cells in grid))
            for column, header in enumerate(headers)
        ]

        def render(cells: Sequence[str]) -> str:
            return _GUTTER.join(
                cell.ljust(width) for cell, width in zip(cells, widths, strict=True)
            ).rstrip()

        if title:
            self.section(title)
        self._line(render(list(headers)), depth=1)
        self._line(_GUTTER.join("-" * width for width in widths), depth=1)
        for cells in grid:
            self._line(render(cells), depth=1)

    def next_steps(self, steps: Sequence[str]) -> None:
        if steps:
            self.section("Next steps:")
            for step in steps:
                self._line(f"$ {step}", depth=1)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "color_enabled", "create_renderer"]
