"""UI package exports for the CLI router and plain-text rendering."""

from hive_scheduler.ui.cli import CLIError, build_parser, run_cli
from hive_scheduler.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
