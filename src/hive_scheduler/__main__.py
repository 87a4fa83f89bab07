"""Module entrypoint for ``python -m hive_scheduler``."""

from __future__ import annotations

from hive_scheduler.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
