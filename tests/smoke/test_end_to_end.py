"""
hive-scheduler end-to-end smoke test.

Drives the installed entrypoint through submit, run, answer and a restarted run
against one SQLite state DB, with a subprocess worker that needs one human
decision before it can finish the first item.
"""

from __future__ import annotations

import json
import os
import sqlite3
import sys
from pathlib import Path

import pytest

from hive_scheduler.main import ExitCode, cli_entrypoint

_WORKER = """\
import json
import os
import sys

directive = sys.stdin.read()
phase = os.environ.get("HIVE_PHASE", "")
if phase == "define" and "database" in directive and "Human decision" not in directive:
    print(json.dumps({"error": "unclear which database engine to use", "tokens_used": 5}))
    sys.exit(0)
print(json.dumps({"output": f"{phase} done", "tokens_used": 40, "input_tokens": 25}))
"""


def _call(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict[str, object]]:
    code = cli_entrypoint([*argv, "--json"])
    lines = capsys.readouterr().out.strip().splitlines()
    return code, json.loads(lines[-1]) if lines else {}


@pytest.mark.slow
def test_end_to_end_query_round_trip_and_restart(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    for key in list(os.environ):
        if key.startswith("HIVE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    worker = tmp_path / "worker.py"
    worker.write_text(_WORKER, encoding="utf-8")
    config = tmp_path / "hive.toml"
    config.write_text(
        "\n".join(
            [
                "[paths]",
                'state_db = "state/hive.sqlite"',
                "[observability]",
                'log_dir = "logs"',
                "[execution]",
                f"command = {json.dumps([sys.executable, str(worker)])}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    common = ("--config", str(config))

    code, first = _call(capsys, "submit", "web", "Add the database layer", *common)
    assert code == ExitCode.SUCCESS
    code, second = _call(
        capsys,
        "submit",
        "web",
        "Add login form",
        "--depends-on",
        str(first["work_item_id"]),
        "--priority",
        "high",
        *common,
    )
    assert code == ExitCode.SUCCESS

    code, blocked = _call(capsys, "run", "web", *common)
    assert code == ExitCode.SUCCESS
    state = blocked["state"]
    assert isinstance(state, dict)
    assert state["phase"] == "blocked"
    assert len(state["pending_queries"]) == 1

    code, status = _call(capsys, "status", "web", *common)
    assert code == ExitCode.SUCCESS
    (query,) = status["pending_queries"]  # type: ignore[misc]
    assert str(query["question"]).startswith("Design decision needed for")
    assert status["queue"]["total"] == 2  # type: ignore[index]

    code, answered = _call(capsys, "answer", query["query_id"], "Use Postgres", *common)
    assert code == ExitCode.SUCCESS
    assert answered["status"] == "answered"

    code, finished = _call(capsys, "run", "web", *common)
    assert code == ExitCode.SUCCESS
    state = finished["state"]
    assert isinstance(state, dict)
    assert state["phase"] == "completed"
    assert finished["queue"]["completed"] == 2  # type: ignore[index]

    with sqlite3.connect(tmp_path / "state" / "hive.sqlite") as conn:
        items = dict(conn.execute("SELECT id, status FROM work_items").fetchall())
        cycles = conn.execute("SELECT status FROM cycles").fetchall()
        usage = conn.execute("SELECT SUM(input_tokens + output_tokens) FROM usage_events")
        total_tokens = usage.fetchone()[0]
    assert items == {first["work_item_id"]: "completed", second["work_item_id"]: "completed"}
    assert sorted(row[0] for row in cycles) == ["completed", "completed"]
    assert total_tokens == 10 * 40 + 5
