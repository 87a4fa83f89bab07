"""CLI router tests against a temporary hive.toml and state DB."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest

from hive_scheduler.main import ExitCode, cli_entrypoint
from hive_scheduler.ui.cli import build_parser, run_cli

_WORKER = """\
import json
import sys

directive = sys.stdin.read()
print(json.dumps({"output": "done: " + directive.splitlines()[0], "tokens_used": 12}))
"""


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in list(os.environ):
        if key.startswith("HIVE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


def _write_config(
    tmp_path: Path,
    *,
    command: list[str] | None = None,
    admission: dict[str, int] | None = None,
) -> str:
    lines = [
        "[paths]",
        'state_db = "state/hive.sqlite"',
        "",
        "[observability]",
        'log_dir = "logs"',
        'log_format = "json"',
        "",
    ]
    if command is not None:
        lines += ["[execution]", f"command = {json.dumps(command)}", ""]
    if admission:
        lines += ["[admission]", *(f"{key} = {value}" for key, value in admission.items())]
    path = tmp_path / "hive.toml"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_parser_requires_a_command() -> None:
    parser = build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args([])
    assert cli_entrypoint([]) == ExitCode.CONFIG_ERROR


def test_config_command_emits_effective_config(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path, admission={"daily_token_cap": 500_000})

    assert run_cli(["config", "--config", config_path, "--json"]) == 0

    payload = _json_out(capsys)
    assert payload["command"] == "config"
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["admission"]["daily_token_cap"] == 500_000


def test_missing_config_file_is_a_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    missing = str(tmp_path / "missing.toml")

    assert run_cli(["status", "web", "--config", missing]) == 2
    assert "config file not found" in capsys.readouterr().err


def test_submit_then_status_reports_pending_item(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    assert run_cli(["submit", "web", "Add login form", "--config", config_path, "--json"]) == 0
    work_item_id = _json_out(capsys)["work_item_id"]

    assert run_cli(["status", "web", "--config", config_path, "--json"]) == 0
    status = _json_out(capsys)
    assert status["queue"]["pending"] == 1  # type: ignore[index]
    assert status["budget"]["level"] == "active"  # type: ignore[index]
    assert status["pending_queries"] == []
    assert (tmp_path / "state" / "hive.sqlite").exists()
    assert isinstance(work_item_id, str) and work_item_id


def test_submit_text_output_points_to_run(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    assert run_cli(["submit", "web", "Add login form", "--config", config_path]) == 0

    out = capsys.readouterr().out
    assert "Submitted: " in out
    assert "$ hive-scheduler run web" in out


def test_submit_refusal_exits_with_refused(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path, admission={"max_queue_depth": 1})
    assert run_cli(["submit", "web", "first", "--config", config_path]) == 0
    capsys.readouterr()

    assert run_cli(["submit", "web", "second", "--config", config_path]) == 1

    err = capsys.readouterr().err
    assert "Queue is full (1/1)" in err
    assert "increase max_queue_depth" in err


def test_submit_with_unknown_dependency_is_rejected(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    code = run_cli(
        ["submit", "web", "Add tests", "--depends-on", "wi-missing", "--config", config_path]
    )

    assert code == 2
    assert "wi-missing" in capsys.readouterr().err


def test_answer_unknown_query_is_rejected(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    assert run_cli(["answer", "q-missing", "yes", "--config", config_path]) == 2
    assert "not found" in capsys.readouterr().err


def test_run_requires_execution_command(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    assert run_cli(["run", "web", "--config", config_path]) == 2
    assert "execution.command is empty" in capsys.readouterr().err


def test_run_rejects_non_positive_rounds(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)

    assert run_cli(["run", "web", "--max-rounds", "0", "--config", config_path]) == 2


@pytest.mark.slow
def test_run_completes_submitted_work(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    worker = tmp_path / "worker.py"
    worker.write_text(_WORKER, encoding="utf-8")
    config_path = _write_config(tmp_path, command=[sys.executable, str(worker)])
    assert run_cli(["submit", "web", "Add login form", "--config", config_path]) == 0
    capsys.readouterr()

    assert run_cli(["run", "web", "--config", config_path, "--json"]) == 0

    payload = _json_out(capsys)
    state = payload["state"]
    assert isinstance(state, dict)
    assert state["phase"] == "completed"
    assert payload["queue"]["completed"] == 1  # type: ignore[index]
    assert (tmp_path / "logs" / "hive-scheduler.jsonl").exists()
