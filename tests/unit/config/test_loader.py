"""
hive-scheduler unit tests for the config loader.

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var mapping and type coercion.
- Profile overlays and path normalization relative to the config file.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from hive_scheduler.config.loader import (
    ENV_BINDINGS,
    ConfigLoadError,
    dump_effective_config,
    env_overlay,
    load_config,
)
from hive_scheduler.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(config_path, "[admission]\ndaily_token_cap = 500_000\n")

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env = {"HIVE_ADMISSION_DAILY_TOKEN_CAP": "600000"}
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path,
        environ=env,
        cli_overrides={"admission.daily_token_cap": 700_000},
    )

    assert default_loaded["admission"]["daily_token_cap"] == 1_000_000
    assert file_loaded["admission"]["daily_token_cap"] == 500_000
    assert env_loaded["admission"]["daily_token_cap"] == 600_000
    assert cli_loaded["admission"]["daily_token_cap"] == 700_000


def test_env_coercion_for_each_value_kind(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "HIVE_QUEUE_RETRY_BASE_DELAY_SECONDS": "0.5",
            "HIVE_OBSERVABILITY_REDACT_SECRETS": "off",
            "HIVE_WORKERS_DEFAULT_STRATEGY": "skill-matched",
            "HIVE_EXECUTION_COMMAND": "agent-cli, --json",
        },
    )

    assert loaded["queue"]["retry_base_delay_seconds"] == 0.5
    assert loaded["observability"]["redact_secrets"] is False
    assert loaded["workers"]["default_strategy"] == "skill-matched"
    assert loaded["execution"]["command"] == ["agent-cli", "--json"]


def test_env_coercion_errors_are_actionable(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="HIVE_ADMISSION_MAX_QUEUE_DEPTH"):
        load_config(config_path, environ={"HIVE_ADMISSION_MAX_QUEUE_DEPTH": "many"})
    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(config_path, environ={"HIVE_OBSERVABILITY_REDACT_SECRETS": "maybe"})


def test_profile_overlay_applies_before_env(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    _write_config(config_path, "")

    conservative = load_config(config_path, profile="conservative", environ={})
    assert conservative["admission"]["daily_token_cap"] == 250_000
    assert conservative["admission"]["max_parallel_workers"] == 1

    from_env = load_config(
        config_path,
        environ={"HIVE_PROFILE": "throughput", "HIVE_ADMISSION_MAX_PARALLEL_WORKERS": "4"},
    )
    assert from_env["admission"]["requests_per_minute_cap"] == 60
    assert from_env["admission"]["max_parallel_workers"] == 4

    with pytest.raises(ConfigValidationError, match="not defined"):
        load_config(config_path, profile="nightly", environ={})


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "hive.toml"
    _write_config(
        config_path,
        '[paths]\nstate_db = "data/hive.sqlite"\n[execution]\nworking_dir = "/srv/work"\n',
    )

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["state_db"] == (tmp_path / "conf" / "data" / "hive.sqlite").as_posix()
    assert loaded["execution"]["working_dir"] == "/srv/work"
    assert loaded["observability"]["log_dir"] == (tmp_path / "conf" / "logs").as_posix()


def test_missing_explicit_file_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[admission\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_project_overrides_load_from_file(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    _write_config(
        config_path,
        "[projects.web.admission]\ndaily_token_cap = 1000\nmax_parallel_workers = 1\n",
    )

    loaded = load_config(config_path, environ={})

    assert loaded["projects"] == {
        "web": {"admission": {"daily_token_cap": 1000, "max_parallel_workers": 1}}
    }


def test_dump_effective_config_is_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "hive.toml"
    _write_config(config_path, "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["admission"]["daily_token_cap"] == 1_000_000


def test_env_bindings_follow_typed_sections() -> None:
    assert ENV_BINDINGS["HIVE_CYCLE_AMBIGUITY_KEYWORDS"].key == "ambiguity_keywords"
    assert ENV_BINDINGS["HIVE_WORKERS_LIVENESS_WINDOW_SECONDS"].section == "workers"
    assert not any(name.startswith(("HIVE_PROJECTS", "HIVE_META")) for name in ENV_BINDINGS)

    overlay = env_overlay(
        {"HIVE_CYCLE_AMBIGUITY_KEYWORDS": "tradeoff, unclear", "HIVE_UNRELATED": "x"}
    )

    assert overlay == {"cycle": {"ambiguity_keywords": ["tradeoff", "unclear"]}}
