"""
hive-scheduler runtime config loader.

Layering, lowest to highest: built-in defaults, ``hive.toml``, the selected
profile, ``HIVE_*`` environment variables, CLI overrides. The file layer is
validated on its own first, so a bad ``hive.toml`` is reported before any
override is applied.

Environment variables are derived from the typed config sections: the key
``admission.daily_token_cap`` is read from ``HIVE_ADMISSION_DAILY_TOKEN_CAP``
and coerced to the type the section declares. List values are comma separated.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, get_type_hints

from hive_scheduler.config.schema import (
    PATH_FIELDS,
    SchedulerConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "hive.toml"
ENV_PREFIX: Final[str] = "HIVE_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})

# Free-form sections keyed by project or profile name have no env binding.
_SECTIONS_WITHOUT_ENV: Final[frozenset[str]] = frozenset({"meta", "projects", "profiles"})


class ConfigLoadError(ValueError):
    """Raised when a config source cannot be read or an override cannot be coerced."""


@dataclass(frozen=True, slots=True)
class EnvBinding:
    """One ``HIVE_*`` variable and the config key it overrides."""

    env_name: str
    section: str
    key: str
    parse: Callable[[str], object]
    expected: str

    def apply(self, raw: str, overlay: dict[str, Any]) -> None:
        try:
            value = self.parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(
                f"{self.env_name} -> {self.section}.{self.key} must be {self.expected}"
            ) from exc
        overlay.setdefault(self.section, {})[self.key] = value


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


def _parse_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


_PARSERS: Final[dict[object, tuple[Callable[[str], object], str]]] = {
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "an integer"),
    float: (float, "a number"),
    str: (str, "a string"),
    list[str]: (_parse_list, "a comma separated list"),
}


def _build_env_bindings() -> dict[str, EnvBinding]:
    bindings: dict[str, EnvBinding] = {}
    for section, section_type in get_type_hints(SchedulerConfig).items():
        if section in _SECTIONS_WITHOUT_ENV:
            continue
        for key, value_type in get_type_hints(section_type).items():
            parse, expected = _PARSERS[value_type]
            env_name = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
            bindings[env_name] = EnvBinding(env_name, section, key, parse, expected)
    return bindings


ENV_BINDINGS: Final[Mapping[str, EnvBinding]] = _build_env_bindings()


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective scheduler config.

    ``config_path`` defaults to ``./hive.toml``, which may be absent; an explicit
    path must exist. ``cli_overrides`` takes dotted keys such as
    ``"admission.daily_token_cap"`` plus an optional ``"profile"`` entry.
    """

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    path = (
        (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
        if config_path is None
        else Path(config_path).expanduser().resolve()
    )

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(path, required=config_path is not None))
    )
    selected = _select_profile(profile, overrides, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)

    config = merge_config(config, env_overlay(env))
    config = merge_config(config, _cli_overlay(overrides))
    config = assert_valid_config(config, active_profile=selected)
    return assert_valid_config(
        normalize_paths(config, base_dir=path.parent), active_profile=selected
    )


def load_config_file(path: str | Path) -> dict[str, Any]:
    return load_config(path)


def env_overlay(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect the config overlay described by ``HIVE_*`` variables in ``environ``."""

    overlay: dict[str, Any] = {}
    for env_name in sorted(ENV_BINDINGS):
        raw = environ.get(env_name)
        if raw is not None:
            ENV_BINDINGS[env_name].apply(raw, overlay)
    return overlay


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields (including inside profiles) against ``base_dir``."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        _resolve_path_in(normalized.get(section), key, base_dir)
    profiles = normalized.get("profiles")
    if isinstance(profiles, dict):
        for overlay in profiles.values():
            if isinstance(overlay, dict):
                for section, key in PATH_FIELDS:
                    _resolve_path_in(overlay.get(section), key, base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` suitable for printing or logging."""

    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    return json.dumps(
        effective_config(config),
        sort_keys=True,
        indent=indent,
        separators=(",", ":") if indent is None else (",", ": "),
        ensure_ascii=False,
    )


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = cli_overrides.get("profile")
        if candidate is not None and not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    if candidate is None:
        candidate = environ.get(PROFILE_ENV_VAR)
    if candidate is None:
        return None
    return str(candidate).strip() or None


def _cli_overlay(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    overlay: dict[str, Any] = {}
    for dotted in sorted(cli_overrides):
        if dotted == "profile":
            continue
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        value = cli_overrides[dotted]
        if len(parts) == 1 and isinstance(value, Mapping):
            overlay = merge_config(overlay, {parts[0]: value})
            continue
        cursor = overlay
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
            if not isinstance(cursor, dict):
                raise ConfigLoadError(f"CLI override {dotted!r} conflicts with another override")
        cursor[parts[-1]] = value
    return overlay


def _resolve_path_in(section: object, key: str, base_dir: Path) -> None:
    if not isinstance(section, dict):
        return
    raw = section.get(key)
    if not isinstance(raw, str):
        return
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    section[key] = Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_BINDINGS",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "ConfigLoadError",
    "EnvBinding",
    "dump_effective_config",
    "effective_config",
    "env_overlay",
    "load_config",
    "load_config_file",
    "normalize_paths",
]
