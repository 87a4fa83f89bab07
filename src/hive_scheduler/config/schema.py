"""
hive-scheduler configuration schema.

A config is a mapping of sections (``admission``, ``queue``, ``workers``...)
plus two free-form maps: ``projects`` (per-project admission overrides) and
``profiles`` (named overlays such as ``conservative``). Each section's fields
are described once in ``SECTION_RULES``; validation walks those rules and
collects every problem with its dotted path instead of stopping at the first.

Secret values never belong in ``hive.toml``. A key that looks like one is
reported as an error and masked by ``redact_config``.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal, TypedDict

from hive_scheduler.constants import (
    COMPLETED_HISTORY_SIZE,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_AMBIGUITY_KEYWORDS,
    MAX_PHASE_ITERATIONS,
    WORKER_LIVENESS_WINDOW_SECONDS,
    WORKER_SWEEP_INTERVAL_SECONDS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("conservative", "throughput", "development")

ADMISSION_LIMIT_KEYS: Final[tuple[str, ...]] = (
    "daily_token_cap",
    "per_request_token_cap",
    "requests_per_minute_cap",
    "requests_per_hour_cap",
    "max_queue_depth",
    "max_parallel_workers",
)

# Resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("execution", "working_dir"),
    ("observability", "log_dir"),
)

REDACTED: Final[str] = "<redacted>"


class MetaConfig(TypedDict):
    schema_version: int


class AdmissionConfig(TypedDict):
    daily_token_cap: int
    per_request_token_cap: int
    requests_per_minute_cap: int
    requests_per_hour_cap: int
    max_queue_depth: int
    max_parallel_workers: int


class QueueConfig(TypedDict):
    max_size: int
    max_concurrent: int
    default_max_retries: int
    retry_base_delay_seconds: float
    completed_history: int


class WorkersConfig(TypedDict):
    liveness_window_seconds: float
    sweep_interval_seconds: float
    default_strategy: str


class ExecutionConfig(TypedDict):
    default_timeout_seconds: float
    initialization_timeout_seconds: float
    command: list[str]
    working_dir: str


class CycleConfig(TypedDict):
    max_phase_iterations: int
    estimated_tokens_per_phase: int
    ambiguity_keywords: list[str]


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    log_dir: str
    redact_secrets: bool


class ProjectOverrides(TypedDict, total=False):
    admission: dict[str, int]


class ProfileOverlay(TypedDict, total=False):
    admission: dict[str, object]
    queue: dict[str, object]
    workers: dict[str, object]
    execution: dict[str, object]
    cycle: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class SchedulerConfig(TypedDict):
    meta: MetaConfig
    admission: AdmissionConfig
    queue: QueueConfig
    workers: WorkersConfig
    execution: ExecutionConfig
    cycle: CycleConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    projects: dict[str, ProjectOverrides]
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[SchedulerConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "admission": {
        "daily_token_cap": 1_000_000,
        "per_request_token_cap": 50_000,
        "requests_per_minute_cap": 20,
        "requests_per_hour_cap": 100,
        "max_queue_depth": 10,
        "max_parallel_workers": 3,
    },
    "queue": {
        "max_size": 1000,
        "max_concurrent": 3,
        "default_max_retries": 3,
        "retry_base_delay_seconds": 5.0,
        "completed_history": COMPLETED_HISTORY_SIZE,
    },
    "workers": {
        "liveness_window_seconds": WORKER_LIVENESS_WINDOW_SECONDS,
        "sweep_interval_seconds": WORKER_SWEEP_INTERVAL_SECONDS,
        "default_strategy": "load-balanced",
    },
    "execution": {
        "default_timeout_seconds": 300.0,
        "initialization_timeout_seconds": 900.0,
        "command": [],
        "working_dir": ".",
    },
    "cycle": {
        "max_phase_iterations": MAX_PHASE_ITERATIONS,
        "estimated_tokens_per_phase": 2000,
        "ambiguity_keywords": list(DEFAULT_AMBIGUITY_KEYWORDS),
    },
    "paths": {"state_db": "state/hive.sqlite"},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "redact_secrets": True,
    },
    "projects": {},
    "profiles": {
        "conservative": {
            "admission": {
                "daily_token_cap": 250_000,
                "requests_per_minute_cap": 5,
                "max_parallel_workers": 1,
            },
        },
        "throughput": {
            "admission": {"requests_per_minute_cap": 60, "max_parallel_workers": 6},
            "queue": {"max_concurrent": 6},
        },
        "development": {
            "observability": {"log_level": "DEBUG", "log_format": "text"},
            "execution": {"default_timeout_seconds": 60.0},
        },
    },
}


# -- issues ----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized mapping, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path, message))


def _at(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


# -- field rules -----------------------------------------------------------

FieldKind = Literal["int", "float", "bool", "text", "path", "text_list", "choice"]


@dataclass(frozen=True, slots=True)
class FieldRule:
    """How one config value is checked and normalized."""

    kind: FieldKind
    minimum: float | None = None
    choices: tuple[str, ...] = ()
    pattern: str | None = None
    lowercase: bool = False
    _compiled: re.Pattern[str] | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.pattern is not None:
            object.__setattr__(self, "_compiled", re.compile(self.pattern))

    def check(self, value: object, path: str, issues: _Issues) -> object | None:
        kind = self.kind
        if kind == "bool":
            if isinstance(value, bool):
                return value
            issues.add(path, f"expected boolean, got {type(value).__name__}")
            return None
        if kind in ("int", "float"):
            return self._number(value, path, issues)
        if kind == "text_list":
            if not isinstance(value, (list, tuple)):
                issues.add(path, f"expected array, got {type(value).__name__}")
                return None
            items = []
            for index, item in enumerate(value):
                text = _text(item, f"{path}[{index}]", issues)
                if text is None:
                    return None
                items.append(text.lower() if self.lowercase else text)
            return items

        text = _text(value, path, issues)
        if text is None:
            return None
        if kind == "path" and "\x00" in text:
            issues.add(path, "must not contain NUL bytes")
            return None
        if kind == "choice" and text not in self.choices:
            expected = ", ".join(sorted(self.choices))
            issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
            return None
        if self._compiled is not None and not self._compiled.fullmatch(text):
            issues.add(path, f"must match {self.pattern}")
            return None
        return text

    def _number(self, value: object, path: str, issues: _Issues) -> int | float | None:
        integral = self.kind == "int"
        accepted = (int,) if integral else (int, float)
        if isinstance(value, bool) or not isinstance(value, accepted):
            noun = "integer" if integral else "number"
            issues.add(path, f"expected {noun}, got {type(value).__name__}")
            return None
        number: int | float = value if integral else float(value)
        if not math.isfinite(number):
            issues.add(path, "must be finite")
            return None
        if self.minimum is not None and number < self.minimum:
            bound = int(self.minimum) if integral else self.minimum
            issues.add(path, f"must be >= {bound}")
            return None
        return number


def _text(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    stripped = value.strip()
    if not stripped:
        issues.add(path, "must not be empty")
        return None
    return stripped


_COUNT = FieldRule("int", minimum=1)
_SECONDS = FieldRule("float", minimum=0.001)

# Section order is also the order issues are reported in.
SECTION_RULES: Final[dict[str, dict[str, FieldRule]]] = {
    "meta": {"schema_version": _COUNT},
    "admission": {key: _COUNT for key in ADMISSION_LIMIT_KEYS},
    "queue": {
        "max_size": _COUNT,
        "max_concurrent": _COUNT,
        "default_max_retries": FieldRule("int", minimum=0),
        "retry_base_delay_seconds": FieldRule("float", minimum=0.0),
        "completed_history": _COUNT,
    },
    "workers": {
        "liveness_window_seconds": _SECONDS,
        "sweep_interval_seconds": _SECONDS,
        "default_strategy": FieldRule("text", pattern=r"[a-z][a-z0-9-]*"),
    },
    "execution": {
        "default_timeout_seconds": _SECONDS,
        "initialization_timeout_seconds": _SECONDS,
        "command": FieldRule("text_list"),
        "working_dir": FieldRule("path"),
    },
    "cycle": {
        "max_phase_iterations": _COUNT,
        "estimated_tokens_per_phase": _COUNT,
        "ambiguity_keywords": FieldRule("text_list", lowercase=True),
    },
    "paths": {"state_db": FieldRule("path")},
    "observability": {
        "log_level": FieldRule("choice", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_format": FieldRule("choice", choices=("json", "text")),
        "log_dir": FieldRule("path"),
        "redact_secrets": FieldRule("bool"),
    },
}

OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(name for name in SECTION_RULES if name != "meta")

_PROJECT_ID = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")


def _check_meta(section: dict[str, Any], path: str, issues: _Issues) -> None:
    version = section.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.add(_at(path, "schema_version"), migration_guidance(version))


def _check_admission(section: dict[str, Any], path: str, issues: _Issues) -> None:
    per_request, daily = section.get("per_request_token_cap"), section.get("daily_token_cap")
    if per_request is not None and daily is not None and per_request > daily:
        issues.add(_at(path, "per_request_token_cap"), "must be <= daily_token_cap")


_SECTION_CHECKS: Final[dict[str, Callable[[dict[str, Any], str, _Issues], None]]] = {
    "meta": _check_meta,
    "admission": _check_admission,
}


# -- secret-looking keys ---------------------------------------------------

# Whole-segment matches. Bare "token" is absent: token caps are limits, not secrets.
_SECRET_SEGMENTS: Final[frozenset[str]] = frozenset(
    {"secret", "password", "passwd", "apikey", "credential", "credentials", "private"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "auth_token",
    "client_secret",
    "private_key",
)


def looks_secret(key: str) -> bool:
    """True for keys like ``apiKey`` or ``db_password``; ``*_env`` names are exempt."""

    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip()).lower()
    snake = re.sub(r"[^a-z0-9]+", "_", snake).strip("_")
    if snake.endswith("_env"):
        return False
    if any(phrase in snake for phrase in _SECRET_PHRASES):
        return True
    return not _SECRET_SEGMENTS.isdisjoint(snake.split("_"))


# -- validation ------------------------------------------------------------


def _object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            out[key] = item
        else:
            issues.add(path, f"object key must be string, got {type(key).__name__}")
    return out


def _check_keys(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    *,
    allowed: Sequence[str],
    required: Sequence[str] = (),
) -> None:
    for key in sorted(set(payload) - set(allowed)):
        if looks_secret(key):
            issues.add(
                _at(path, key),
                "embedded secret values are forbidden; pass them through the environment",
            )
        else:
            issues.add(_at(path, key), "unknown field")
    for key in sorted(set(required) - set(payload)):
        issues.add(_at(path, key), "missing required field")


def _section(
    name: str, raw: object, path: str, issues: _Issues, *, partial: bool
) -> dict[str, Any] | None:
    payload = _object(raw, path, issues)
    if payload is None:
        return None
    rules = SECTION_RULES[name]
    required = () if partial else tuple(rules)
    _check_keys(payload, path, issues, allowed=tuple(rules), required=required)
    out: dict[str, Any] = {}
    for key, rule in rules.items():
        if key in payload:
            value = rule.check(payload[key], _at(path, key), issues)
            if value is not None:
                out[key] = value
    check = _SECTION_CHECKS.get(name)
    if check is not None:
        check(out, path, issues)
    return out


def _sections(
    payload: Mapping[str, object],
    names: Sequence[str],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in names:
        if payload.get(name) is not None:
            section = _section(name, payload[name], _at(path, name), issues, partial=partial)
            if section is not None:
                out[name] = section
    return out


def _named_entries(
    raw: object,
    path: str,
    issues: _Issues,
    *,
    name_pattern: re.Pattern[str],
    label: str,
    sections: Sequence[str],
) -> dict[str, Any] | None:
    entries = _object(raw, path, issues)
    if entries is None:
        return None
    out: dict[str, Any] = {}
    for name in sorted(entries):
        entry_path = _at(path, name)
        if not name_pattern.fullmatch(name):
            issues.add(entry_path, f"{label} must match ^{name_pattern.pattern}$")
            continue
        entry = _object(entries[name], entry_path, issues)
        if entry is None:
            continue
        _check_keys(entry, entry_path, issues, allowed=sections)
        out[name] = _sections(entry, sorted(sections), entry_path, issues, partial=True)
    return out


def _validate_root(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(
        payload,
        "",
        issues,
        allowed=(*SECTION_RULES, "projects", "profiles"),
        required=tuple(SECTION_RULES),
    )
    out = _sections(payload, tuple(SECTION_RULES), "", issues, partial=False)
    if payload.get("projects") is not None:
        projects = _named_entries(
            payload["projects"],
            "projects",
            issues,
            name_pattern=_PROJECT_ID,
            label="project id",
            sections=("admission",),
        )
        if projects is not None:
            out["projects"] = projects
    if payload.get("profiles") is not None:
        profiles = _named_entries(
            payload["profiles"],
            "profiles",
            issues,
            name_pattern=_PROFILE_NAME,
            label="profile name",
            sections=OVERLAY_SECTIONS,
        )
        if profiles is not None:
            out["profiles"] = profiles

    depth = out.get("admission", {}).get("max_queue_depth")
    capacity = out.get("queue", {}).get("max_size")
    if isinstance(depth, int) and isinstance(capacity, int) and depth > capacity:
        issues.add("admission.max_queue_depth", "must be <= queue.max_size")
    return out


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check ``config`` (and, if given, ``config`` with ``active_profile`` applied)."""

    issues = _Issues()
    root = _object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(None, tuple(issues))

    normalized = _validate_root(root, issues)
    profile = active_profile.strip() if isinstance(active_profile, str) else ""
    if profile:
        overlay = normalized.get("profiles", {}).get(profile)
        if overlay is None:
            issues.add("profiles", f"profile {profile!r} is not defined")
        else:
            _validate_root(merge_config(normalized, overlay), issues)

    if issues:
        return ConfigValidationResult(None, tuple(issues))
    return ConfigValidationResult(normalized, ())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade hive.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the hive-scheduler runtime"
        )
    return "schema version is current"


# -- merging and views -----------------------------------------------------


def default_config() -> SchedulerConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def _plain(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(value[key]) for key in sorted(value) if isinstance(key, str)}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_plain(item) for item in value)
    return copy.deepcopy(value)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""

    merged: dict[str, Any] = _plain(base)
    for key in sorted(overlay):
        value, current = overlay[key], merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _plain(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile onto ``config`` and validate the result."""

    name = (profile or "").strip()
    if not name:
        return _plain(config)
    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", "profiles section is required")]
        )
    overlay = profiles.get(name)
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def project_admission_overrides(config: Mapping[str, object]) -> dict[str, dict[str, int]]:
    """``{project_id: {limit: value}}`` for every project that overrides admission."""

    projects = config.get("projects")
    if not isinstance(projects, Mapping):
        return {}
    overrides: dict[str, dict[str, int]] = {}
    for project_id in sorted(projects):
        entry = projects[project_id]
        admission = entry.get("admission") if isinstance(entry, Mapping) else None
        if isinstance(admission, Mapping) and admission:
            overrides[project_id] = {str(key): int(value) for key, value in admission.items()}
    return overrides


def _masked(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if looks_secret(key) else _masked(value[key]) for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_masked(item) for item in value]
    return value


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys replaced by ``<redacted>``."""

    if not isinstance(config, Mapping):
        return {}
    masked = _masked(config)
    return masked if isinstance(masked, dict) else {}


dump_redacted = redact_config


__all__ = [
    "ADMISSION_LIMIT_KEYS",
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FieldRule",
    "OVERLAY_SECTIONS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "REDACTED",
    "SECTION_RULES",
    "SchedulerConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "looks_secret",
    "merge_config",
    "migration_guidance",
    "project_admission_overrides",
    "redact_config",
    "validate_config",
]
