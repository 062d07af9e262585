"""
relais — configuration schema and validation.

File: src/relais/config/schema.py
Last updated: 2026-10-18

Purpose
- Define authoritative configuration defaults and strict validation rules for
  the fields the tick engine consumes.

What should be included in this file
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction for logging the effective config.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Unknown keys are rejected so typos never silently fall back to defaults.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

ConfigSchemaVersion: Final[int] = 1

_TEMPLATE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_.-]*$")
_PARAM_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")
_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_PRECEDENCE_VALUES: Final[tuple[str, ...]] = ("forbidden", "allowed")
_BUDGET_CAP_KEYS: Final[tuple[str, ...]] = (
    "max_ticks",
    "max_orchestrator_calls",
    "max_builder_calls",
    "max_verify_runs",
)

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("runner", "workspace_dir"),
    ("goal", "file"),
    ("history", "dir"),
    ("observability", "log_dir"),
)


class RunnerConfig(TypedDict):
    workspace_dir: str
    lockfile: str
    max_tick_seconds: int
    git_timeout_seconds: int
    runner_owned_globs: list[str]
    commit_on_success: bool


class VerificationTemplate(TypedDict):
    id: str
    cmd: str
    args: list[str]
    params: list[str]


class BudgetCaps(TypedDict):
    max_ticks: int
    max_orchestrator_calls: int
    max_builder_calls: int
    max_verify_runs: int


class AgentConfig(TypedDict):
    command: list[str]
    timeout_seconds: int
    max_turns: int


class ReviewerTriggerConfig(TypedDict):
    on_verify_fail: bool
    on_repeated_stop: bool
    stop_window_ticks: int
    max_stops_in_window: int
    on_high_risk_paths: bool
    high_risk_globs: list[str]
    diff_fraction_threshold: float
    on_budget_warning: bool


class RelaisConfig(TypedDict):
    meta: dict[str, int]
    runner: RunnerConfig
    goal: dict[str, str]
    scope: dict[str, Any]
    diff_limits: dict[str, int]
    verification: dict[str, Any]
    budgets: dict[str, Any]
    history: dict[str, Any]
    orchestrator: AgentConfig
    builder: AgentConfig
    reviewer: dict[str, Any]
    observability: dict[str, Any]


DEFAULT_CONFIG: Final[RelaisConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "runner": {
        "workspace_dir": ".relais",
        "lockfile": "tick.lock",
        "max_tick_seconds": 3600,
        "git_timeout_seconds": 60,
        "runner_owned_globs": [".relais/*", "relais.toml"],
        "commit_on_success": True,
    },
    "goal": {
        "text": "",
        "file": ".relais/GOAL.md",
        "roadmap": "",
    },
    "scope": {
        "default_allowed_globs": [],
        "default_forbidden_globs": [".git/*", ".env", ".env.*"],
        "default_allow_new_files": False,
        "default_allow_lockfile_changes": False,
        "lockfiles": [
            "package-lock.json",
            "pnpm-lock.yaml",
            "yarn.lock",
            "poetry.lock",
            "uv.lock",
            "Pipfile.lock",
            "Cargo.lock",
            "Gemfile.lock",
            "go.sum",
            "composer.lock",
        ],
        "precedence": "forbidden",
    },
    "diff_limits": {
        "default_max_files_touched": 20,
        "default_max_lines_changed": 800,
    },
    "verification": {
        "max_param_len": 128,
        "reject_whitespace_in_params": True,
        "reject_dotdot": True,
        "reject_metachars_regex": r"[;&|`$<>\\\n\r]",
        "timeout_fast_seconds": 120,
        "timeout_slow_seconds": 600,
        "templates": [],
    },
    "budgets": {
        "per_milestone": {
            "max_ticks": 50,
            "max_orchestrator_calls": 100,
            "max_builder_calls": 50,
            "max_verify_runs": 200,
        },
        "soft_per_milestone": {},
        "warn_at_fraction": 0.8,
    },
    "history": {
        "enabled": True,
        "dir": ".relais/history",
        "max_mb": 200,
    },
    "orchestrator": {
        "command": ["claude", "-p", "--output-format", "json"],
        "timeout_seconds": 300,
        "max_turns": 10,
    },
    "builder": {
        "command": ["claude", "-p", "--output-format", "json", "--permission-mode", "acceptEdits"],
        "timeout_seconds": 1800,
        "max_turns": 40,
    },
    "reviewer": {
        "enabled": False,
        "command": ["claude", "-p", "--output-format", "json"],
        "timeout_seconds": 300,
        "trigger": {
            "on_verify_fail": True,
            "on_repeated_stop": True,
            "stop_window_ticks": 5,
            "max_stops_in_window": 3,
            "on_high_risk_paths": True,
            "high_risk_globs": [],
            "diff_fraction_threshold": 0.8,
            "on_budget_warning": False,
        },
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": ".relais/logs",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> RelaisConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced, not merged."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a fully merged config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(config, set(DEFAULT_CONFIG), "", issues)
    normalized = _deep_copy_mapping(config)

    meta = _section(config, "meta", issues)
    version = _as_int(meta.get("schema_version"), "meta.schema_version", issues, minimum=1)
    if version is not None and version != ConfigSchemaVersion:
        issues.add(
            "meta.schema_version",
            f"schema version {version} is not supported; expected {ConfigSchemaVersion}",
        )

    _validate_runner(_section(config, "runner", issues), issues)
    _validate_goal(_section(config, "goal", issues), issues)
    _validate_scope(_section(config, "scope", issues), issues)
    _validate_diff_limits(_section(config, "diff_limits", issues), issues)
    _validate_verification(_section(config, "verification", issues), issues)
    _validate_budgets(_section(config, "budgets", issues), issues)
    _validate_history(_section(config, "history", issues), issues)
    for agent in ("orchestrator", "builder"):
        _validate_agent(_section(config, agent, issues), agent, issues)
    _validate_reviewer(_section(config, "reviewer", issues), issues)
    _validate_observability(_section(config, "observability", issues), issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Return a copy safe for logs: environment passthrough values are masked."""

    redacted = _deep_copy_mapping(config)
    for section in ("orchestrator", "builder", "reviewer"):
        agent = redacted.get(section)
        if isinstance(agent, dict) and isinstance(agent.get("env"), dict):
            agent["env"] = {key: "<redacted>" for key in agent["env"]}
    return redacted


def _validate_runner(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    path = "runner"
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["runner"]), path, issues)
    _as_str(payload.get("workspace_dir"), _join(path, "workspace_dir"), issues)
    lockfile = _as_str(payload.get("lockfile"), _join(path, "lockfile"), issues)
    if lockfile is not None and ("/" in lockfile or "\\" in lockfile):
        issues.add(_join(path, "lockfile"), "must be a bare file name")
    _as_int(payload.get("max_tick_seconds"), _join(path, "max_tick_seconds"), issues, minimum=1)
    _as_int(
        payload.get("git_timeout_seconds"), _join(path, "git_timeout_seconds"), issues, minimum=1
    )
    _as_str_list(payload.get("runner_owned_globs"), _join(path, "runner_owned_globs"), issues)
    _as_bool(payload.get("commit_on_success"), _join(path, "commit_on_success"), issues)


def _validate_goal(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["goal"]), "goal", issues)
    for key in ("text", "file", "roadmap"):
        _as_str(payload.get(key), _join("goal", key), issues, allow_empty=True)


def _validate_scope(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    path = "scope"
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["scope"]), path, issues)
    for key in ("default_allowed_globs", "default_forbidden_globs", "lockfiles"):
        _as_str_list(payload.get(key), _join(path, key), issues)
    for key in ("default_allow_new_files", "default_allow_lockfile_changes"):
        _as_bool(payload.get(key), _join(path, key), issues)
    _as_enum(payload.get("precedence"), _join(path, "precedence"), issues, _PRECEDENCE_VALUES)


def _validate_diff_limits(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["diff_limits"]), "diff_limits", issues)
    for key in ("default_max_files_touched", "default_max_lines_changed"):
        _as_int(payload.get(key), _join("diff_limits", key), issues, minimum=1)


def _validate_verification(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    path = "verification"
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["verification"]), path, issues)
    _as_int(payload.get("max_param_len"), _join(path, "max_param_len"), issues, minimum=1)
    for key in ("reject_whitespace_in_params", "reject_dotdot"):
        _as_bool(payload.get(key), _join(path, key), issues)
    pattern = _as_str(
        payload.get("reject_metachars_regex"), _join(path, "reject_metachars_regex"), issues
    )
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as exc:
            issues.add(_join(path, "reject_metachars_regex"), f"invalid regex: {exc}")
    for key in ("timeout_fast_seconds", "timeout_slow_seconds"):
        _as_int(payload.get(key), _join(path, key), issues, minimum=1)

    templates = payload.get("templates")
    templates_path = _join(path, "templates")
    if not isinstance(templates, list):
        issues.add(templates_path, f"expected array, got {type(templates).__name__}")
        return
    seen: set[str] = set()
    for index, raw in enumerate(templates):
        item_path = f"{templates_path}[{index}]"
        if not isinstance(raw, Mapping):
            issues.add(item_path, f"expected object, got {type(raw).__name__}")
            continue
        _reject_unknown_keys(raw, {"id", "cmd", "args", "params"}, item_path, issues)
        template_id = _as_str(raw.get("id"), _join(item_path, "id"), issues)
        if template_id is not None:
            if not _TEMPLATE_ID_PATTERN.fullmatch(template_id):
                issues.add(_join(item_path, "id"), "must match [a-z][a-z0-9_.-]*")
            elif template_id in seen:
                issues.add(_join(item_path, "id"), f"duplicate template id {template_id!r}")
            seen.add(template_id)
        _as_str(raw.get("cmd"), _join(item_path, "cmd"), issues)
        _as_str_list(raw.get("args", []), _join(item_path, "args"), issues, allow_empty_items=True)
        params = _as_str_list(raw.get("params", []), _join(item_path, "params"), issues)
        for name in params or ():
            if not _PARAM_NAME_PATTERN.fullmatch(name):
                issues.add(_join(item_path, "params"), f"invalid param name {name!r}")


def _validate_budgets(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    path = "budgets"
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["budgets"]), path, issues)

    hard = payload.get("per_milestone")
    hard_path = _join(path, "per_milestone")
    if not isinstance(hard, Mapping):
        issues.add(hard_path, f"expected object, got {type(hard).__name__}")
    else:
        _reject_unknown_keys(hard, set(_BUDGET_CAP_KEYS), hard_path, issues)
        for key in _BUDGET_CAP_KEYS:
            _as_int(hard.get(key), _join(hard_path, key), issues, minimum=1)

    soft = payload.get("soft_per_milestone", {})
    soft_path = _join(path, "soft_per_milestone")
    if not isinstance(soft, Mapping):
        issues.add(soft_path, f"expected object, got {type(soft).__name__}")
    else:
        _reject_unknown_keys(soft, set(_BUDGET_CAP_KEYS), soft_path, issues)
        for key in _BUDGET_CAP_KEYS:
            if key in soft:
                _as_int(soft.get(key), _join(soft_path, key), issues, minimum=1)

    fraction = _as_float(
        payload.get("warn_at_fraction"), _join(path, "warn_at_fraction"), issues, minimum=0.0
    )
    if fraction is not None and fraction > 1.0:
        issues.add(_join(path, "warn_at_fraction"), "must be <= 1.0")


def _validate_history(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["history"]), "history", issues)
    _as_bool(payload.get("enabled"), "history.enabled", issues)
    _as_str(payload.get("dir"), "history.dir", issues)
    _as_float(payload.get("max_mb"), "history.max_mb", issues, minimum=0.0)


def _validate_agent(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> None:
    _reject_unknown_keys(payload, {"command", "timeout_seconds", "max_turns", "env"}, path, issues)
    command = _as_str_list(payload.get("command"), _join(path, "command"), issues)
    if command is not None and not command:
        issues.add(_join(path, "command"), "must not be empty")
    _as_int(payload.get("timeout_seconds"), _join(path, "timeout_seconds"), issues, minimum=1)
    if "max_turns" in payload:
        _as_int(payload.get("max_turns"), _join(path, "max_turns"), issues, minimum=1)
    env = payload.get("env", {})
    if not isinstance(env, Mapping) or not all(isinstance(v, str) for v in env.values()):
        issues.add(_join(path, "env"), "expected table of strings")


def _validate_reviewer(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    path = "reviewer"
    _reject_unknown_keys(
        payload, {"enabled", "command", "timeout_seconds", "trigger", "env"}, path, issues
    )
    _as_bool(payload.get("enabled"), _join(path, "enabled"), issues)
    _validate_agent(
        {key: payload[key] for key in ("command", "timeout_seconds", "env") if key in payload},
        path,
        issues,
    )
    trigger = payload.get("trigger")
    trigger_path = _join(path, "trigger")
    if not isinstance(trigger, Mapping):
        issues.add(trigger_path, f"expected object, got {type(trigger).__name__}")
        return
    _reject_unknown_keys(trigger, set(DEFAULT_CONFIG["reviewer"]["trigger"]), trigger_path, issues)
    for key in ("on_verify_fail", "on_repeated_stop", "on_high_risk_paths", "on_budget_warning"):
        _as_bool(trigger.get(key), _join(trigger_path, key), issues)
    for key in ("stop_window_ticks", "max_stops_in_window"):
        _as_int(trigger.get(key), _join(trigger_path, key), issues, minimum=1)
    _as_str_list(trigger.get("high_risk_globs"), _join(trigger_path, "high_risk_globs"), issues)
    threshold = _as_float(
        trigger.get("diff_fraction_threshold"),
        _join(trigger_path, "diff_fraction_threshold"),
        issues,
        minimum=0.0,
    )
    if threshold is not None and threshold > 1.0:
        issues.add(_join(trigger_path, "diff_fraction_threshold"), "must be <= 1.0")


def _validate_observability(payload: Mapping[str, object], issues: _IssueCollector) -> None:
    path = "observability"
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["observability"]), path, issues)
    _as_enum(payload.get("log_level"), _join(path, "log_level"), issues, _LOG_LEVELS)
    _as_str(payload.get("log_dir"), _join(path, "log_dir"), issues)
    _as_bool(payload.get("log_to_stdout"), _join(path, "log_to_stdout"), issues)
    _as_bool(payload.get("redact_secrets"), _join(path, "redact_secrets"), issues)


def _section(
    payload: Mapping[str, object], key: str, issues: _IssueCollector
) -> Mapping[str, object]:
    raw = payload.get(key)
    if not isinstance(raw, Mapping):
        issues.add(key, f"expected object, got {type(raw).__name__}")
        return {}
    return raw


def _as_str(
    value: object, path: str, issues: _IssueCollector, *, allow_empty: bool = False
) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed and not allow_empty:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allow_empty_items: bool = False,
) -> list[str] | None:
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or (not item.strip() and not allow_empty_items):
            issues.add(f"{path}[{index}]", "expected non-empty string")
            continue
        out.append(item)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "RelaisConfig",
    "VerificationTemplate",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
