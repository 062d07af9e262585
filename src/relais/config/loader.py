"""
relais — runtime config loader.

File: src/relais/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective relais config from four layers: defaults, ``relais.toml``, ``RELAIS_*``
  environment knobs and ``--set`` style CLI overrides (later layers win).

What should be included in this file
- The table of environment knobs an operator may set, each bound to one scalar setting.
- Cross-section checks the per-section schema cannot express on its own.
- Path settings resolved against the repository root.

Functional requirements
- Agent commands stay file-only: argv lists never come from the environment.
- No agent may be allowed to run longer than the tick itself.
- The workspace directory and the config file are always runner-owned, whatever the file says.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final, NamedTuple

from relais.config.schema import (
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "relais.toml"
ENV_PREFIX: Final[str] = "RELAIS_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_AGENT_SECTIONS: Final[tuple[str, ...]] = ("orchestrator", "builder", "reviewer")


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


class EnvKnob(NamedTuple):
    setting: str
    parse: Callable[[str], object]
    expects: str

    @property
    def variable(self) -> str:
        return ENV_PREFIX + self.setting.replace(".", "_").upper()


def _text(raw: str) -> str:
    return raw


def _integer(raw: str) -> int:
    return int(raw)


def _number(raw: str) -> float:
    return float(raw)


def _flag(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


_INTEGER = "an integer"
_NUMBER = "a number"
_BOOLEAN = "a boolean (true/false/1/0/yes/no/on/off)"
_STRING = "a string"

ENV_KNOBS: Final[tuple[EnvKnob, ...]] = (
    EnvKnob("goal.text", _text, _STRING),
    EnvKnob("goal.file", _text, _STRING),
    EnvKnob("runner.workspace_dir", _text, _STRING),
    EnvKnob("runner.max_tick_seconds", _integer, _INTEGER),
    EnvKnob("runner.git_timeout_seconds", _integer, _INTEGER),
    EnvKnob("runner.commit_on_success", _flag, _BOOLEAN),
    EnvKnob("orchestrator.timeout_seconds", _integer, _INTEGER),
    EnvKnob("orchestrator.max_turns", _integer, _INTEGER),
    EnvKnob("builder.timeout_seconds", _integer, _INTEGER),
    EnvKnob("builder.max_turns", _integer, _INTEGER),
    EnvKnob("reviewer.enabled", _flag, _BOOLEAN),
    EnvKnob("reviewer.timeout_seconds", _integer, _INTEGER),
    EnvKnob("reviewer.trigger.stop_window_ticks", _integer, _INTEGER),
    EnvKnob("reviewer.trigger.max_stops_in_window", _integer, _INTEGER),
    EnvKnob("budgets.per_milestone.max_ticks", _integer, _INTEGER),
    EnvKnob("budgets.per_milestone.max_orchestrator_calls", _integer, _INTEGER),
    EnvKnob("budgets.per_milestone.max_builder_calls", _integer, _INTEGER),
    EnvKnob("budgets.per_milestone.max_verify_runs", _integer, _INTEGER),
    EnvKnob("budgets.warn_at_fraction", _number, _NUMBER),
    EnvKnob("verification.timeout_fast_seconds", _integer, _INTEGER),
    EnvKnob("verification.timeout_slow_seconds", _integer, _INTEGER),
    EnvKnob("history.enabled", _flag, _BOOLEAN),
    EnvKnob("history.dir", _text, _STRING),
    EnvKnob("history.max_mb", _integer, _INTEGER),
    EnvKnob("observability.log_level", _text, _STRING),
    EnvKnob("observability.log_dir", _text, _STRING),
    EnvKnob("observability.log_to_stdout", _flag, _BOOLEAN),
)


def load_config(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config; CLI beats env beats file beats defaults."""

    root = Path(repo_root).resolve() if repo_root is not None else Path.cwd().resolve()
    if config_path is None:
        source, required = root / DEFAULT_CONFIG_FILE, False
    else:
        source, required = Path(config_path).expanduser().resolve(), True

    layers = (
        read_config_file(source, required=required),
        env_layer(os.environ if environ is None else environ),
        cli_layer(cli_overrides or {}),
    )
    effective: dict[str, Any] = dict(default_config())
    for layer in layers:
        effective = merge_config(effective, layer)
    effective = assert_valid_config(effective)
    _check_agent_deadlines(effective)
    _claim_runner_files(effective, root=root, config_file=source)
    return normalize_paths(effective, base_dir=root)


def read_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    """Parse ``path`` as TOML; a missing optional file is an empty layer."""

    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for knob in ENV_KNOBS:
        raw = environ.get(knob.variable)
        if raw is None:
            continue
        try:
            value = knob.parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(
                f"{knob.variable} -> {knob.setting} must be {knob.expects}"
            ) from exc
        _assign(layer, knob.setting.split("."), value)
    return layer


def cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in sorted(overrides.items()):
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, parts, value)
    return layer


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every path setting against ``base_dir``, expanding ``~`` and ``$VARS``."""

    resolved = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = resolved.get(section)
        if not isinstance(table, dict):
            continue
        value = table.get(key)
        if isinstance(value, str) and value:
            candidate = Path(os.path.expandvars(value)).expanduser()
            absolute = candidate if candidate.is_absolute() else base_dir / candidate
            table[key] = Path(os.path.normpath(absolute)).as_posix()
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return the redacted effective config as a single deterministic JSON line."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _check_agent_deadlines(config: Mapping[str, Any]) -> None:
    tick_limit = int(config["runner"]["max_tick_seconds"])
    issues = [
        ConfigValidationIssue(
            path=f"{section}.timeout_seconds",
            message=f"must not exceed runner.max_tick_seconds ({tick_limit})",
        )
        for section in _AGENT_SECTIONS
        if int(config[section].get("timeout_seconds", 0)) > tick_limit
    ]
    if issues:
        raise ConfigValidationError(tuple(issues))


def _claim_runner_files(config: dict[str, Any], *, root: Path, config_file: Path) -> None:
    runner = config["runner"]
    owned: list[str] = list(runner["runner_owned_globs"])
    workspace = Path(os.path.expandvars(runner["workspace_dir"])).expanduser()
    candidates = [
        (workspace if workspace.is_absolute() else root / workspace, "/*"),
        (config_file, ""),
    ]
    for path, suffix in candidates:
        try:
            relative = Path(os.path.normpath(path)).relative_to(root).as_posix()
        except ValueError:
            continue
        if relative != "." and f"{relative}{suffix}" not in owned:
            owned.append(f"{relative}{suffix}")
    runner["runner_owned_globs"] = owned


def _assign(target: dict[str, Any], parts: list[str], value: object) -> None:
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[parts[-1]] = value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_KNOBS",
    "ENV_PREFIX",
    "EnvKnob",
    "cli_layer",
    "dump_effective_config",
    "env_layer",
    "load_config",
    "normalize_paths",
    "read_config_file",
]
