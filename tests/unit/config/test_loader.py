"""
relais — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-18

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the repository root.
- Redacted effective config dumping.

Non-functional requirements
- Deterministic output across repeated loads.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from relais.config import ConfigValidationError
from relais.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_KNOBS,
    ConfigLoadError,
    dump_effective_config,
    load_config,
)
from relais.config.schema import default_config


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILE
    default_path = tmp_path / "empty.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[budgets.per_milestone]
max_ticks = 4
""".strip(),
    )

    env = {"RELAIS_BUDGETS_PER_MILESTONE_MAX_TICKS": "6"}
    default_loaded = load_config(default_path, repo_root=tmp_path, environ={})
    file_loaded = load_config(config_path, repo_root=tmp_path, environ={})
    env_loaded = load_config(config_path, repo_root=tmp_path, environ=env)
    cli_loaded = load_config(
        config_path,
        repo_root=tmp_path,
        environ=env,
        cli_overrides={"budgets.per_milestone.max_ticks": 7},
    )

    assert default_loaded["budgets"]["per_milestone"]["max_ticks"] == 50
    assert file_loaded["budgets"]["per_milestone"]["max_ticks"] == 4
    assert env_loaded["budgets"]["per_milestone"]["max_ticks"] == 6
    assert cli_loaded["budgets"]["per_milestone"]["max_ticks"] == 7


def test_default_file_is_picked_up_from_repo_root(tmp_path: Path) -> None:
    _write_config(tmp_path / DEFAULT_CONFIG_FILE, '[goal]\ntext = "Ship the parser"\n')

    loaded = load_config(repo_root=tmp_path, environ={})

    assert loaded["goal"]["text"] == "Ship the parser"


def test_missing_default_file_falls_back_to_defaults(tmp_path: Path) -> None:
    loaded = load_config(repo_root=tmp_path, environ={})
    assert loaded["runner"]["lockfile"] == "tick.lock"
    assert loaded["reviewer"]["enabled"] is False


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "nope.toml", repo_root=tmp_path, environ={})


def test_invalid_toml_is_reported_with_path(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILE
    _write_config(config_path, "[runner\nlockfile = 1")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, repo_root=tmp_path, environ={})


@pytest.mark.parametrize(
    ("env_name", "raw", "path", "expected"),
    [
        ("RELAIS_REVIEWER_ENABLED", "yes", ("reviewer", "enabled"), True),
        ("RELAIS_HISTORY_ENABLED", "off", ("history", "enabled"), False),
        ("RELAIS_HISTORY_MAX_MB", "12", ("history", "max_mb"), 12),
        ("RELAIS_BUDGETS_WARN_AT_FRACTION", "0.5", ("budgets", "warn_at_fraction"), 0.5),
        ("RELAIS_OBSERVABILITY_LOG_LEVEL", " DEBUG ", ("observability", "log_level"), "DEBUG"),
        (
            "RELAIS_REVIEWER_TRIGGER_STOP_WINDOW_TICKS",
            "9",
            ("reviewer", "trigger", "stop_window_ticks"),
            9,
        ),
    ],
)
def test_env_mapping_coerces_scalar_fields(
    tmp_path: Path, env_name: str, raw: str, path: tuple[str, ...], expected: object
) -> None:
    loaded = load_config(repo_root=tmp_path, environ={env_name: raw})
    cursor: object = loaded
    for part in path:
        assert isinstance(cursor, dict)
        cursor = cursor[part]
    assert cursor == expected


def test_list_fields_are_not_bindable_from_env(tmp_path: Path) -> None:
    loaded = load_config(
        repo_root=tmp_path, environ={"RELAIS_ORCHESTRATOR_COMMAND": "evil --flag"}
    )
    assert loaded["orchestrator"]["command"][0] == "claude"


def test_invalid_env_coercion_raises_actionable_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="RELAIS_RUNNER_MAX_TICK_SECONDS") as excinfo:
        load_config(repo_root=tmp_path, environ={"RELAIS_RUNNER_MAX_TICK_SECONDS": "soon"})
    assert "runner.max_tick_seconds must be an integer" in str(excinfo.value)

    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(repo_root=tmp_path, environ={"RELAIS_HISTORY_ENABLED": "maybe"})


def test_invalid_values_fail_schema_validation(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILE
    _write_config(config_path, '[scope]\nprecedence = "sometimes"\n')

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, repo_root=tmp_path, environ={})

    assert [issue.path for issue in excinfo.value.issues] == ["scope.precedence"]


def test_empty_cli_override_key_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(repo_root=tmp_path, environ={}, cli_overrides={".": 1})


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILE
    _write_config(
        config_path,
        """
[goal]
text = "Ship the parser"

[[verification.templates]]
id = "unit"
cmd = "pytest"
args = ["-q"]
""".strip(),
    )

    first = load_config(config_path, repo_root=tmp_path, environ={})
    second = load_config(config_path, repo_root=tmp_path, environ={})

    assert _sha256_json(first) == _sha256_json(second)
    assert first["verification"]["templates"][0]["id"] == "unit"


def test_path_fields_are_normalized_against_repo_root(tmp_path: Path) -> None:
    config_path = tmp_path / "configs" / DEFAULT_CONFIG_FILE
    _write_config(
        config_path,
        """
[runner]
workspace_dir = "state/../.relais-work"

[history]
dir = "/var/tmp/relais-history"
""".strip(),
    )

    loaded = load_config(config_path, repo_root=tmp_path, environ={})

    root = tmp_path.resolve().as_posix()
    assert loaded["runner"]["workspace_dir"] == f"{root}/.relais-work"
    assert loaded["goal"]["file"] == f"{root}/.relais/GOAL.md"
    assert loaded["history"]["dir"] == "/var/tmp/relais-history"


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILE
    _write_config(
        config_path,
        """
[builder]
command = ["builder-cli"]
timeout_seconds = 60

[builder.env]
API_TOKEN = "s3cr3t"
""".strip(),
    )
    loaded = load_config(config_path, repo_root=tmp_path, environ={})

    dumped = dump_effective_config(loaded)

    assert dumped == dump_effective_config(loaded)
    assert "s3cr3t" not in dumped
    assert json.loads(dumped)["builder"]["env"] == {"API_TOKEN": "<redacted>"}


def test_every_env_knob_names_a_scalar_default() -> None:
    defaults = default_config()
    for knob in ENV_KNOBS:
        cursor: object = defaults
        for part in knob.setting.split("."):
            assert isinstance(cursor, dict), knob.setting
            cursor = cursor[part]
        assert isinstance(cursor, (str, int, float, bool)), knob.setting
    variables = [knob.variable for knob in ENV_KNOBS]
    assert len(set(variables)) == len(variables)
    assert "RELAIS_BUILDER_TIMEOUT_SECONDS" in variables


def test_agent_timeout_longer_than_the_tick_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / DEFAULT_CONFIG_FILE
    _write_config(
        config_path,
        """
[runner]
max_tick_seconds = 600

[builder]
timeout_seconds = 900
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, repo_root=tmp_path, environ={})

    assert [issue.path for issue in excinfo.value.issues] == ["builder.timeout_seconds"]
    assert "runner.max_tick_seconds (600)" in excinfo.value.issues[0].message

    relaxed = load_config(
        config_path, repo_root=tmp_path, environ={"RELAIS_RUNNER_MAX_TICK_SECONDS": "1200"}
    )
    assert relaxed["builder"]["timeout_seconds"] == 900


def test_workspace_and_config_file_are_always_runner_owned(tmp_path: Path) -> None:
    config_path = tmp_path / "ops" / "relais-ci.toml"
    _write_config(
        config_path,
        """
[runner]
workspace_dir = "build/relais-state"
runner_owned_globs = ["generated/*"]
""".strip(),
    )

    loaded = load_config(config_path, repo_root=tmp_path, environ={})

    assert loaded["runner"]["runner_owned_globs"] == [
        "generated/*",
        "build/relais-state/*",
        "ops/relais-ci.toml",
    ]


def test_config_outside_the_repo_is_not_claimed(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    config_path = tmp_path / "shared" / DEFAULT_CONFIG_FILE
    _write_config(config_path, '[goal]\ntext = "Ship the parser"\n')

    loaded = load_config(config_path, repo_root=repo, environ={})

    assert loaded["runner"]["runner_owned_globs"] == [".relais/*", "relais.toml"]
