"""
relais — unit tests for config schema validation

File: tests/unit/config/test_schema.py
Last updated: 2026-10-18

Purpose
- Pin the structured validation contract of the configuration schema.

What this test file should cover
- Built-in defaults validate cleanly.
- Unknown keys, wrong types, and range violations report exact field paths.
- Verification template declarations are checked for ids and param names.
- Deep merge semantics and redaction.
"""

from __future__ import annotations

import pytest

from relais.config.schema import (
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)


def _with(**sections: dict[str, object]) -> dict[str, object]:
    return merge_config(default_config(), sections)


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_default_config_validates_successfully() -> None:
    result = validate_config(default_config())
    assert result.is_valid
    assert result.config == default_config()


def test_non_mapping_root_is_rejected() -> None:
    result = validate_config(["not", "a", "table"])
    assert not result.is_valid
    assert result.issues[0].path == "<root>"


def test_unknown_key_rejection_is_explicit() -> None:
    config = _with(runner={"max_tick_secs": 5}, extras={"x": 1})

    assert _issue_paths(config) == ["extras", "runner.max_tick_secs"]
    with pytest.raises(ConfigValidationError, match="unknown field"):
        assert_valid_config(config)


@pytest.mark.parametrize(
    ("sections", "path", "message"),
    [
        ({"runner": {"commit_on_success": "yes"}}, "runner.commit_on_success", "boolean"),
        ({"runner": {"lockfile": "locks/tick.lock"}}, "runner.lockfile", "bare file name"),
        ({"runner": {"max_tick_seconds": 0}}, "runner.max_tick_seconds", ">= 1"),
        ({"scope": {"precedence": "allowed-first"}}, "scope.precedence", "expected one of"),
        (
            {"diff_limits": {"default_max_files_touched": 0}},
            "diff_limits.default_max_files_touched",
            ">= 1",
        ),
        ({"budgets": {"warn_at_fraction": 1.5}}, "budgets.warn_at_fraction", "<= 1.0"),
        ({"history": {"max_mb": -1}}, "history.max_mb", ">= 0.0"),
        ({"builder": {"command": []}}, "builder.command", "must not be empty"),
        ({"orchestrator": {"timeout_seconds": True}}, "orchestrator.timeout_seconds", "integer"),
        ({"observability": {"log_level": "LOUD"}}, "observability.log_level", "expected one of"),
        (
            {"reviewer": {"trigger": {"diff_fraction_threshold": 2}}},
            "reviewer.trigger.diff_fraction_threshold",
            "<= 1.0",
        ),
        ({"meta": {"schema_version": 2}}, "meta.schema_version", "not supported"),
    ],
)
def test_type_and_range_violations_report_exact_paths(
    sections: dict[str, object], path: str, message: str
) -> None:
    issues = validate_config(_with(**sections)).issues

    assert [issue.path for issue in issues] == [path]
    assert message in issues[0].message


def test_budget_caps_reject_unknown_counters_and_bad_soft_caps() -> None:
    config = _with(
        budgets={
            "per_milestone": {"max_tokens": 10},
            "soft_per_milestone": {"max_ticks": 0},
        }
    )
    assert _issue_paths(config) == [
        "budgets.per_milestone.max_tokens",
        "budgets.soft_per_milestone.max_ticks",
    ]


def test_verification_templates_are_validated() -> None:
    config = _with(
        verification={
            "reject_metachars_regex": "[unclosed",
            "templates": [
                {"id": "unit", "cmd": "pytest", "args": ["-q"]},
                {"id": "unit", "cmd": "pytest"},
                {"id": "Lint", "cmd": "ruff", "params": ["target-dir"]},
                {"id": "typing", "cmd": "mypy", "shell": True},
                "not-a-table",
            ],
        }
    )

    assert _issue_paths(config) == [
        "verification.reject_metachars_regex",
        "verification.templates[1].id",
        "verification.templates[2].id",
        "verification.templates[2].params",
        "verification.templates[3].shell",
        "verification.templates[4]",
    ]


def test_template_args_may_contain_empty_strings() -> None:
    config = _with(verification={"templates": [{"id": "echo", "cmd": "echo", "args": [""]}]})
    assert validate_config(config).is_valid


def test_agent_env_must_be_a_table_of_strings() -> None:
    config = _with(builder={"env": {"TOKEN": 3}})
    assert _issue_paths(config) == ["builder.env"]


def test_validation_error_renders_every_issue() -> None:
    config = _with(runner={"lockfile": ""}, history={"enabled": "sure"})
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    text = str(excinfo.value)
    assert text.startswith("invalid config:")
    assert "- runner.lockfile: must not be empty" in text
    assert "- history.enabled: expected boolean, got str" in text


def test_merge_replaces_lists_and_deep_merges_tables() -> None:
    base = {"scope": {"lockfiles": ["a.lock", "b.lock"], "precedence": "forbidden"}}
    merged = merge_config(base, {"scope": {"lockfiles": ["c.lock"]}})

    assert merged == {"scope": {"lockfiles": ["c.lock"], "precedence": "forbidden"}}
    assert base["scope"]["lockfiles"] == ["a.lock", "b.lock"]


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["runner"]["runner_owned_globs"].append("tmp/*")
    assert "tmp/*" not in default_config()["runner"]["runner_owned_globs"]


def test_redact_config_masks_agent_env_only() -> None:
    config = _with(
        orchestrator={"env": {"API_KEY": "k"}},
        reviewer={"env": {"REVIEW_TOKEN": "t"}},
    )

    redacted = redact_config(config)

    assert redacted["orchestrator"]["env"] == {"API_KEY": "<redacted>"}
    assert redacted["reviewer"]["env"] == {"REVIEW_TOKEN": "<redacted>"}
    assert redacted["orchestrator"]["command"] == config["orchestrator"]["command"]
    assert config["orchestrator"]["env"] == {"API_KEY": "k"}
