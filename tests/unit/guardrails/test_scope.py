"""
relais — test suite for guardrail scope enforcement.

File: tests/unit/guardrails/test_scope.py
Last updated: 2026-10-18

Purpose
- Pin the glob semantics and violation priority of ``check_scope``.
"""

from __future__ import annotations

import pytest

from relais.domain.codes import ReportCode
from relais.domain.models import TaskScope
from relais.guardrails.scope import (
    ScopePrecedence,
    ViolationKind,
    check_scope,
    is_lockfile,
    matches_glob,
    normalize_path,
)

pytestmark = pytest.mark.unit

LOCKFILES = ("package-lock.json", "poetry.lock", "Cargo.lock")


def test_double_star_matches_files_directly_under_directory() -> None:
    scope = TaskScope(allowed_globs=("src/**",))
    result = check_scope(["src/utils.ts"], [], scope)
    assert result.ok
    assert result.outcome().ok


def test_single_star_crosses_directory_separators() -> None:
    assert matches_glob("src/deep/nested/file.py", ["src/*.py"])


def test_normalize_path_strips_leading_dot_segments_and_backslashes() -> None:
    assert normalize_path("./src/a.py") == "src/a.py"
    assert normalize_path("src\\pkg\\a.py") == "src/pkg/a.py"


def test_empty_allowed_list_accepts_anything_not_forbidden() -> None:
    scope = TaskScope(forbidden_globs=("secrets/*",))
    assert check_scope(["docs/readme.md", "src/x.py"], [], scope).ok
    blocked = check_scope(["secrets/key.pem"], [], scope)
    assert blocked.outcome().code is ReportCode.STOP_SCOPE_VIOLATION_FORBIDDEN


def test_forbidden_wins_over_allowed_by_default() -> None:
    scope = TaskScope(allowed_globs=("src/*",), forbidden_globs=("src/generated/*",))
    outcome = check_scope(["src/generated/api.py"], [], scope).outcome()
    assert outcome.code is ReportCode.STOP_SCOPE_VIOLATION_FORBIDDEN
    assert outcome.violations == ("src/generated/api.py",)


def test_allowed_precedence_lets_allowed_override_forbidden() -> None:
    scope = TaskScope(allowed_globs=("src/generated/api.py",), forbidden_globs=("src/*",))
    result = check_scope(
        ["src/generated/api.py"], [], scope, precedence=ScopePrecedence.ALLOWED
    )
    assert result.ok


def test_path_outside_allowed_globs_is_reported() -> None:
    scope = TaskScope(allowed_globs=("src/*",))
    outcome = check_scope(["README.md"], [], scope).outcome()
    assert outcome.code is ReportCode.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED


def test_new_file_requires_allow_new_files() -> None:
    scope = TaskScope(allowed_globs=("src/*",))
    outcome = check_scope([], ["src/new_module.py"], scope).outcome()
    assert outcome.code is ReportCode.STOP_SCOPE_VIOLATION_NEW_FILE

    permissive = TaskScope(allowed_globs=("src/*",), allow_new_files=True)
    assert check_scope([], ["src/new_module.py"], permissive).ok


def test_lockfile_change_requires_allow_lockfile_changes() -> None:
    scope = TaskScope()
    outcome = check_scope(["web/package-lock.json"], [], scope, lockfiles=LOCKFILES).outcome()
    assert outcome.code is ReportCode.STOP_LOCKFILE_CHANGE_FORBIDDEN

    permissive = TaskScope(allow_lockfile_changes=True)
    assert check_scope(["web/package-lock.json"], [], permissive, lockfiles=LOCKFILES).ok


def test_bare_lockfile_names_match_by_suffix_only() -> None:
    assert is_lockfile("poetry.lock", LOCKFILES)
    assert is_lockfile("services/api/poetry.lock", LOCKFILES)
    assert not is_lockfile("services/api/mypoetry.lock", LOCKFILES)
    assert is_lockfile("vendor/deps.lock", ("vendor/*.lock",))


def test_runner_owned_paths_take_priority_over_every_other_violation() -> None:
    scope = TaskScope(allowed_globs=("src/*",), forbidden_globs=("docs/*",))
    result = check_scope(
        ["docs/index.md", ".relais/STATE.json", "other.txt"],
        [],
        scope,
        runner_owned_globs=(".relais/*", "relais.toml"),
    )
    kinds = {violation.kind for violation in result.violations}
    assert kinds == {
        ViolationKind.RUNNER_OWNED,
        ViolationKind.FORBIDDEN,
        ViolationKind.OUTSIDE_ALLOWED,
    }
    outcome = result.outcome()
    assert outcome.code is ReportCode.STOP_RUNNER_OWNED_MUTATION
    assert outcome.violations == (".relais/STATE.json",)
    assert len(outcome.details["violations"]) == 3


def test_reason_counts_additional_violations_of_the_same_kind() -> None:
    scope = TaskScope(forbidden_globs=("build/*",))
    outcome = check_scope(["build/a.o", "build/b.o"], [], scope).outcome()
    assert outcome.reason.endswith("(+1 more)")


def test_touched_paths_are_deduplicated_and_sorted() -> None:
    result = check_scope(["b.py", "./a.py"], ["a.py"], TaskScope(allow_new_files=True))
    assert result.touched_paths == ("a.py", "b.py")
    assert result.to_dict()["ok"] is True
