"""
relais — wire schemas for agent structured output

File: src/relais/agents/schemas.py
Last updated: 2026-10-18

Purpose
- Pydantic models describing what the planner, builder and reviewer must print.
- Conversion from validated wire models into frozen domain records.

Functional requirements
- Unknown keys are rejected so schema drift surfaces as a validation failure.
- Planner scope and diff-limit fields are optional; configuration defaults fill the gaps.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from relais.domain.models import (
    BuilderDirectives,
    BuilderResult,
    DiffLimits,
    Task,
    TaskKind,
    TaskQuestion,
    TaskScope,
    TouchedFiles,
    VerificationPlan,
)

_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$"


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class PlannerScope(_StrictModel):
    allowed_globs: list[str] | None = None
    forbidden_globs: list[str] | None = None
    allow_new_files: bool | None = None
    allow_lockfile_changes: bool | None = None


class PlannerDiffLimits(_StrictModel):
    max_files_touched: int | None = Field(default=None, ge=0)
    max_lines_changed: int | None = Field(default=None, ge=0)


class PlannerVerification(_StrictModel):
    fast: list[str] = Field(default_factory=list)
    slow: list[str] = Field(default_factory=list)
    params: dict[str, dict[str, str]] = Field(default_factory=dict)


class PlannerBuilder(_StrictModel):
    mode: Literal["edit", "explore", "tdd"] = "edit"
    max_turns: int | None = Field(default=None, ge=1)
    instructions: str = ""


class PlannerQuestion(_StrictModel):
    prompt: str = Field(min_length=1)
    choices: list[str] = Field(default_factory=list)


class PlannerTask(_StrictModel):
    """Task object the planning agent must emit."""

    task_id: str = Field(pattern=_ID_PATTERN)
    milestone_id: str = Field(pattern=_ID_PATTERN)
    task_kind: Literal["execute", "verify_only", "question"]
    intent: str = Field(min_length=1, max_length=20_000)
    scope: PlannerScope = Field(default_factory=PlannerScope)
    diff_limits: PlannerDiffLimits = Field(default_factory=PlannerDiffLimits)
    verification: PlannerVerification = Field(default_factory=PlannerVerification)
    builder: PlannerBuilder = Field(default_factory=PlannerBuilder)
    question: PlannerQuestion | None = None


class BuilderTouchedFiles(_StrictModel):
    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    renamed: list[str] = Field(default_factory=list)


class BuilderOutput(_StrictModel):
    """Report the builder agent prints after editing the worktree."""

    subtasks_completed: list[str]
    touched_files: BuilderTouchedFiles
    verification_commands_run: list[str] = Field(default_factory=list)
    notes: str = ""
    blockers: list[str] = Field(default_factory=list)


class ReviewerOutput(_StrictModel):
    decision: Literal["proceed", "ask_question", "force_patch"]
    reason: str = ""
    question: str | None = None
    patch_instructions: str | None = None


def task_from_planner(planned: PlannerTask, config: Mapping[str, Any]) -> Task:
    """Materialize a domain ``Task``, filling missing scope and limits from config."""

    scope_defaults = config.get("scope", {})
    limit_defaults = config.get("diff_limits", {})
    agent_defaults = config.get("builder", {})

    scope = TaskScope(
        allowed_globs=tuple(
            planned.scope.allowed_globs
            if planned.scope.allowed_globs is not None
            else scope_defaults.get("default_allowed_globs", ())
        ),
        forbidden_globs=tuple(
            planned.scope.forbidden_globs
            if planned.scope.forbidden_globs is not None
            else scope_defaults.get("default_forbidden_globs", ())
        ),
        allow_new_files=_pick(
            planned.scope.allow_new_files, scope_defaults.get("default_allow_new_files", False)
        ),
        allow_lockfile_changes=_pick(
            planned.scope.allow_lockfile_changes,
            scope_defaults.get("default_allow_lockfile_changes", False),
        ),
    )
    diff_limits = DiffLimits(
        max_files_touched=_pick(
            planned.diff_limits.max_files_touched,
            limit_defaults.get("default_max_files_touched", 20),
        ),
        max_lines_changed=_pick(
            planned.diff_limits.max_lines_changed,
            limit_defaults.get("default_max_lines_changed", 800),
        ),
    )
    question = (
        TaskQuestion(prompt=planned.question.prompt, choices=tuple(planned.question.choices))
        if planned.question is not None
        else None
    )
    return Task(
        task_id=planned.task_id,
        milestone_id=planned.milestone_id,
        task_kind=TaskKind(planned.task_kind),
        intent=planned.intent.strip(),
        scope=scope,
        diff_limits=diff_limits,
        verification=VerificationPlan(
            fast=tuple(planned.verification.fast),
            slow=tuple(planned.verification.slow),
            params={k: dict(v) for k, v in planned.verification.params.items()},
        ),
        builder=BuilderDirectives(
            mode=planned.builder.mode,
            max_turns=planned.builder.max_turns or agent_defaults.get("max_turns"),
            instructions=planned.builder.instructions,
        ),
        question=question,
    )


def builder_result_from_output(output: BuilderOutput) -> BuilderResult:
    return BuilderResult(
        subtasks_completed=tuple(output.subtasks_completed),
        touched_files=TouchedFiles(
            added=tuple(output.touched_files.added),
            modified=tuple(output.touched_files.modified),
            deleted=tuple(output.touched_files.deleted),
            renamed=tuple(output.touched_files.renamed),
        ),
        verification_commands_run=tuple(output.verification_commands_run),
        notes=output.notes,
        blockers=tuple(output.blockers),
    )


def _pick(value: Any, default: Any) -> Any:
    return default if value is None else value


__all__ = [
    "BuilderOutput",
    "BuilderTouchedFiles",
    "PlannerTask",
    "ReviewerOutput",
    "builder_result_from_output",
    "task_from_planner",
]
