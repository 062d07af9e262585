"""Dataclass domain models for tasks and builder results with canonical serialization."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import NoReturn

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_TEXT = 16_384


class TaskKind(StrEnum):
    """What the builder is expected to do with the working tree."""

    EXECUTE = "execute"
    VERIFY_ONLY = "verify_only"
    QUESTION = "question"


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True, slots=True)
class TaskScope:
    """File-path globs a task may touch."""

    allowed_globs: tuple[str, ...] = ()
    forbidden_globs: tuple[str, ...] = ()
    allow_new_files: bool = False
    allow_lockfile_changes: bool = False

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "allowed_globs": list(self.allowed_globs),
            "forbidden_globs": list(self.forbidden_globs),
            "allow_new_files": self.allow_new_files,
            "allow_lockfile_changes": self.allow_lockfile_changes,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "scope") -> TaskScope:
        return cls(
            allowed_globs=_as_str_tuple(data.get("allowed_globs", ()), f"{path}.allowed_globs"),
            forbidden_globs=_as_str_tuple(
                data.get("forbidden_globs", ()), f"{path}.forbidden_globs"
            ),
            allow_new_files=_as_bool(data.get("allow_new_files", False), f"{path}.allow_new_files"),
            allow_lockfile_changes=_as_bool(
                data.get("allow_lockfile_changes", False), f"{path}.allow_lockfile_changes"
            ),
        )


@dataclass(frozen=True, slots=True)
class DiffLimits:
    max_files_touched: int
    max_lines_changed: int

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "max_files_touched": self.max_files_touched,
            "max_lines_changed": self.max_lines_changed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "diff_limits") -> DiffLimits:
        return cls(
            max_files_touched=_as_int(
                data.get("max_files_touched"), f"{path}.max_files_touched", minimum=0
            ),
            max_lines_changed=_as_int(
                data.get("max_lines_changed"), f"{path}.max_lines_changed", minimum=0
            ),
        )


@dataclass(frozen=True, slots=True)
class VerificationPlan:
    """Verification template ids to run, with per-template parameters."""

    fast: tuple[str, ...] = ()
    slow: tuple[str, ...] = ()
    params: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.fast and not self.slow

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "fast": list(self.fast),
            "slow": list(self.slow),
            "params": {
                template_id: dict(sorted(values.items()))
                for template_id, values in sorted(self.params.items())
            },
        }

    @classmethod
    def from_dict(
        cls, data: Mapping[str, object], path: str = "verification"
    ) -> VerificationPlan:
        raw_params = data.get("params", {})
        if not isinstance(raw_params, Mapping):
            _fail(f"{path}.params", f"expected object, got {type(raw_params).__name__}")
        params: dict[str, dict[str, str]] = {}
        for template_id, values in raw_params.items():
            entry_path = f"{path}.params.{template_id}"
            if not isinstance(values, Mapping):
                _fail(entry_path, f"expected object, got {type(values).__name__}")
            params[str(template_id)] = {
                str(key): _as_str(value, f"{entry_path}.{key}", min_len=0)
                for key, value in values.items()
            }
        return cls(
            fast=_as_str_tuple(data.get("fast", ()), f"{path}.fast"),
            slow=_as_str_tuple(data.get("slow", ()), f"{path}.slow"),
            params=params,
        )


@dataclass(frozen=True, slots=True)
class BuilderDirectives:
    mode: str = "edit"
    max_turns: int | None = None
    instructions: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {"mode": self.mode, "max_turns": self.max_turns, "instructions": self.instructions}

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "builder") -> BuilderDirectives:
        max_turns = data.get("max_turns")
        return cls(
            mode=_as_str(data.get("mode", "edit"), f"{path}.mode"),
            max_turns=(
                None
                if max_turns is None
                else _as_int(max_turns, f"{path}.max_turns", minimum=1)
            ),
            instructions=_as_str(data.get("instructions", ""), f"{path}.instructions", min_len=0),
        )


@dataclass(frozen=True, slots=True)
class TaskQuestion:
    prompt: str
    choices: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {"prompt": self.prompt, "choices": list(self.choices)}


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of work produced by the planning agent. Immutable after ORCHESTRATE."""

    task_id: str
    milestone_id: str
    task_kind: TaskKind
    intent: str
    scope: TaskScope
    diff_limits: DiffLimits
    verification: VerificationPlan = field(default_factory=VerificationPlan)
    builder: BuilderDirectives = field(default_factory=BuilderDirectives)
    question: TaskQuestion | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "task_id": self.task_id,
            "milestone_id": self.milestone_id,
            "task_kind": self.task_kind.value,
            "intent": self.intent,
            "scope": self.scope.to_dict(),
            "diff_limits": self.diff_limits.to_dict(),
            "verification": self.verification.to_dict(),
            "builder": self.builder.to_dict(),
        }
        if self.question is not None:
            payload["question"] = self.question.to_dict()
        return payload

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        raw_kind = _as_str(data.get("task_kind"), "task.task_kind")
        try:
            kind = TaskKind(raw_kind)
        except ValueError:
            _fail("task.task_kind", f"unknown task kind {raw_kind!r}")

        question: TaskQuestion | None = None
        raw_question = data.get("question")
        if raw_question is not None:
            q = _as_mapping(raw_question, "task.question")
            question = TaskQuestion(
                prompt=_as_str(q.get("prompt"), "task.question.prompt"),
                choices=_as_str_tuple(q.get("choices", ()), "task.question.choices"),
            )

        return cls(
            task_id=_as_str(data.get("task_id"), "task.task_id"),
            milestone_id=_as_str(data.get("milestone_id"), "task.milestone_id"),
            task_kind=kind,
            intent=_as_str(data.get("intent"), "task.intent"),
            scope=TaskScope.from_dict(_as_mapping(data.get("scope", {}), "task.scope")),
            diff_limits=DiffLimits.from_dict(
                _as_mapping(data.get("diff_limits"), "task.diff_limits")
            ),
            verification=VerificationPlan.from_dict(
                _as_mapping(data.get("verification", {}), "task.verification")
            ),
            builder=BuilderDirectives.from_dict(
                _as_mapping(data.get("builder", {}), "task.builder")
            ),
            question=question,
        )


@dataclass(frozen=True, slots=True)
class TouchedFiles:
    """Files the builder reports touching, grouped by change type."""

    added: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    renamed: tuple[str, ...] = ()

    def all_paths(self) -> tuple[str, ...]:
        return tuple(sorted({*self.added, *self.modified, *self.deleted, *self.renamed}))

    def to_dict(self) -> dict[str, JSONValue]:
        return {kind.value: list(getattr(self, kind.value)) for kind in ChangeType}


@dataclass(frozen=True, slots=True)
class BuilderResult:
    """Structured report returned by the builder agent. One per tick."""

    subtasks_completed: tuple[str, ...]
    touched_files: TouchedFiles
    verification_commands_run: tuple[str, ...] = ()
    notes: str = ""
    blockers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "subtasks_completed": list(self.subtasks_completed),
            "touched_files": self.touched_files.to_dict(),
            "verification_commands_run": list(self.verification_commands_run),
            "notes": self.notes,
            "blockers": list(self.blockers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BuilderResult:
        touched = _as_mapping(data.get("touched_files", {}), "builder_result.touched_files")
        return cls(
            subtasks_completed=_as_str_tuple(
                data.get("subtasks_completed", ()), "builder_result.subtasks_completed"
            ),
            touched_files=TouchedFiles(
                **{
                    kind.value: _as_str_tuple(
                        touched.get(kind.value, ()), f"builder_result.touched_files.{kind.value}"
                    )
                    for kind in ChangeType
                }
            ),
            verification_commands_run=_as_str_tuple(
                data.get("verification_commands_run", ()),
                "builder_result.verification_commands_run",
            ),
            notes=_as_str(data.get("notes", ""), "builder_result.notes", min_len=0),
            blockers=_as_str_tuple(data.get("blockers", ()), "builder_result.blockers"),
        )


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(value))


__all__ = [
    "BuilderDirectives",
    "BuilderResult",
    "ChangeType",
    "DiffLimits",
    "JSONValue",
    "Task",
    "TaskKind",
    "TaskQuestion",
    "TaskScope",
    "TouchedFiles",
    "VerificationPlan",
]
