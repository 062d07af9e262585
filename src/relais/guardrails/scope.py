"""
relais — scope enforcement for builder effects

File: src/relais/guardrails/scope.py
Last updated: 2026-10-18

Purpose
- Check every touched path against a task's scope declaration.

Functional requirements
- Runner-owned paths are never writable by the builder.
- Forbidden globs win over allowed globs unless precedence is configured as ``allowed``.
- An empty allowed list means "anything not forbidden".
- Bare lockfile names match by path suffix; names containing ``/`` or ``*`` match as globs.
- All violations are collected; the reported code follows a fixed priority.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final

from relais.domain.codes import JudgeOutcome, ReportCode

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from relais.domain.models import TaskScope


class ScopePrecedence(StrEnum):
    FORBIDDEN = "forbidden"
    ALLOWED = "allowed"


class ViolationKind(StrEnum):
    RUNNER_OWNED = "runner_owned"
    FORBIDDEN = "forbidden"
    OUTSIDE_ALLOWED = "outside_allowed"
    NEW_FILE = "new_file"
    LOCKFILE = "lockfile"


_CODE_BY_KIND: Final[dict[ViolationKind, ReportCode]] = {
    ViolationKind.RUNNER_OWNED: ReportCode.STOP_RUNNER_OWNED_MUTATION,
    ViolationKind.FORBIDDEN: ReportCode.STOP_SCOPE_VIOLATION_FORBIDDEN,
    ViolationKind.OUTSIDE_ALLOWED: ReportCode.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED,
    ViolationKind.NEW_FILE: ReportCode.STOP_SCOPE_VIOLATION_NEW_FILE,
    ViolationKind.LOCKFILE: ReportCode.STOP_LOCKFILE_CHANGE_FORBIDDEN,
}

# Enum declaration order is the reporting priority.
_PRIORITY: Final[tuple[ViolationKind, ...]] = tuple(ViolationKind)


@dataclass(frozen=True, slots=True)
class ScopeViolation:
    kind: ViolationKind
    path: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "path": self.path, "detail": self.detail}


@dataclass(frozen=True, slots=True)
class ScopeCheckResult:
    """All violations found for a set of touched paths."""

    violations: tuple[ScopeViolation, ...]
    touched_paths: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return not self.violations

    def outcome(self) -> JudgeOutcome:
        if self.ok:
            return JudgeOutcome.passed("all touched paths are within scope")
        for kind in _PRIORITY:
            matching = [item for item in self.violations if item.kind is kind]
            if matching:
                return JudgeOutcome(
                    code=_CODE_BY_KIND[kind],
                    reason=matching[0].detail
                    + (f" (+{len(matching) - 1} more)" if len(matching) > 1 else ""),
                    violations=tuple(item.path for item in matching),
                    details={"violations": [item.to_dict() for item in self.violations]},
                )
        raise AssertionError("unreachable: violation kind without priority")

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "violations": [item.to_dict() for item in self.violations],
            "touched_paths": list(self.touched_paths),
        }


def normalize_path(path: str) -> str:
    normalized = PurePosixPath(path.replace("\\", "/")).as_posix()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def matches_glob(path: str, patterns: Iterable[str]) -> bool:
    candidate = normalize_path(path)
    return any(fnmatchcase(candidate, normalize_path(pattern)) for pattern in patterns)


def is_lockfile(path: str, lockfiles: Sequence[str]) -> bool:
    candidate = normalize_path(path)
    for lockfile in lockfiles:
        if "/" not in lockfile and "*" not in lockfile:
            if candidate == lockfile or candidate.endswith(f"/{lockfile}"):
                return True
        elif fnmatchcase(candidate, normalize_path(lockfile)):
            return True
    return False


def check_scope(
    touched_paths: Sequence[str],
    untracked_paths: Sequence[str],
    scope: TaskScope,
    *,
    lockfiles: Sequence[str] = (),
    runner_owned_globs: Sequence[str] = (),
    precedence: ScopePrecedence | str = ScopePrecedence.FORBIDDEN,
) -> ScopeCheckResult:
    """Check touched (modified) and untracked (new) paths against ``scope``."""

    order = ScopePrecedence(precedence)
    new_files = {normalize_path(path) for path in untracked_paths}
    all_paths = sorted({normalize_path(path) for path in (*touched_paths, *untracked_paths)})
    violations: list[ScopeViolation] = []

    for path in all_paths:
        if matches_glob(path, runner_owned_globs):
            violations.append(
                ScopeViolation(
                    ViolationKind.RUNNER_OWNED,
                    path,
                    f"path {path!r} is owned by the runner and must not be modified",
                )
            )
            continue

        is_forbidden = matches_glob(path, scope.forbidden_globs)
        is_allowed = matches_glob(path, scope.allowed_globs)
        if is_forbidden and not (order is ScopePrecedence.ALLOWED and is_allowed):
            violations.append(
                ScopeViolation(
                    ViolationKind.FORBIDDEN,
                    path,
                    f"path {path!r} matches forbidden glob(s): {', '.join(scope.forbidden_globs)}",
                )
            )
            continue

        if scope.allowed_globs and not is_allowed:
            violations.append(
                ScopeViolation(
                    ViolationKind.OUTSIDE_ALLOWED,
                    path,
                    f"path {path!r} does not match any allowed glob: "
                    f"{', '.join(scope.allowed_globs)}",
                )
            )

        if not scope.allow_new_files and path in new_files:
            violations.append(
                ScopeViolation(
                    ViolationKind.NEW_FILE,
                    path,
                    f"new file {path!r} created but allow_new_files is false",
                )
            )

        if not scope.allow_lockfile_changes and is_lockfile(path, lockfiles):
            violations.append(
                ScopeViolation(
                    ViolationKind.LOCKFILE,
                    path,
                    f"lockfile {path!r} changed but allow_lockfile_changes is false",
                )
            )

    return ScopeCheckResult(violations=tuple(violations), touched_paths=tuple(all_paths))


__all__ = [
    "ScopeCheckResult",
    "ScopePrecedence",
    "ScopeViolation",
    "ViolationKind",
    "check_scope",
    "is_lockfile",
    "matches_glob",
    "normalize_path",
]
