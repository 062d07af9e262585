"""
relais — report codes and per-phase outcome variants

File: src/relais/domain/codes.py
Last updated: 2026-10-18

Purpose
- Define the closed report-code set persisted in REPORT.json and BLOCKED.json.
- Restrict which codes each phase may produce through tagged outcome types.

Functional requirements
- STOP codes mean "retry later is safe"; BLOCKED codes mean "operator action required".
- The flat ``ReportCode`` value is only used at the serialization boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final


class Verdict(StrEnum):
    """Terminal verdict of a tick."""

    SUCCESS = "success"
    STOP = "stop"
    BLOCKED = "blocked"


class ReportCode(StrEnum):
    """Closed set of terminal report codes."""

    SUCCESS = "SUCCESS"

    STOP_SCOPE_VIOLATION_FORBIDDEN = "STOP_SCOPE_VIOLATION_FORBIDDEN"
    STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED = "STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED"
    STOP_SCOPE_VIOLATION_NEW_FILE = "STOP_SCOPE_VIOLATION_NEW_FILE"
    STOP_LOCKFILE_CHANGE_FORBIDDEN = "STOP_LOCKFILE_CHANGE_FORBIDDEN"
    STOP_DIFF_TOO_LARGE = "STOP_DIFF_TOO_LARGE"
    STOP_VERIFY_FAILED_FAST = "STOP_VERIFY_FAILED_FAST"
    STOP_VERIFY_FAILED_SLOW = "STOP_VERIFY_FAILED_SLOW"
    STOP_VERIFY_TAINTED = "STOP_VERIFY_TAINTED"
    STOP_VERIFY_ONLY_SIDE_EFFECTS = "STOP_VERIFY_ONLY_SIDE_EFFECTS"
    STOP_QUESTION_SIDE_EFFECTS = "STOP_QUESTION_SIDE_EFFECTS"
    STOP_RUNNER_OWNED_MUTATION = "STOP_RUNNER_OWNED_MUTATION"
    STOP_BUILDER_OUTPUT_INVALID = "STOP_BUILDER_OUTPUT_INVALID"
    STOP_HEAD_MOVED = "STOP_HEAD_MOVED"
    STOP_INTERRUPTED = "STOP_INTERRUPTED"
    STOP_REVIEWER_FORCED_PATCH = "STOP_REVIEWER_FORCED_PATCH"
    STOP_REVIEWER_ASK_QUESTION = "STOP_REVIEWER_ASK_QUESTION"
    STOP_REDISPATCH_IDENTICAL_TASK = "STOP_REDISPATCH_IDENTICAL_TASK"
    STOP_VERIFY_FLAKY_OR_TIMEOUT = "STOP_VERIFY_FLAKY_OR_TIMEOUT"
    STOP_ORCHESTRATOR_TIMEOUT = "STOP_ORCHESTRATOR_TIMEOUT"
    STOP_MERGE_DIRTY_WORKTREE = "STOP_MERGE_DIRTY_WORKTREE"
    STOP_BRANCH_MISMATCH = "STOP_BRANCH_MISMATCH"
    STOP_EVIDENCE_INCOMPLETE = "STOP_EVIDENCE_INCOMPLETE"

    BLOCKED_BUDGET_EXHAUSTED = "BLOCKED_BUDGET_EXHAUSTED"
    BLOCKED_BUDGET_CAP = "BLOCKED_BUDGET_CAP"
    BLOCKED_DIRTY_WORKTREE = "BLOCKED_DIRTY_WORKTREE"
    BLOCKED_LOCK_HELD = "BLOCKED_LOCK_HELD"
    BLOCKED_CRASH_RECOVERY_REQUIRED = "BLOCKED_CRASH_RECOVERY_REQUIRED"
    BLOCKED_ORCHESTRATOR_OUTPUT_INVALID = "BLOCKED_ORCHESTRATOR_OUTPUT_INVALID"
    BLOCKED_HISTORY_CAP_CLEANUP_REQUIRED = "BLOCKED_HISTORY_CAP_CLEANUP_REQUIRED"
    BLOCKED_MISSING_CONFIG = "BLOCKED_MISSING_CONFIG"
    BLOCKED_TRANSPORT_STALLED = "BLOCKED_TRANSPORT_STALLED"

    @property
    def is_blocked(self) -> bool:
        return self.value.startswith("BLOCKED_")

    @property
    def is_stop(self) -> bool:
        return self.value.startswith("STOP_")

    @property
    def verdict(self) -> Verdict:
        if self.is_blocked:
            return Verdict.BLOCKED
        if self.is_stop:
            return Verdict.STOP
        return Verdict.SUCCESS


STOP_CODES: Final[frozenset[ReportCode]] = frozenset(c for c in ReportCode if c.is_stop)
BLOCKED_CODES: Final[frozenset[ReportCode]] = frozenset(c for c in ReportCode if c.is_blocked)

MERGE_CODES: Final[frozenset[ReportCode]] = frozenset(
    {
        ReportCode.SUCCESS,
        ReportCode.STOP_BRANCH_MISMATCH,
        ReportCode.STOP_MERGE_DIRTY_WORKTREE,
        ReportCode.STOP_EVIDENCE_INCOMPLETE,
    }
)


@dataclass(frozen=True, slots=True)
class PreflightOutcome:
    """Outcome of a preflight stage; only BLOCKED codes are reachable."""

    code: ReportCode
    reason: str
    diagnostics: dict[str, Any] | None = None
    remediation: str | None = None

    def __post_init__(self) -> None:
        if self.code not in BLOCKED_CODES:
            raise ValueError(f"preflight outcome requires a BLOCKED code, got {self.code}")


@dataclass(frozen=True, slots=True)
class JudgeOutcome:
    """Outcome of a guardrail or judge step; SUCCESS or a STOP code."""

    code: ReportCode
    reason: str = ""
    violations: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.code is not ReportCode.SUCCESS and self.code not in STOP_CODES:
            raise ValueError(f"judge outcome requires SUCCESS or a STOP code, got {self.code}")

    @property
    def ok(self) -> bool:
        return self.code is ReportCode.SUCCESS

    @classmethod
    def passed(cls, reason: str = "") -> JudgeOutcome:
        return cls(code=ReportCode.SUCCESS, reason=reason)


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    """Outcome of a merge attempt."""

    code: ReportCode
    reasons: tuple[str, ...]
    merged_head: str | None = None

    def __post_init__(self) -> None:
        if self.code not in MERGE_CODES:
            raise ValueError(f"merge outcome cannot carry {self.code}")

    @property
    def ok(self) -> bool:
        return self.code is ReportCode.SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code.value,
            "reasons": list(self.reasons),
            "merged_head": self.merged_head,
        }


__all__ = [
    "BLOCKED_CODES",
    "JudgeOutcome",
    "MERGE_CODES",
    "MergeOutcome",
    "PreflightOutcome",
    "ReportCode",
    "STOP_CODES",
    "Verdict",
]
