"""Pure guardrail predicates evaluated during JUDGE and at merge time."""

from __future__ import annotations

from typing import TYPE_CHECKING

from relais.domain.codes import JudgeOutcome, ReportCode
from relais.domain.models import TaskKind
from relais.guardrails.fingerprint import task_fingerprint

if TYPE_CHECKING:
    from relais.domain.models import DiffLimits, Task
    from relais.integration_plane.git_engine import DiffSummary


def check_redispatch(task: Task, last_failed_fingerprint: str | None) -> JudgeOutcome:
    """Reject a task whose fingerprint equals the last failed one."""

    if last_failed_fingerprint and task_fingerprint(task) == last_failed_fingerprint:
        return JudgeOutcome(
            code=ReportCode.STOP_REDISPATCH_IDENTICAL_TASK,
            reason=(
                f"task {task.task_id} fingerprint matches the last failed task; "
                "identical re-dispatch detected"
            ),
            details={"fingerprint": last_failed_fingerprint},
        )
    return JudgeOutcome.passed()


def check_side_effects(task_kind: TaskKind, diff: DiffSummary) -> JudgeOutcome:
    """verify_only and question tasks must leave the working tree untouched."""

    if diff.is_empty or task_kind is TaskKind.EXECUTE:
        return JudgeOutcome.passed()
    code = (
        ReportCode.STOP_VERIFY_ONLY_SIDE_EFFECTS
        if task_kind is TaskKind.VERIFY_ONLY
        else ReportCode.STOP_QUESTION_SIDE_EFFECTS
    )
    return JudgeOutcome(
        code=code,
        reason=f"{task_kind.value} task modified {diff.files_touched} file(s)",
        violations=diff.paths,
    )


def check_diff_limits(diff: DiffSummary, limits: DiffLimits) -> JudgeOutcome:
    lines_changed = diff.lines_added + diff.lines_deleted
    problems: list[str] = []
    if diff.files_touched > limits.max_files_touched:
        problems.append(f"files touched {diff.files_touched} > {limits.max_files_touched}")
    if lines_changed > limits.max_lines_changed:
        problems.append(f"lines changed {lines_changed} > {limits.max_lines_changed}")
    if not problems:
        return JudgeOutcome.passed()
    return JudgeOutcome(
        code=ReportCode.STOP_DIFF_TOO_LARGE,
        reason="; ".join(problems),
        details={"files_touched": diff.files_touched, "lines_changed": lines_changed},
    )


def check_head_unchanged(base_commit: str | None, head_commit: str) -> JudgeOutcome:
    if base_commit is not None and base_commit != head_commit:
        return JudgeOutcome(
            code=ReportCode.STOP_HEAD_MOVED,
            reason=f"HEAD moved from {base_commit[:12]} to {head_commit[:12]} during the tick",
        )
    return JudgeOutcome.passed()


def check_worktree_clean(is_clean: bool) -> JudgeOutcome:
    if not is_clean:
        return JudgeOutcome(
            code=ReportCode.STOP_MERGE_DIRTY_WORKTREE,
            reason="git worktree has uncommitted changes or untracked files",
        )
    return JudgeOutcome.passed()


def check_branch_match(expected: str | None, current: str) -> JudgeOutcome:
    if expected is not None and expected != current:
        return JudgeOutcome(
            code=ReportCode.STOP_BRANCH_MISMATCH,
            reason=f"current branch {current!r} does not match expected branch {expected!r}",
        )
    return JudgeOutcome.passed()


__all__ = [
    "check_branch_match",
    "check_diff_limits",
    "check_head_unchanged",
    "check_redispatch",
    "check_side_effects",
    "check_worktree_clean",
]
