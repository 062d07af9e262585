"""
relais — merge eligibility gate and fast-forward merge of a tick branch

File: src/relais/control_plane/merge.py
Last updated: 2026-10-18

Purpose
- Decide whether a tick branch may be merged into the integration branch.
- Perform the merge as a fast-forward only.

Functional requirements
- Eligibility aggregates every violated condition; it never short-circuits.
- An eligible result carries exactly one affirmative reason.
- The branch check runs first, then eligibility, then ``git merge --ff-only``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from relais.domain.codes import MergeOutcome, ReportCode
from relais.errors import MergeError
from relais.guardrails.checks import check_branch_match, check_worktree_clean
from relais.integration_plane.git_engine import GitEngineError

if TYPE_CHECKING:
    from relais.domain.state import GuardrailState, WorkspaceState
    from relais.integration_plane.git_engine import MergeResult


class MergeGit(Protocol):
    def current_branch(self) -> str: ...

    def is_worktree_clean(self, *, exclude_globs: Sequence[str] = ()) -> bool: ...

    def merge_ff_only(self, source_branch: str, target_branch: str) -> MergeResult: ...


@dataclass(frozen=True, slots=True)
class MergeEligibility:
    eligible: bool
    reasons: tuple[str, ...]
    codes: tuple[ReportCode, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "eligible": self.eligible,
            "reasons": list(self.reasons),
            "codes": [code.value for code in self.codes],
        }


def check_merge_eligibility(
    *,
    worktree_clean: bool,
    state: WorkspaceState,
    task_id: str | None,
) -> MergeEligibility:
    """Collect every reason the current tick may not be merged."""

    reasons: list[str] = []
    codes: list[ReportCode] = []

    clean = check_worktree_clean(worktree_clean)
    if not clean.ok:
        reasons.append(clean.reason)
        codes.append(clean.code)

    if task_id is None:
        reasons.append("no task recorded for the last tick; verification evidence is missing")
        codes.append(ReportCode.STOP_EVIDENCE_INCOMPLETE)
    elif not state.has_pass_for(task_id):
        reasons.append(f"verify_history has no PASS for task {task_id}")
        codes.append(ReportCode.STOP_EVIDENCE_INCOMPLETE)

    if reasons:
        return MergeEligibility(eligible=False, reasons=tuple(reasons), codes=tuple(codes))
    return MergeEligibility(
        eligible=True,
        reasons=(f"worktree clean and task {task_id} has a passing verification",),
    )


def merge_tick_branch(
    git: MergeGit,
    *,
    source_branch: str,
    target_branch: str,
    guardrails: GuardrailState,
    state: WorkspaceState,
    task_id: str | None,
    runner_owned_globs: Sequence[str] = (),
    logger: Any | None = None,
) -> MergeOutcome:
    """Branch check, then eligibility, then ``git merge --ff-only``."""

    log = logger if logger is not None else structlog.get_logger(__name__)

    branch = check_branch_match(guardrails.branch, git.current_branch())
    if not branch.ok:
        log.warning("merge_refused", code=branch.code.value, reason=branch.reason)
        return MergeOutcome(code=branch.code, reasons=(branch.reason,))

    eligibility = check_merge_eligibility(
        worktree_clean=git.is_worktree_clean(exclude_globs=tuple(runner_owned_globs)),
        state=state,
        task_id=task_id,
    )
    if not eligibility.eligible:
        code = eligibility.codes[0]
        log.warning("merge_refused", code=code.value, reasons=list(eligibility.reasons))
        return MergeOutcome(code=code, reasons=eligibility.reasons)

    try:
        result = git.merge_ff_only(source_branch, target_branch)
    except GitEngineError as exc:
        log.warning("merge_failed", source=source_branch, target=target_branch, error=str(exc))
        raise MergeError(
            f"fast-forward merge of {source_branch} into {target_branch} failed: {exc}"
        ) from exc

    log.info(
        "merge_completed",
        source=source_branch,
        target=target_branch,
        target_head=result.target_head,
    )
    return MergeOutcome(
        code=ReportCode.SUCCESS,
        reasons=eligibility.reasons,
        merged_head=result.target_head,
    )


__all__ = ["MergeEligibility", "MergeGit", "check_merge_eligibility", "merge_tick_branch"]
