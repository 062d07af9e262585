"""Guardrails: fingerprinting, scope enforcement and post-hoc judge predicates."""

from __future__ import annotations

from relais.guardrails.checks import (
    check_branch_match,
    check_diff_limits,
    check_head_unchanged,
    check_redispatch,
    check_side_effects,
    check_worktree_clean,
)
from relais.guardrails.fingerprint import compute_fingerprint, task_fingerprint
from relais.guardrails.scope import ScopeCheckResult, ScopePrecedence, check_scope

__all__ = [
    "ScopeCheckResult",
    "ScopePrecedence",
    "check_branch_match",
    "check_diff_limits",
    "check_head_unchanged",
    "check_redispatch",
    "check_scope",
    "check_side_effects",
    "check_worktree_clean",
    "compute_fingerprint",
    "task_fingerprint",
]
