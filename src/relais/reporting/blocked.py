"""
relais — BLOCKED.json emitter

File: src/relais/reporting/blocked.py
Last updated: 2026-10-18

Purpose
- Explain, with an operator remediation, why a tick could not safely start or continue.

Functional requirements
- Every BLOCKED code maps to a static remediation; an explicit one may override it.
- The remediation is never empty.
- Writes are atomic; deletion of a stale file is best-effort and ignores a missing file.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from relais.domain.codes import BLOCKED_CODES, PreflightOutcome, ReportCode
from relais.domain.ids import utc_now_iso
from relais.utils.fs import atomic_write_json, remove_if_exists

FALLBACK_REMEDIATION: Final[str] = "Inspect the tick log and REPORT history, then rerun the tick."

REMEDIATION_MESSAGES: Final[Mapping[ReportCode, str]] = {
    ReportCode.BLOCKED_MISSING_CONFIG: (
        "Create or fix relais.toml in the repository root and make sure every agent command "
        "and the goal are configured. Remove tracked symlinks that point outside the repository."
    ),
    ReportCode.BLOCKED_DIRTY_WORKTREE: (
        "Commit or stash all uncommitted changes and remove untracked files. "
        "The worktree must be clean before running a tick."
    ),
    ReportCode.BLOCKED_LOCK_HELD: (
        "Another tick is running in this workspace. Wait for it to finish; if its process "
        "is gone, remove the lock file manually."
    ),
    ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED: (
        "A previous tick did not shut down cleanly. Inspect the working tree, then remove the "
        "stale lock file, TICK.json, or the corrupt state file named in the reason."
    ),
    ReportCode.BLOCKED_BUDGET_EXHAUSTED: (
        "The milestone's soft budget is used up. Raise budgets.soft_per_milestone or move "
        "to the next milestone."
    ),
    ReportCode.BLOCKED_BUDGET_CAP: (
        "The milestone reached its hard budget ceiling. Review progress before raising "
        "budgets.per_milestone."
    ),
    ReportCode.BLOCKED_HISTORY_CAP_CLEANUP_REQUIRED: (
        "The history directory exceeds history.max_mb. Delete or archive old run directories "
        "to free space."
    ),
    ReportCode.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID: (
        "The planning agent returned output that is not a valid task. Check the diagnostics "
        "and the orchestrator command configuration."
    ),
    ReportCode.BLOCKED_TRANSPORT_STALLED: (
        "A transport stall was detected (stalled connection, timeout or hung CLI). Check "
        "network connectivity and the agent service status, then retry. Quote the request id "
        "when reporting the problem."
    ),
}


@dataclass(frozen=True, slots=True)
class BlockedData:
    code: ReportCode
    reason: str
    remediation: str
    blocked_at: str
    diagnostics: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "blocked_at": self.blocked_at,
            "code": self.code.value,
            "reason": self.reason,
            "remediation": self.remediation,
        }
        if self.diagnostics:
            payload["diagnostics"] = dict(self.diagnostics)
        return payload


def remediation_for(code: ReportCode) -> str:
    return REMEDIATION_MESSAGES.get(code, FALLBACK_REMEDIATION)


def build_blocked_data(
    code: ReportCode,
    reason: str,
    *,
    remediation: str | None = None,
    diagnostics: Mapping[str, Any] | None = None,
    blocked_at: str | None = None,
) -> BlockedData:
    if code not in BLOCKED_CODES:
        raise ValueError(f"BLOCKED.json requires a BLOCKED code, got {code}")
    explicit = (remediation or "").strip()
    return BlockedData(
        code=code,
        reason=reason,
        remediation=explicit or remediation_for(code),
        blocked_at=blocked_at or utc_now_iso(),
        diagnostics=diagnostics,
    )


def blocked_from_outcome(outcome: PreflightOutcome) -> BlockedData:
    return build_blocked_data(
        outcome.code,
        outcome.reason,
        remediation=outcome.remediation,
        diagnostics=outcome.diagnostics,
    )


def write_blocked(data: BlockedData, path: Path) -> None:
    atomic_write_json(path, data.to_dict())


def clear_blocked(path: Path) -> bool:
    return remove_if_exists(path)


__all__ = [
    "BlockedData",
    "FALLBACK_REMEDIATION",
    "REMEDIATION_MESSAGES",
    "blocked_from_outcome",
    "build_blocked_data",
    "clear_blocked",
    "remediation_for",
    "write_blocked",
]
