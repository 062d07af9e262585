"""
relais — REPORT.json and REPORT.md emitter

File: src/relais/reporting/report.py
Last updated: 2026-10-18

Purpose
- Assemble the terminal Report of a tick that reached a success or stop verdict.
- Persist it as canonical JSON and as a deterministic markdown rendering.

What should be included in this file
- ``Report`` record and ``build_report`` assembling it from tick evidence.
- ``render_report_markdown`` and ``write_report``.

Functional requirements
- A tick without a task reports ``task_id = "none"`` and ``intent = "No task assigned"``.
- Markdown output is a pure function of the report.
- BLOCKED outcomes never produce a Report; they produce BLOCKED.json instead.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from relais.domain.codes import ReportCode, Verdict
from relais.utils.fs import atomic_write, atomic_write_json

if TYPE_CHECKING:
    from relais.domain.state import TickState
    from relais.guardrails.scope import ScopeCheckResult
    from relais.integration_plane.git_engine import DiffSummary
    from relais.verification.runner import VerificationReport

NO_TASK_ID: Final[str] = "none"
NO_TASK_INTENT: Final[str] = "No task assigned"

_VERDICT_LABELS: Final[Mapping[Verdict, str]] = {
    Verdict.SUCCESS: "SUCCESS",
    Verdict.STOP: "STOP",
    Verdict.BLOCKED: "BLOCKED",
}


@dataclass(frozen=True, slots=True)
class Report:
    """Immutable terminal record of one tick."""

    run_id: str
    started_at: str
    ended_at: str
    duration_ms: int
    base_commit: str | None
    head_commit: str | None
    task: Mapping[str, str]
    verdict: Verdict
    code: ReportCode
    reason: str
    blast_radius: Mapping[str, int]
    scope: Mapping[str, Any]
    verification: Mapping[str, Any]
    budgets: Mapping[str, Any]
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    evidence: Mapping[str, str] = field(default_factory=dict)
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "base_commit": self.base_commit,
            "head_commit": self.head_commit,
            "task": dict(self.task),
            "verdict": self.verdict.value,
            "code": self.code.value,
            "reason": self.reason,
            "blast_radius": dict(self.blast_radius),
            "scope": dict(self.scope),
            "verification": dict(self.verification),
            "budgets": dict(self.budgets),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "evidence": dict(self.evidence),
            "details": dict(self.details),
        }


def build_report(
    tick: TickState,
    *,
    code: ReportCode,
    reason: str,
    ended_at: str,
    head_commit: str | None,
    budgets: Mapping[str, Any],
    diff: DiffSummary | None = None,
    scope: ScopeCheckResult | None = None,
    verification: VerificationReport | None = None,
    evidence: Mapping[str, str] | None = None,
    details: Mapping[str, Any] | None = None,
) -> Report:
    if code.is_blocked:
        raise ValueError(f"{code} is reported through BLOCKED.json, not REPORT.json")

    if tick.task is not None:
        task = {
            "task_id": tick.task.task_id,
            "milestone_id": tick.task.milestone_id,
            "task_kind": tick.task.task_kind.value,
            "intent": tick.task.intent,
        }
    else:
        task = {
            "task_id": NO_TASK_ID,
            "milestone_id": NO_TASK_ID,
            "task_kind": NO_TASK_ID,
            "intent": NO_TASK_INTENT,
        }

    blast_radius = (
        diff.blast_radius()
        if diff is not None
        else {"files_touched": 0, "lines_added": 0, "lines_deleted": 0, "new_files": 0}
    )
    scope_payload: dict[str, Any] = (
        scope.to_dict()
        if scope is not None
        else {"ok": True, "violations": [], "touched_paths": []}
    )
    verification_payload: dict[str, Any] = (
        verification.to_dict()
        if verification is not None
        else {"exec_mode": "argv_no_shell", "runs": [], "verify_log_path": ""}
    )

    return Report(
        run_id=tick.run_id,
        started_at=tick.started_at,
        ended_at=ended_at,
        duration_ms=_duration_ms(tick.started_at, ended_at),
        base_commit=tick.base_commit,
        head_commit=head_commit,
        task=task,
        verdict=code.verdict,
        code=code,
        reason=reason,
        blast_radius=blast_radius,
        scope=scope_payload,
        verification=verification_payload,
        budgets=dict(budgets),
        warnings=tuple(tick.warnings),
        errors=tuple(tick.errors),
        evidence=dict(evidence or {}),
        details=dict(details or {}),
    )


def render_report_markdown(report: Report) -> str:
    lines: list[str] = [
        "# Relais Tick Report",
        "",
        "## Summary",
        "",
        f"- **Run ID**: {report.run_id}",
        f"- **Started**: {report.started_at}",
        f"- **Ended**: {report.ended_at}",
        f"- **Duration**: {report.duration_ms}ms",
        f"- **Verdict**: {_VERDICT_LABELS[report.verdict]} ({report.code.value})",
        f"- **Reason**: {report.reason or '-'}",
        f"- **Base Commit**: {report.base_commit or '-'}",
        f"- **Head Commit**: {report.head_commit or '-'}",
        "",
        "## Task",
        "",
        f"- **Task ID**: {report.task.get('task_id', NO_TASK_ID)}",
        f"- **Milestone**: {report.task.get('milestone_id', NO_TASK_ID)}",
        f"- **Kind**: {report.task.get('task_kind', NO_TASK_ID)}",
        f"- **Intent**: {report.task.get('intent', NO_TASK_INTENT)}",
        "",
        "## Blast Radius",
        "",
        f"- **Files Touched**: {report.blast_radius.get('files_touched', 0)}",
        f"- **Lines Added**: {report.blast_radius.get('lines_added', 0)}",
        f"- **Lines Deleted**: {report.blast_radius.get('lines_deleted', 0)}",
        f"- **New Files**: {report.blast_radius.get('new_files', 0)}",
        "",
        "## Scope",
        "",
    ]

    violations: Sequence[Mapping[str, str]] = report.scope.get("violations", [])
    if report.scope.get("ok", True):
        lines.append("OK - no violations")
    else:
        lines.append("Violations:")
        lines.extend(f"- `{item['path']}`: {item['detail']}" for item in violations)
    touched: Sequence[str] = report.scope.get("touched_paths", [])
    if touched:
        lines.extend(["", "Touched paths:"])
        lines.extend(f"- `{path}`" for path in touched)

    lines.extend(["", "## Verification", ""])
    runs: Sequence[Mapping[str, Any]] = report.verification.get("runs", [])
    if not runs:
        lines.append("No verification runs.")
    else:
        lines.append("| Template | Tier | Exit | Duration (ms) |")
        lines.append("|---|---|---|---|")
        for run in runs:
            exit_text = "timeout" if run.get("timed_out") else str(run.get("exit_code"))
            lines.append(
                f"| {run['template_id']} | {run['tier']} | {exit_text} | {run['duration_ms']} |"
            )
    log_path = report.verification.get("verify_log_path")
    if log_path:
        lines.extend(["", f"Log: `{log_path}`"])

    lines.extend(["", "## Budgets", ""])
    lines.append(f"- **Milestone**: {report.budgets.get('milestone_id') or NO_TASK_ID}")
    counters: Mapping[str, int] = report.budgets.get("counters", {})
    lines.extend(f"- **{name}**: {value}" for name, value in sorted(counters.items()))
    if report.budgets.get("warning"):
        lines.append("- **Warning**: budget usage crossed the warning threshold")

    if report.warnings:
        lines.extend(["", "## Warnings", ""])
        lines.extend(f"- {item}" for item in report.warnings)
    if report.errors:
        lines.extend(["", "## Errors", ""])
        lines.extend(f"- {item}" for item in report.errors)
    return "\n".join(lines) + "\n"


def write_report(report: Report, *, json_path: Path, markdown_path: Path) -> None:
    atomic_write_json(json_path, report.to_dict())
    atomic_write(markdown_path, render_report_markdown(report))


def _duration_ms(started_at: str, ended_at: str) -> int:
    try:
        start = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
        end = datetime.fromisoformat(ended_at.replace("Z", "+00:00"))
    except ValueError:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


__all__ = [
    "NO_TASK_ID",
    "NO_TASK_INTENT",
    "Report",
    "build_report",
    "render_report_markdown",
    "write_report",
]
