"""Domain records: report codes, tasks, builder results and persisted state."""

from __future__ import annotations

from relais.domain.codes import (
    BLOCKED_CODES,
    STOP_CODES,
    JudgeOutcome,
    MergeOutcome,
    PreflightOutcome,
    ReportCode,
    Verdict,
)
from relais.domain.models import (
    BuilderDirectives,
    BuilderResult,
    ChangeType,
    DiffLimits,
    Task,
    TaskKind,
    TaskQuestion,
    TaskScope,
    TouchedFiles,
    VerificationPlan,
)
from relais.domain.state import (
    BudgetCounters,
    GuardrailState,
    LockInfo,
    StopHistoryEntry,
    TickPhase,
    TickState,
    VerifyHistoryEntry,
    VerifyResult,
    WorkspaceState,
)

__all__ = [
    "BLOCKED_CODES",
    "BudgetCounters",
    "BuilderDirectives",
    "BuilderResult",
    "ChangeType",
    "DiffLimits",
    "GuardrailState",
    "JudgeOutcome",
    "LockInfo",
    "MergeOutcome",
    "PreflightOutcome",
    "ReportCode",
    "STOP_CODES",
    "StopHistoryEntry",
    "Task",
    "TaskKind",
    "TaskQuestion",
    "TaskScope",
    "TickPhase",
    "TickState",
    "TouchedFiles",
    "Verdict",
    "VerificationPlan",
    "VerifyHistoryEntry",
    "VerifyResult",
    "WorkspaceState",
]
