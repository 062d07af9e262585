"""
relais — persisted and per-tick state records

File: src/relais/domain/state.py
Last updated: 2026-10-18

Purpose
- WorkspaceState (STATE.json): milestone budgets, last verdict, verify history.
- GuardrailState (GUARDRAILS.json): branch and last failed fingerprint across ticks.
- TickState (TICK.json): exclusively owned by one tick, deleted at END.
- LockInfo (tick.lock): owner identity for crash-residue detection.

Functional requirements
- Budget counters only ever increase within a milestone.
- Histories are bounded so STATE.json stays small.
- Tick phases advance in one direction only.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING, Any, Final

from relais.errors import PhaseTransitionError

if TYPE_CHECKING:
    from relais.domain.models import BuilderResult, Task

VERIFY_HISTORY_LIMIT: Final[int] = 50
STOP_HISTORY_LIMIT: Final[int] = 50

BUDGET_COUNTERS: Final[tuple[str, ...]] = (
    "ticks",
    "orchestrator_calls",
    "builder_calls",
    "verify_runs",
)


class VerifyResult(StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"


class TickPhase(IntEnum):
    """Phases of a tick; integer order is the only legal direction of travel."""

    LOCK = 0
    PREFLIGHT = 1
    ORCHESTRATE = 2
    REVIEW = 3
    BUILD = 4
    JUDGE = 5
    REPORT = 6
    END = 7


@dataclass(frozen=True, slots=True)
class BudgetCounters:
    ticks: int = 0
    orchestrator_calls: int = 0
    builder_calls: int = 0
    verify_runs: int = 0

    def plus(self, deltas: BudgetCounters) -> BudgetCounters:
        return BudgetCounters(
            **{name: getattr(self, name) + getattr(deltas, name) for name in BUDGET_COUNTERS}
        )

    def to_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in BUDGET_COUNTERS}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BudgetCounters:
        values: dict[str, int] = {}
        for name in BUDGET_COUNTERS:
            raw = data.get(name, 0)
            if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
                raise ValueError(f"budgets.{name}: expected non-negative integer")
            values[name] = raw
        return cls(**values)


@dataclass(frozen=True, slots=True)
class VerifyHistoryEntry:
    run_id: str
    task_id: str
    result: VerifyResult
    at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "result": self.result.value,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> VerifyHistoryEntry:
        return cls(
            run_id=str(data["run_id"]),
            task_id=str(data["task_id"]),
            result=VerifyResult(str(data["result"])),
            at=str(data["at"]),
        )


@dataclass(frozen=True, slots=True)
class StopHistoryEntry:
    run_id: str
    code: str
    at: str

    def to_dict(self) -> dict[str, str]:
        return {"run_id": self.run_id, "code": self.code, "at": self.at}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StopHistoryEntry:
        return cls(run_id=str(data["run_id"]), code=str(data["code"]), at=str(data["at"]))


@dataclass(frozen=True, slots=True)
class WorkspaceState:
    """Cross-tick workspace progress persisted in STATE.json."""

    milestone_id: str | None = None
    budgets: BudgetCounters = field(default_factory=BudgetCounters)
    budget_warning: bool = False
    last_run_id: str | None = None
    last_verdict: str | None = None
    verify_history: tuple[VerifyHistoryEntry, ...] = ()
    roadmap_pointer: str | None = None

    def ensure_milestone(self, milestone_id: str) -> tuple[WorkspaceState, bool]:
        """Switch to ``milestone_id``, resetting budgets when it changes."""

        if self.milestone_id == milestone_id:
            return self, False
        return (
            replace(
                self,
                milestone_id=milestone_id,
                budgets=BudgetCounters(),
                budget_warning=False,
            ),
            True,
        )

    def apply_deltas(self, deltas: BudgetCounters) -> WorkspaceState:
        return replace(self, budgets=self.budgets.plus(deltas))

    def record_verify(self, entry: VerifyHistoryEntry) -> WorkspaceState:
        history = (*self.verify_history, entry)[-VERIFY_HISTORY_LIMIT:]
        return replace(self, verify_history=history)

    def has_pass_for(self, task_id: str) -> bool:
        return any(
            item.task_id == task_id and item.result is VerifyResult.PASS
            for item in self.verify_history
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "milestone_id": self.milestone_id,
            "budgets": self.budgets.to_dict(),
            "budget_warning": self.budget_warning,
            "last_run_id": self.last_run_id,
            "last_verdict": self.last_verdict,
            "verify_history": [entry.to_dict() for entry in self.verify_history],
            "roadmap_pointer": self.roadmap_pointer,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkspaceState:
        raw_budgets = data.get("budgets", {})
        if not isinstance(raw_budgets, Mapping):
            raise ValueError("budgets: expected object")
        raw_history = data.get("verify_history", [])
        if not isinstance(raw_history, list):
            raise ValueError("verify_history: expected array")
        return cls(
            milestone_id=_optional_str(data.get("milestone_id")),
            budgets=BudgetCounters.from_dict(raw_budgets),
            budget_warning=bool(data.get("budget_warning", False)),
            last_run_id=_optional_str(data.get("last_run_id")),
            last_verdict=_optional_str(data.get("last_verdict")),
            verify_history=tuple(VerifyHistoryEntry.from_dict(item) for item in raw_history),
            roadmap_pointer=_optional_str(data.get("roadmap_pointer")),
        )


@dataclass(frozen=True, slots=True)
class GuardrailState:
    """Cross-tick guardrail memory persisted in GUARDRAILS.json."""

    branch: str | None = None
    last_failed_fingerprint: str | None = None
    failure_streak: int = 0
    stop_history: tuple[StopHistoryEntry, ...] = ()

    def record_failure(self, fingerprint: str | None, entry: StopHistoryEntry) -> GuardrailState:
        return replace(
            self,
            last_failed_fingerprint=fingerprint
            if fingerprint is not None
            else self.last_failed_fingerprint,
            failure_streak=self.failure_streak + 1,
            stop_history=(*self.stop_history, entry)[-STOP_HISTORY_LIMIT:],
        )

    def record_success(self) -> GuardrailState:
        return replace(self, last_failed_fingerprint=None, failure_streak=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "last_failed_fingerprint": self.last_failed_fingerprint,
            "failure_streak": self.failure_streak,
            "stop_history": [entry.to_dict() for entry in self.stop_history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GuardrailState:
        raw_history = data.get("stop_history", [])
        if not isinstance(raw_history, list):
            raise ValueError("stop_history: expected array")
        streak = data.get("failure_streak", 0)
        return cls(
            branch=_optional_str(data.get("branch")),
            last_failed_fingerprint=_optional_str(data.get("last_failed_fingerprint")),
            failure_streak=(
                streak if isinstance(streak, int) and not isinstance(streak, bool) else 0
            ),
            stop_history=tuple(StopHistoryEntry.from_dict(item) for item in raw_history),
        )


@dataclass(frozen=True, slots=True)
class LockInfo:
    pid: int
    started_at: str
    boot_id: str

    def to_dict(self) -> dict[str, object]:
        return {"pid": self.pid, "started_at": self.started_at, "boot_id": self.boot_id}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> LockInfo:
        pid = data.get("pid")
        started_at = data.get("started_at")
        boot_id = data.get("boot_id")
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            raise ValueError("lock.pid: expected positive integer")
        if not isinstance(started_at, str) or not isinstance(boot_id, str):
            raise ValueError("lock.started_at/boot_id: expected strings")
        return cls(pid=pid, started_at=started_at, boot_id=boot_id)


@dataclass(slots=True)
class TickState:
    """Mutable record owned by exactly one running tick."""

    run_id: str
    started_at: str
    config_snapshot: Mapping[str, Any]
    phase: TickPhase = TickPhase.LOCK
    base_commit: str | None = None
    task: Task | None = None
    builder_result: BuilderResult | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    deltas: BudgetCounters = field(default_factory=BudgetCounters)

    def advance(self, phase: TickPhase) -> None:
        if phase <= self.phase:
            raise PhaseTransitionError(
                f"illegal transition {self.phase.name} -> {phase.name}; phases never repeat"
            )
        self.phase = phase

    def count(self, counter: str, amount: int = 1) -> None:
        if counter not in BUDGET_COUNTERS:
            raise ValueError(f"unknown budget counter {counter!r}")
        self.deltas = replace(self.deltas, **{counter: getattr(self.deltas, counter) + amount})

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "phase": self.phase.name,
            "base_commit": self.base_commit,
            "task": self.task.to_dict() if self.task is not None else None,
            "builder_result": (
                self.builder_result.to_dict() if self.builder_result is not None else None
            ),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "deltas": self.deltas.to_dict(),
        }


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected string or null, got {type(value).__name__}")
    return value


__all__ = [
    "BUDGET_COUNTERS",
    "BudgetCounters",
    "GuardrailState",
    "LockInfo",
    "STOP_HISTORY_LIMIT",
    "StopHistoryEntry",
    "TickPhase",
    "TickState",
    "VERIFY_HISTORY_LIMIT",
    "VerifyHistoryEntry",
    "VerifyResult",
    "WorkspaceState",
]
