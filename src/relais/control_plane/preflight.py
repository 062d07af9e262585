"""
relais — preflight checks gating the start of a tick

File: src/relais/control_plane/preflight.py
Last updated: 2026-10-18

Purpose
- Decide whether a tick may safely start, failing fast on the first BLOCKED condition.

What should be included in this file
- Ordered stages: config, lock, worktree, tracked symlinks, budgets, history cap.
- Crash residue detection (leftover TICK.json, corrupt STATE.json) once the lock is held.
- Conversion of git timeouts into BLOCKED_TRANSPORT_STALLED with diagnostics.
- Conversion of any other git failure into BLOCKED_MISSING_CONFIG, so a held lock is
  always handed back to the caller for release.

Functional requirements
- ``base_commit`` is captured only after every stage passes.
- Lock release on a later failure is the caller's job; ``lock_acquired`` tells it whether to.
- Transport stalls are never retried here.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from relais.agents.transport import transport_stall, truncate_raw_error
from relais.domain.codes import PreflightOutcome, ReportCode
from relais.errors import StateCorruptError
from relais.integration_plane.git_engine import (
    GitCommandError,
    GitEngineError,
    GitTimeoutError,
)
from relais.utils.fs import directory_size_bytes

if TYPE_CHECKING:
    from relais.control_plane.budgets import BudgetTracker
    from relais.control_plane.lock import TickLock
    from relais.control_plane.state_store import StateStore
    from relais.domain.state import WorkspaceState
    from relais.integration_plane.git_engine import SymlinkEntry

SYMLINK_PREVIEW_LIMIT: Final[int] = 5
HISTORY_WARN_FRACTION: Final[float] = 0.8
_BYTES_PER_MB: Final[int] = 1024 * 1024


class PreflightGit(Protocol):
    def top_level(self) -> Path: ...

    def dirty_paths(self, *, exclude_globs: Sequence[str] = ()) -> tuple[str, ...]: ...

    def tracked_symlinks(self) -> tuple[SymlinkEntry, ...]: ...

    def head_commit(self) -> str: ...


@dataclass(frozen=True, slots=True)
class PreflightResult:
    """Aggregate preflight verdict handed to the tick orchestrator."""

    ok: bool
    outcome: PreflightOutcome | None = None
    warnings: tuple[str, ...] = ()
    base_commit: str | None = None
    lock_acquired: bool = False
    workspace_state: WorkspaceState | None = None
    budget_warning: bool = False
    stages_passed: tuple[str, ...] = field(default_factory=tuple)

    @property
    def lock_attempted(self) -> bool:
        return "config" in self.stages_passed

    @property
    def blocked_code(self) -> ReportCode | None:
        return self.outcome.code if self.outcome is not None else None

    @property
    def blocked_reason(self) -> str | None:
        return self.outcome.reason if self.outcome is not None else None


class _Blocked(Exception):
    def __init__(self, outcome: PreflightOutcome) -> None:
        super().__init__(outcome.reason)
        self.outcome = outcome


class PreflightChecker:
    """Run the fail-fast preflight sequence for one tick."""

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        git: PreflightGit,
        lock: TickLock,
        store: StateStore,
        budgets: BudgetTracker,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._git = git
        self._lock = lock
        self._store = store
        self._budgets = budgets
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run(self) -> PreflightResult:
        warnings: list[str] = []
        passed: list[str] = []
        lock_acquired = False
        state: WorkspaceState | None = None
        budget_warning = False
        stage = "config"

        try:
            self._check_config()
            passed.append(stage)

            stage = "lock"
            acquisition = self._lock.acquire()
            blocked = acquisition.to_outcome()
            if blocked is not None:
                raise _Blocked(blocked)
            lock_acquired = True
            state = self._check_crash_residue()
            passed.append(stage)

            stage = "worktree"
            self._check_worktree()
            passed.append(stage)

            stage = "symlinks"
            self._check_symlinks()
            passed.append(stage)

            stage = "budgets"
            decision = self._budgets.evaluate(state.budgets)
            budget_outcome = decision.to_outcome()
            if budget_outcome is not None:
                raise _Blocked(budget_outcome)
            budget_warning = decision.warning or state.budget_warning
            if budget_warning:
                warnings.append(
                    "budget warning: approaching the milestone cap for "
                    + (", ".join(decision.warning_counters) or "one or more counters")
                )
            passed.append(stage)

            stage = "history"
            history_warning = self._check_history()
            if history_warning is not None:
                warnings.append(history_warning)
            passed.append(stage)

            stage = "base_commit"
            base_commit = self._git.head_commit()
        except _Blocked as blocked_exc:
            return self._blocked(blocked_exc.outcome, warnings, lock_acquired, state, passed)
        except GitTimeoutError as exc:
            stall = transport_stall(stage, f"{exc}\n{exc.stderr}".strip())
            outcome = PreflightOutcome(
                code=ReportCode.BLOCKED_TRANSPORT_STALLED,
                reason=f"git probe stalled during preflight stage {stage!r}",
                diagnostics=stall.to_diagnostics(),
            )
            return self._blocked(outcome, warnings, lock_acquired, state, passed)
        except GitEngineError as exc:
            outcome = _git_failure_outcome(stage, exc)
            return self._blocked(outcome, warnings, lock_acquired, state, passed)

        self._logger.info(
            "preflight_passed",
            base_commit=base_commit,
            warnings=list(warnings),
            budget_warning=budget_warning,
        )
        return PreflightResult(
            ok=True,
            warnings=tuple(warnings),
            base_commit=base_commit,
            lock_acquired=True,
            workspace_state=state,
            budget_warning=budget_warning,
            stages_passed=tuple(passed),
        )

    def _blocked(
        self,
        outcome: PreflightOutcome,
        warnings: list[str],
        lock_acquired: bool,
        state: WorkspaceState | None,
        passed: list[str],
    ) -> PreflightResult:
        self._logger.warning(
            "preflight_blocked",
            code=outcome.code.value,
            reason=outcome.reason,
            stages_passed=list(passed),
        )
        return PreflightResult(
            ok=False,
            outcome=outcome,
            warnings=tuple(warnings),
            lock_acquired=lock_acquired,
            workspace_state=state,
            stages_passed=tuple(passed),
        )

    def _check_config(self) -> None:
        try:
            root = self._git.top_level()
        except GitCommandError as exc:
            raise _Blocked(
                PreflightOutcome(
                    code=ReportCode.BLOCKED_MISSING_CONFIG,
                    reason=f"not inside a git repository: {exc.stderr.strip() or exc}",
                )
            ) from exc

        goal = self._config.get("goal", {})
        goal_text = str(goal.get("text", "")).strip()
        goal_file = goal.get("file")
        goal_path = root / goal_file if isinstance(goal_file, str) and goal_file else None
        if not goal_text and not (goal_path is not None and goal_path.is_file()):
            raise _Blocked(
                PreflightOutcome(
                    code=ReportCode.BLOCKED_MISSING_CONFIG,
                    reason="no goal configured: set goal.text or create the goal.file",
                    diagnostics={"goal_file": goal_file},
                )
            )

        for section in ("orchestrator", "builder"):
            command = self._config.get(section, {}).get("command")
            if not command:
                raise _Blocked(
                    PreflightOutcome(
                        code=ReportCode.BLOCKED_MISSING_CONFIG,
                        reason=f"{section}.command is empty",
                    )
                )

    def _check_crash_residue(self) -> WorkspaceState:
        if self._store.tick_in_flight():
            raise _Blocked(
                PreflightOutcome(
                    code=ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED,
                    reason=(
                        f"{self._store.paths.tick} exists; a previous tick ended mid-flight"
                    ),
                    diagnostics={"tick_file": str(self._store.paths.tick)},
                )
            )
        try:
            return self._store.load_workspace_state()
        except StateCorruptError as exc:
            raise _Blocked(
                PreflightOutcome(
                    code=ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED,
                    reason=str(exc),
                    diagnostics={"path": exc.path, "detail": exc.detail},
                )
            ) from exc

    def _check_worktree(self) -> None:
        runner_owned = self._config.get("runner", {}).get("runner_owned_globs", ())
        dirty = self._git.dirty_paths(exclude_globs=tuple(runner_owned))
        if dirty:
            raise _Blocked(
                PreflightOutcome(
                    code=ReportCode.BLOCKED_DIRTY_WORKTREE,
                    reason="git worktree has uncommitted changes: " + ", ".join(dirty),
                    diagnostics={"dirty_paths": list(dirty)},
                )
            )

    def _check_symlinks(self) -> None:
        offenders = [
            f"{entry.path} -> {entry.target}"
            for entry in self._git.tracked_symlinks()
            if entry.escapes_root
        ]
        if not offenders:
            return
        preview = ", ".join(offenders[:SYMLINK_PREVIEW_LIMIT])
        extra = len(offenders) - SYMLINK_PREVIEW_LIMIT
        suffix = f" (+{extra} more)" if extra > 0 else ""
        raise _Blocked(
            PreflightOutcome(
                code=ReportCode.BLOCKED_MISSING_CONFIG,
                reason=f"unsafe tracked symlink(s) escaping repository root: {preview}{suffix}",
                diagnostics={"symlinks": offenders},
            )
        )

    def _check_history(self) -> str | None:
        history = self._config.get("history", {})
        if not history.get("enabled", True):
            return None
        max_mb = float(history.get("max_mb", 200))
        size_mb = directory_size_bytes(self._store.paths.history_dir) / _BYTES_PER_MB
        if size_mb >= max_mb:
            raise _Blocked(
                PreflightOutcome(
                    code=ReportCode.BLOCKED_HISTORY_CAP_CLEANUP_REQUIRED,
                    reason=(
                        f"history directory ({size_mb:.2f} MB) exceeds cap ({max_mb:g} MB); "
                        "manual cleanup required"
                    ),
                    diagnostics={"size_mb": round(size_mb, 2), "max_mb": max_mb},
                )
            )
        if size_mb >= max_mb * HISTORY_WARN_FRACTION:
            return f"history size ({size_mb:.2f} MB) is approaching cap ({max_mb:g} MB)"
        return None


def _git_failure_outcome(stage: str, exc: GitEngineError) -> PreflightOutcome:
    diagnostics: dict[str, Any] = {"stage": stage, "error": truncate_raw_error(str(exc))}
    if isinstance(exc, GitCommandError):
        diagnostics["command"] = list(exc.command)
        diagnostics["returncode"] = exc.returncode
        diagnostics["stderr"] = truncate_raw_error(exc.stderr.strip())
    return PreflightOutcome(
        code=ReportCode.BLOCKED_MISSING_CONFIG,
        reason=f"git probe failed during preflight stage {stage!r}: {exc}",
        diagnostics=diagnostics,
    )


__all__ = [
    "HISTORY_WARN_FRACTION",
    "PreflightChecker",
    "PreflightGit",
    "PreflightResult",
    "SYMLINK_PREVIEW_LIMIT",
]
