"""
relais — test suite for preflight checks.

File: tests/unit/control_plane/test_preflight.py
Last updated: 2026-10-18

Purpose
- Verify stage ordering, fail-fast BLOCKED outcomes and lock bookkeeping of preflight.

What this test file should cover
- Missing goal or agent commands, lock contention, crash residue, dirty worktree,
  escaping symlinks, budget caps, history cap, and git stalls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from relais.control_plane.budgets import BudgetTracker
from relais.control_plane.lock import TickLock
from relais.control_plane.preflight import PreflightChecker
from relais.control_plane.state_store import StateStore, WorkspacePaths
from relais.domain.codes import ReportCode
from relais.domain.state import BudgetCounters, WorkspaceState
from relais.integration_plane.git_engine import GitCommandError, GitTimeoutError, SymlinkEntry

pytestmark = pytest.mark.unit

HEAD = "c0ffee" * 6 + "abcd"


@dataclass(slots=True)
class FakeGit:
    root: Path
    dirty: tuple[str, ...] = ()
    symlinks: tuple[SymlinkEntry, ...] = ()
    not_a_repo: bool = False
    stall_on: str | None = None
    fail_on: str | None = None
    dirty_excludes: list[tuple[str, ...]] = field(default_factory=list)

    def top_level(self) -> Path:
        if self.not_a_repo:
            raise GitCommandError(
                command=["git", "rev-parse", "--show-toplevel"],
                returncode=128,
                stdout="",
                stderr="fatal: not a git repository",
            )
        return self.root

    def dirty_paths(self, *, exclude_globs: tuple[str, ...] = ()) -> tuple[str, ...]:
        self.dirty_excludes.append(tuple(exclude_globs))
        if self.stall_on == "worktree":
            raise GitTimeoutError(
                command=["git", "status"], timeout_seconds=5, stderr="ETIMEDOUT"
            )
        return self.dirty

    def tracked_symlinks(self) -> tuple[SymlinkEntry, ...]:
        if self.fail_on == "symlinks":
            raise GitCommandError(
                command=["git", "ls-files", "-s"],
                returncode=129,
                stdout="",
                stderr="fatal: index file corrupt",
            )
        return self.symlinks

    def head_commit(self) -> str:
        return HEAD


@dataclass(slots=True)
class Harness:
    checker: PreflightChecker
    git: FakeGit
    lock: TickLock
    store: StateStore


def base_config(**sections: dict[str, object]) -> dict[str, object]:
    config: dict[str, object] = {
        "goal": {"text": "Ship the parser", "file": None},
        "orchestrator": {"command": ["planner-cli"]},
        "builder": {"command": ["builder-cli"]},
        "runner": {"runner_owned_globs": [".relais/*", "relais.toml"]},
        "history": {"enabled": True, "max_mb": 10},
        "budgets": {"per_milestone": {"max_ticks": 5}},
    }
    config.update(sections)
    return config


def harness(
    tmp_path: Path,
    *,
    config: dict[str, object] | None = None,
    git: FakeGit | None = None,
    alive: bool = True,
) -> Harness:
    cfg = config if config is not None else base_config()
    paths = WorkspacePaths(repo_root=tmp_path, workspace_dir=tmp_path / ".relais")
    store = StateStore(paths)
    lock = TickLock(
        paths.lock, boot_id_provider=lambda: "boot", pid_alive=lambda _pid: alive
    )
    fake = git if git is not None else FakeGit(root=tmp_path)
    checker = PreflightChecker(
        cfg,
        git=fake,
        lock=lock,
        store=store,
        budgets=BudgetTracker(cfg.get("budgets", {})),  # type: ignore[arg-type]
    )
    return Harness(checker=checker, git=fake, lock=lock, store=store)


def test_clean_workspace_passes_and_captures_base_commit(tmp_path: Path) -> None:
    h = harness(tmp_path)
    result = h.checker.run()

    assert result.ok
    assert result.base_commit == HEAD
    assert result.lock_acquired
    assert h.lock.held
    assert result.workspace_state == WorkspaceState()
    assert result.stages_passed == (
        "config",
        "lock",
        "worktree",
        "symlinks",
        "budgets",
        "history",
    )
    assert h.git.dirty_excludes == [(".relais/*", "relais.toml")]


@pytest.mark.parametrize(
    ("patch", "fragment"),
    [
        ({"goal": {"text": "  ", "file": None}}, "no goal configured"),
        ({"orchestrator": {"command": []}}, "orchestrator.command is empty"),
        ({"builder": {}}, "builder.command is empty"),
    ],
)
def test_missing_configuration_blocks_before_the_lock(
    tmp_path: Path, patch: dict[str, dict[str, object]], fragment: str
) -> None:
    h = harness(tmp_path, config=base_config(**patch))
    result = h.checker.run()

    assert result.outcome is not None
    assert result.outcome.code is ReportCode.BLOCKED_MISSING_CONFIG
    assert fragment in result.outcome.reason
    assert not result.lock_acquired
    assert not h.lock.path.exists()
    assert result.base_commit is None


def test_goal_file_satisfies_the_goal_requirement(tmp_path: Path) -> None:
    goal_file = tmp_path / "GOAL.md"
    goal_file.write_text("Ship it\n", encoding="utf-8")
    config = base_config(goal={"text": "", "file": str(goal_file)})
    assert harness(tmp_path, config=config).checker.run().ok


def test_outside_a_git_repository_is_missing_config(tmp_path: Path) -> None:
    result = harness(tmp_path, git=FakeGit(root=tmp_path, not_a_repo=True)).checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_MISSING_CONFIG
    assert "not inside a git repository" in (result.blocked_reason or "")


def test_live_lock_holder_blocks(tmp_path: Path) -> None:
    first = harness(tmp_path)
    assert first.checker.run().ok

    second = harness(tmp_path, alive=True)
    result = second.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_LOCK_HELD
    assert not result.lock_acquired


def test_leftover_tick_file_requires_crash_recovery(tmp_path: Path) -> None:
    h = harness(tmp_path)
    h.store.paths.workspace_dir.mkdir(parents=True)
    h.store.paths.tick.write_text('{"phase": "BUILD"}', encoding="utf-8")

    result = h.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED
    assert result.lock_acquired
    assert result.stages_passed == ("config",)


def test_corrupt_state_requires_crash_recovery(tmp_path: Path) -> None:
    h = harness(tmp_path)
    h.store.paths.workspace_dir.mkdir(parents=True)
    h.store.paths.state.write_text("{not json", encoding="utf-8")

    result = h.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED
    assert result.outcome is not None
    assert result.outcome.diagnostics is not None
    assert result.outcome.diagnostics["path"] == str(h.store.paths.state)


def test_dirty_worktree_blocks(tmp_path: Path) -> None:
    h = harness(tmp_path, git=FakeGit(root=tmp_path, dirty=("src/a.py", "notes.txt")))
    result = h.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_DIRTY_WORKTREE
    assert result.outcome is not None
    assert result.outcome.diagnostics == {"dirty_paths": ["src/a.py", "notes.txt"]}
    assert result.lock_acquired


def test_escaping_symlinks_block_with_preview(tmp_path: Path) -> None:
    links = tuple(
        SymlinkEntry(path=f"link{i}", target="/etc", resolved=Path("/etc"), escapes_root=True)
        for i in range(7)
    )
    safe = SymlinkEntry(path="docs", target="site", resolved=tmp_path / "site", escapes_root=False)
    h = harness(tmp_path, git=FakeGit(root=tmp_path, symlinks=(safe, *links)))
    result = h.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_MISSING_CONFIG
    assert (result.blocked_reason or "").endswith("(+2 more)")


def test_budget_cap_blocks(tmp_path: Path) -> None:
    h = harness(tmp_path)
    h.store.save_workspace_state(
        WorkspaceState(milestone_id="M1", budgets=BudgetCounters(ticks=5))
    )
    result = h.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_BUDGET_CAP
    assert result.workspace_state is not None
    assert result.workspace_state.milestone_id == "M1"


def test_budget_warning_is_surfaced(tmp_path: Path) -> None:
    h = harness(tmp_path)
    h.store.save_workspace_state(WorkspaceState(budgets=BudgetCounters(ticks=4)))
    result = h.checker.run()
    assert result.ok
    assert result.budget_warning
    assert any("ticks" in warning for warning in result.warnings)


def test_history_over_cap_blocks_and_near_cap_warns(tmp_path: Path) -> None:
    history = tmp_path / ".relais" / "history" / "run"
    history.mkdir(parents=True)
    (history / "blob.bin").write_bytes(b"\0" * (900 * 1024))

    near = base_config(history={"enabled": True, "max_mb": 1})
    result = harness(tmp_path, config=near).checker.run()
    assert result.ok
    assert any("approaching cap" in warning for warning in result.warnings)
    (tmp_path / ".relais" / "tick.lock").unlink()

    over = base_config(history={"enabled": True, "max_mb": 0.5})
    blocked = harness(tmp_path, config=over).checker.run()
    assert blocked.blocked_code is ReportCode.BLOCKED_HISTORY_CAP_CLEANUP_REQUIRED


def test_git_timeout_is_a_transport_stall(tmp_path: Path) -> None:
    h = harness(tmp_path, git=FakeGit(root=tmp_path, stall_on="worktree"))
    result = h.checker.run()
    assert result.blocked_code is ReportCode.BLOCKED_TRANSPORT_STALLED
    assert result.outcome is not None
    assert result.outcome.diagnostics is not None
    assert result.outcome.diagnostics["stage"] == "worktree"
    assert result.lock_acquired


def test_git_failure_after_the_lock_is_blocked_with_the_lock_reported(tmp_path: Path) -> None:
    h = harness(tmp_path, git=FakeGit(root=tmp_path, fail_on="symlinks"))

    result = h.checker.run()

    assert result.blocked_code is ReportCode.BLOCKED_MISSING_CONFIG
    assert result.lock_acquired
    assert result.lock_attempted
    assert result.stages_passed == ("config", "lock", "worktree")
    assert result.outcome is not None
    diagnostics = result.outcome.diagnostics or {}
    assert diagnostics["stage"] == "symlinks"
    assert diagnostics["returncode"] == 129
    assert diagnostics["stderr"] == "fatal: index file corrupt"
    assert h.lock.release() is True
