"""
relais — test suite for the tick orchestrator.

File: tests/unit/control_plane/test_tick.py
Last updated: 2026-10-18

Purpose
- Drive complete ticks against a fake git and scripted agents and inspect what lands on disk.

What this test file should cover
- Success commits with trailers, and budgets, guardrails and history are updated.
- The reviewer gate can stop a tick before the builder runs.
- Exactly one terminal artifact per tick; preflight blocks never orchestrate.
- Interruption and unexpected crashes leave the workspace in the documented state.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

import pytest

from relais.agents.process import AgentInvocation, AgentResponse
from relais.control_plane.cancellation import CancellationToken
from relais.control_plane.lock import TickLock
from relais.control_plane.state_store import StateStore, WorkspacePaths
from relais.control_plane.tick import RUN_TRAILER, TASK_TRAILER, TickOrchestrator, TickResult
from relais.domain.codes import ReportCode, Verdict
from relais.integration_plane.git_engine import (
    ChangedFileEntry,
    CommitResult,
    DiffSummary,
    GitCommandError,
    SymlinkEntry,
)

pytestmark = pytest.mark.unit

BASE = "a" * 40
COMMITTED = "b" * 40
RUN_ID = "20261018T120000Z-0badcafe"

Step = AgentResponse | Exception | Callable[[CancellationToken], AgentResponse]


@dataclass(slots=True)
class TickGitFake:
    root: Path
    diff: DiffSummary = field(default_factory=lambda: modified())
    dirty: tuple[str, ...] = ()
    head: str = BASE
    commits: list[tuple[str, tuple[str, ...]]] = field(default_factory=list)
    excludes: list[str] = field(default_factory=list)
    head_error: Exception | None = None
    committed_excludes: list[tuple[str, ...]] = field(default_factory=list)

    def top_level(self) -> Path:
        return self.root

    def dirty_paths(self, *, exclude_globs: tuple[str, ...] = ()) -> tuple[str, ...]:
        return tuple(path for path in self.dirty if not excluded(path, exclude_globs))

    def tracked_symlinks(self) -> tuple[SymlinkEntry, ...]:
        return ()

    def head_commit(self) -> str:
        if self.head_error is not None:
            raise self.head_error
        return self.head

    def current_branch(self) -> str:
        return "relais/work"

    def diff_summary(
        self, base_ref: str = "HEAD", *, exclude_globs: tuple[str, ...] = ()
    ) -> DiffSummary:
        return DiffSummary(
            entries=tuple(
                entry for entry in self.diff.entries if not excluded(entry.path, exclude_globs)
            ),
            untracked=tuple(
                path for path in self.diff.untracked if not excluded(path, exclude_globs)
            ),
            lines_added=self.diff.lines_added,
            lines_deleted=self.diff.lines_deleted,
        )

    def ensure_info_exclude(self, entry: str) -> bool:
        self.excludes.append(entry)
        return True

    def commit_all(
        self,
        message: str,
        *,
        trailers: tuple[str, ...] = (),
        exclude_paths: tuple[str, ...] = (),
    ) -> CommitResult:
        self.commits.append((message, tuple(trailers)))
        self.committed_excludes.append(tuple(exclude_paths))
        self.head = COMMITTED
        return CommitResult(branch="relais/work", commit=COMMITTED, trailers=tuple(trailers))


@dataclass(slots=True)
class ScriptedRunner:
    script: list[Step]
    calls: list[AgentInvocation] = field(default_factory=list)

    async def run(
        self, invocation: AgentInvocation, *, cancel_token: CancellationToken
    ) -> AgentResponse:
        self.calls.append(invocation)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(cancel_token)
        return step

    @property
    def roles(self) -> list[str]:
        return [call.role for call in self.calls]


def excluded(path: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


def respond(payload: object) -> AgentResponse:
    return AgentResponse(exit_code=0, stdout=json.dumps(payload), stderr="", duration_ms=3)


def planned(**overrides: object) -> AgentResponse:
    task: dict[str, object] = {
        "task_id": "T-7",
        "milestone_id": "M1",
        "task_kind": "execute",
        "intent": "Add the header parser",
        "scope": {"allowed_globs": ["src/*"], "allow_new_files": True},
        "verification": {"fast": ["pass"]},
    }
    task.update(overrides)
    return respond(task)


def built() -> AgentResponse:
    return respond(
        {
            "subtasks_completed": ["parser"],
            "touched_files": {"modified": ["src/loader.py"]},
            "notes": "done",
        }
    )


def modified(*paths: str, added: int = 4) -> DiffSummary:
    return DiffSummary(
        entries=tuple(ChangedFileEntry(status="M", path=path) for path in paths),
        untracked=(),
        lines_added=added,
        lines_deleted=0,
    )


def tick_config(**sections: dict[str, object]) -> dict[str, Any]:
    config: dict[str, Any] = {
        "goal": {"text": "Ship the parser"},
        "orchestrator": {"command": ["planner-cli"]},
        "builder": {"command": ["builder-cli"]},
        "reviewer": {"enabled": False, "command": ["reviewer-cli"]},
        "runner": {"runner_owned_globs": [".relais/*"], "commit_on_success": True},
        "history": {"enabled": True, "max_mb": 50},
        "budgets": {"per_milestone": {"max_ticks": 10}},
        "verification": {
            "templates": [
                {"id": "pass", "cmd": sys.executable, "args": ["-c", "print('ok')"]},
                {"id": "fail", "cmd": sys.executable, "args": ["-c", "raise SystemExit(1)"]},
            ]
        },
    }
    config.update(sections)
    return config


@dataclass(slots=True)
class Harness:
    orchestrator: TickOrchestrator
    git: TickGitFake
    runner: ScriptedRunner
    store: StateStore

    @property
    def paths(self) -> WorkspacePaths:
        return self.store.paths

    async def run(self, token: CancellationToken | None = None) -> TickResult:
        return await self.orchestrator.run(token)


def harness(
    tmp_path: Path,
    script: list[Step],
    *,
    config: dict[str, Any] | None = None,
    git: TickGitFake | None = None,
) -> Harness:
    cfg = config if config is not None else tick_config()
    paths = WorkspacePaths(repo_root=tmp_path, workspace_dir=tmp_path / ".relais")
    store = StateStore(paths)
    fake = git if git is not None else TickGitFake(root=tmp_path)
    runner = ScriptedRunner(list(script))
    orchestrator = TickOrchestrator(
        cfg,
        repo_root=tmp_path,
        git=fake,
        agent_runner=runner,
        store=store,
        lock=TickLock(paths.lock, boot_id_provider=lambda: "boot", pid_alive=lambda _pid: True),
        run_id_factory=lambda: RUN_ID,
    )
    return Harness(orchestrator=orchestrator, git=fake, runner=runner, store=store)


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.mark.asyncio
async def test_successful_execute_tick_commits_and_reports(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned(), built()])
    h.git.diff = modified("src/loader.py")

    result = await h.run()

    assert result.code is ReportCode.SUCCESS
    assert result.verdict is Verdict.SUCCESS
    assert result.task_id == "T-7"
    assert result.commit == COMMITTED
    assert result.artifact_path == h.paths.report_json
    assert h.runner.roles == ["planner", "builder"]
    message, trailers = h.git.commits[0]
    assert message == "relais: Add the header parser"
    assert trailers == (f"{TASK_TRAILER}: T-7", f"{RUN_TRAILER}: {RUN_ID}")
    assert h.git.excludes == ["/.relais/"]

    report = read_json(h.paths.report_json)
    assert report["code"] == "SUCCESS"
    assert report["base_commit"] == BASE
    assert report["head_commit"] == COMMITTED
    assert report["budgets"]["deltas"] == {
        "builder_calls": 1,
        "orchestrator_calls": 1,
        "ticks": 1,
        "verify_runs": 1,
    }
    assert h.paths.report_md.exists()
    assert not h.paths.blocked.exists()
    assert not h.paths.tick.exists()
    assert not h.paths.lock.exists()

    state = h.store.load_workspace_state()
    assert state.milestone_id == "M1"
    assert state.budgets.ticks == 1
    assert state.last_run_id == RUN_ID
    assert state.last_verdict == "SUCCESS"
    assert state.has_pass_for("T-7")
    guardrails = h.store.load_guardrails()
    assert guardrails.branch == "relais/work"
    assert guardrails.last_failed_fingerprint is None

    run_dir = h.paths.run_dir(RUN_ID)
    assert (run_dir / "task.json").exists()
    assert (run_dir / "builder.json").exists()
    assert (run_dir / "verify.log").exists()
    assert (run_dir / "transcripts" / "planner.stdout.txt").exists()


@pytest.mark.asyncio
async def test_empty_diff_succeeds_without_committing(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned(), built()])

    result = await h.run()

    assert result.code is ReportCode.SUCCESS
    assert result.commit is None
    assert h.git.commits == []


@pytest.mark.asyncio
async def test_failed_verification_stops_and_records_fingerprint(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned(verification={"fast": ["fail"]}), built()])
    h.git.diff = modified("src/loader.py")

    result = await h.run()

    assert result.code is ReportCode.STOP_VERIFY_FAILED_FAST
    assert h.git.commits == []
    guardrails = h.store.load_guardrails()
    assert guardrails.last_failed_fingerprint is not None
    assert [entry.code for entry in guardrails.stop_history] == ["STOP_VERIFY_FAILED_FAST"]
    assert read_json(h.paths.report_json)["verdict"] == "STOP"


@pytest.mark.asyncio
async def test_identical_redispatch_after_failure_is_stopped(tmp_path: Path) -> None:
    first = harness(tmp_path, [planned(verification={"fast": ["fail"]}), built()])
    first.git.diff = modified("src/loader.py")
    await first.run()

    second = harness(tmp_path, [planned(verification={"fast": ["fail"]}), built()])
    result = await second.run()

    assert result.code is ReportCode.STOP_REDISPATCH_IDENTICAL_TASK


@pytest.mark.asyncio
async def test_scope_violation_never_commits(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned(), built()])
    h.git.diff = modified("docs/readme.md")

    result = await h.run()

    assert result.code is ReportCode.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED
    assert h.git.commits == []
    assert read_json(h.paths.report_json)["details"]["violations"] == ["docs/readme.md"]


@pytest.mark.asyncio
async def test_reviewer_forced_patch_skips_the_builder(tmp_path: Path) -> None:
    config = tick_config(
        reviewer={
            "enabled": True,
            "command": ["reviewer-cli"],
            "trigger": {"on_high_risk_paths": True, "high_risk_globs": ["src/*"]},
        }
    )
    review = respond({"decision": "force_patch", "reason": "split the change"})
    h = harness(tmp_path, [planned(), review], config=config)

    result = await h.run()

    assert result.code is ReportCode.STOP_REVIEWER_FORCED_PATCH
    assert h.runner.roles == ["planner", "reviewer"]
    assert h.store.load_workspace_state().budgets.builder_calls == 0
    reviews = read_json(h.paths.report_json)["details"]["reviews"]
    assert reviews[0]["decision"] == "force_patch"
    assert reviews[0]["triggers"] == ["high_risk_scope:src/*"]


@pytest.mark.asyncio
async def test_verify_only_task_with_changes_is_stopped(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned(task_kind="verify_only")])
    h.git.diff = modified("src/loader.py")

    result = await h.run()

    assert result.code is ReportCode.STOP_VERIFY_ONLY_SIDE_EFFECTS
    assert h.runner.roles == ["planner"]


@pytest.mark.asyncio
async def test_question_task_is_recorded_without_verification(tmp_path: Path) -> None:
    h = harness(
        tmp_path,
        [planned(task_kind="question", question={"prompt": "Which parser?", "choices": ["a"]})],
    )

    result = await h.run()

    assert result.code is ReportCode.SUCCESS
    report = read_json(h.paths.report_json)
    assert report["details"]["question"]["prompt"] == "Which parser?"
    assert h.store.load_workspace_state().budgets.verify_runs == 0


@pytest.mark.asyncio
async def test_preflight_block_never_orchestrates(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned()])
    h.git.dirty = ("src/loader.py",)
    h.paths.report_json.parent.mkdir(parents=True, exist_ok=True)
    h.paths.report_json.write_text("{}", encoding="utf-8")

    result = await h.run()

    assert result.code is ReportCode.BLOCKED_DIRTY_WORKTREE
    assert result.artifact_path == h.paths.blocked
    assert h.runner.calls == []
    assert read_json(h.paths.blocked)["code"] == "BLOCKED_DIRTY_WORKTREE"
    assert h.store.load_workspace_state().last_verdict == "BLOCKED_DIRTY_WORKTREE"
    assert not h.paths.report_json.exists()
    assert not h.paths.lock.exists()


@pytest.mark.asyncio
async def test_blocked_tick_replaces_previous_report(tmp_path: Path) -> None:
    first = harness(tmp_path, [planned(), built()])
    await first.run()
    assert first.paths.report_json.exists()

    failing = AgentResponse(
        exit_code=1, stdout="", stderr="Connection stalled request_id: req_123", duration_ms=9
    )
    second = harness(tmp_path, [failing])
    result = await second.run()

    assert result.code is ReportCode.BLOCKED_TRANSPORT_STALLED
    assert second.paths.blocked.exists()
    assert not second.paths.report_json.exists()
    assert not second.paths.report_md.exists()


@pytest.mark.asyncio
async def test_interruption_after_lock_ends_in_stop_interrupted(tmp_path: Path) -> None:
    def plan_then_interrupt(token: CancellationToken) -> AgentResponse:
        token.cancel("operator pressed ctrl-c")
        return planned()

    h = harness(tmp_path, [plan_then_interrupt])

    result = await h.run()

    assert result.code is ReportCode.STOP_INTERRUPTED
    assert h.runner.roles == ["planner"]
    assert h.paths.report_json.exists()
    assert not h.paths.tick.exists()
    guardrails = h.store.load_guardrails()
    assert guardrails.last_failed_fingerprint is None
    assert [entry.code for entry in guardrails.stop_history] == ["STOP_INTERRUPTED"]


@pytest.mark.asyncio
async def test_unexpected_crash_leaves_tick_file_for_recovery(tmp_path: Path) -> None:
    h = harness(tmp_path, [RuntimeError("agent runner exploded")])

    with pytest.raises(RuntimeError, match="exploded"):
        await h.run()

    assert h.paths.tick.exists()
    assert not h.paths.lock.exists()

    retry = harness(tmp_path, [planned()])
    result = await retry.run()

    assert result.code is ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED
    assert retry.runner.calls == []
    assert retry.paths.tick.exists()


@pytest.mark.asyncio
async def test_missing_goal_blocks_before_taking_the_lock(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned()], config=tick_config(goal={"text": ""}))

    result = await h.run()

    assert result.code is ReportCode.BLOCKED_MISSING_CONFIG
    assert h.runner.calls == []
    assert h.paths.blocked.exists()
    assert not h.paths.state.exists()
    assert not h.paths.lock.exists()


@pytest.mark.asyncio
async def test_planner_retry_counts_one_orchestrator_call(tmp_path: Path) -> None:
    unparseable = AgentResponse(exit_code=0, stdout="not json at all", stderr="", duration_ms=1)
    h = harness(tmp_path, [unparseable, planned(), built()])
    h.git.diff = modified("src/loader.py")

    result = await h.run()

    assert result.code is ReportCode.SUCCESS
    assert h.runner.roles == ["planner", "planner", "builder"]
    assert h.store.load_workspace_state().budgets.orchestrator_calls == 1
    report = read_json(h.paths.report_json)
    assert report["budgets"]["deltas"]["orchestrator_calls"] == 1
    assert report["details"]["planning"]["attempts"] == 2


@pytest.mark.asyncio
async def test_git_failure_after_the_lock_releases_it(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned(), built()])
    h.git.head_error = GitCommandError(
        command=("git", "rev-parse", "HEAD"),
        returncode=128,
        stdout="",
        stderr="fatal: ambiguous argument 'HEAD': unknown revision",
    )

    result = await h.run()

    assert result.code is ReportCode.BLOCKED_MISSING_CONFIG
    assert h.runner.calls == []
    assert not h.paths.lock.exists()
    blocked = read_json(h.paths.blocked)
    assert blocked["diagnostics"]["stage"] == "base_commit"
    assert blocked["diagnostics"]["returncode"] == 128

    h.git.head_error = None
    h.git.diff = modified("src/loader.py")
    retry = await h.run()

    assert retry.code is ReportCode.SUCCESS
    assert not h.paths.lock.exists()


@pytest.mark.asyncio
async def test_lock_contender_leaves_the_holders_artifacts_alone(tmp_path: Path) -> None:
    first = harness(tmp_path, [planned(), built()])
    first.git.diff = modified("src/loader.py")
    assert (await first.run()).code is ReportCode.SUCCESS
    report_before = first.paths.report_json.read_text(encoding="utf-8")

    holder = TickLock(
        first.paths.lock, pid=4242, boot_id_provider=lambda: "boot", pid_alive=lambda _pid: True
    )
    assert holder.acquire().acquired

    contender = harness(tmp_path, [planned()])
    result = await contender.run()

    assert result.code is ReportCode.BLOCKED_LOCK_HELD
    assert result.artifact_path is None
    assert contender.runner.calls == []
    assert not contender.paths.blocked.exists()
    assert contender.paths.report_json.read_text(encoding="utf-8") == report_before
    assert contender.store.load_workspace_state().last_verdict == "SUCCESS"
    assert contender.paths.lock.exists()
    assert holder.release() is True


def owned_config() -> dict[str, Any]:
    return tick_config(
        runner={"runner_owned_globs": [".relais/*", "relais.toml"], "commit_on_success": True}
    )


def config_left_untracked(root: Path) -> TickGitFake:
    (root / "relais.toml").write_text("[goal]\ntext = 'Ship the parser'\n", encoding="utf-8")
    return TickGitFake(
        root=root,
        dirty=("relais.toml",),
        diff=DiffSummary(
            entries=(ChangedFileEntry(status="M", path="src/loader.py"),),
            untracked=("relais.toml",),
            lines_added=4,
            lines_deleted=0,
        ),
    )


@pytest.mark.asyncio
async def test_untouched_untracked_config_does_not_trip_judge(tmp_path: Path) -> None:
    fake = config_left_untracked(tmp_path)
    h = harness(tmp_path, [planned(), built()], config=owned_config(), git=fake)

    result = await h.run()

    assert result.code is ReportCode.SUCCESS, result.reason
    assert h.git.committed_excludes == [("relais.toml",)]
    report = read_json(h.paths.report_json)
    assert report["details"]["runner_owned_carried_over"] == ["relais.toml"]


@pytest.mark.asyncio
async def test_builder_edit_of_untracked_config_still_trips_judge(tmp_path: Path) -> None:
    fake = config_left_untracked(tmp_path)

    def build_and_touch_config(_token: CancellationToken) -> AgentResponse:
        (tmp_path / "relais.toml").write_text("[goal]\ntext = 'something else'\n", encoding="utf-8")
        return built()

    h = harness(tmp_path, [planned(), build_and_touch_config], config=owned_config(), git=fake)

    result = await h.run()

    assert result.code is ReportCode.STOP_RUNNER_OWNED_MUTATION
    assert h.git.commits == []


@pytest.mark.asyncio
async def test_lock_left_by_a_previous_boot_still_gets_a_blocked_file(tmp_path: Path) -> None:
    h = harness(tmp_path, [planned()])
    h.paths.lock.parent.mkdir(parents=True, exist_ok=True)
    h.paths.lock.write_text(
        json.dumps({"pid": 4242, "started_at": "2026-10-17T08:00:00.000Z", "boot_id": "older"}),
        encoding="utf-8",
    )

    result = await h.run()

    assert result.code is ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED
    assert result.artifact_path == h.paths.blocked
    assert read_json(h.paths.blocked)["code"] == "BLOCKED_CRASH_RECOVERY_REQUIRED"
    assert h.paths.lock.exists()
    assert not h.paths.state.exists()
