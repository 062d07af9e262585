"""
relais — tick orchestrator

File: src/relais/control_plane/tick.py
Last updated: 2026-10-18

Purpose
- Run exactly one bounded tick: LOCK, PREFLIGHT, ORCHESTRATE, [REVIEW], BUILD, JUDGE,
  REPORT, END.

What should be included in this file
- ``TickOrchestrator`` wiring preflight, agent invokers, guardrails, verification and
  reporting into one forward-only state machine.
- ``TickResult`` handed back to the CLI.

Functional requirements
- Phases only move forward; a PREFLIGHT failure never enters ORCHESTRATE.
- Every tick that gets the workspace ends with exactly one terminal artifact:
  REPORT.json/.md or BLOCKED.json. A tick that finds a live lock holder writes nothing.
- A tick that held the lock persists STATE.json and GUARDRAILS.json, releases the lock
  and deletes TICK.json.
- Interruption after LOCK ends in STOP_INTERRUPTED with a report.
- An unexpected exception releases the lock but leaves TICK.json behind so the next
  tick blocks on crash recovery.
"""

from __future__ import annotations

import asyncio
import glob
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from relais.agents.builder import BuilderInvoker
from relais.agents.planner import PlanningInvoker
from relais.agents.prompts import PromptRenderer
from relais.agents.reviewer import (
    ReviewerInvoker,
    ReviewResult,
    ReviewStage,
    post_judge_triggers,
    pre_build_triggers,
)
from relais.agents.schema_cache import SchemaCache
from relais.agents.transport import transport_stall
from relais.config.schema import redact_config
from relais.control_plane.budgets import BudgetTracker
from relais.control_plane.cancellation import CancellationToken, TickInterrupted
from relais.control_plane.lock import TickLock
from relais.control_plane.preflight import PreflightChecker, PreflightGit
from relais.control_plane.state_store import StateStore, WorkspacePaths
from relais.domain.codes import JudgeOutcome, PreflightOutcome, ReportCode, Verdict
from relais.domain.ids import generate_run_id, utc_now_iso
from relais.domain.models import TaskKind
from relais.domain.state import (
    GuardrailState,
    StopHistoryEntry,
    TickPhase,
    TickState,
    VerifyHistoryEntry,
    VerifyResult,
    WorkspaceState,
)
from relais.errors import StateCorruptError
from relais.guardrails.checks import (
    check_diff_limits,
    check_head_unchanged,
    check_redispatch,
    check_side_effects,
)
from relais.guardrails.fingerprint import task_fingerprint
from relais.guardrails.scope import check_scope, matches_glob
from relais.integration_plane.git_engine import GitEngineError, GitTimeoutError
from relais.reporting.blocked import (
    blocked_from_outcome,
    build_blocked_data,
    clear_blocked,
    write_blocked,
)
from relais.reporting.history import HistoryWriter
from relais.reporting.report import build_report, render_report_markdown, write_report
from relais.utils.fs import remove_if_exists
from relais.utils.hashing import sha256_file
from relais.verification.runner import VerificationReport, VerificationRunner

if TYPE_CHECKING:
    from relais.agents.builder import BuildResult
    from relais.agents.planner import PlanningResult
    from relais.agents.process import AgentFailure, AgentRunner
    from relais.guardrails.scope import ScopeCheckResult
    from relais.integration_plane.git_engine import CommitResult, DiffSummary

TASK_TRAILER: Final[str] = "Relais-Task"
RUN_TRAILER: Final[str] = "Relais-Run"


class TickGit(PreflightGit, Protocol):
    def current_branch(self) -> str: ...

    def diff_summary(
        self, base_ref: str = "HEAD", *, exclude_globs: Sequence[str] = ()
    ) -> DiffSummary: ...

    def ensure_info_exclude(self, entry: str) -> bool: ...

    def commit_all(
        self,
        message: str,
        *,
        trailers: Sequence[str] = (),
        exclude_paths: Sequence[str] = (),
    ) -> CommitResult: ...


@dataclass(frozen=True, slots=True)
class TickOutcome:
    """Terminal outcome of a tick before it is serialized."""

    code: ReportCode
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_judge(cls, outcome: JudgeOutcome) -> TickOutcome:
        details = dict(outcome.details)
        if outcome.violations:
            details["violations"] = list(outcome.violations)
        return cls(code=outcome.code, reason=outcome.reason, details=details)

    @classmethod
    def from_failure(cls, failure: AgentFailure) -> TickOutcome:
        return cls(code=failure.code, reason=failure.reason, details=dict(failure.diagnostics))


@dataclass(frozen=True, slots=True)
class TickResult:
    """What the CLI needs to pick an exit code and print a summary."""

    run_id: str
    code: ReportCode
    reason: str
    artifact_path: Path | None
    task_id: str | None = None
    commit: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def verdict(self) -> Verdict:
        return self.code.verdict


@dataclass(slots=True)
class _TickContext:
    tick: TickState
    state: WorkspaceState
    guardrails: GuardrailState = field(default_factory=GuardrailState)
    budget_warning: bool = False
    planning: PlanningResult | None = None
    build: BuildResult | None = None
    reviews: list[ReviewResult] = field(default_factory=list)
    diff: DiffSummary | None = None
    scope: ScopeCheckResult | None = None
    verification: VerificationReport | None = None
    head_commit: str | None = None
    commit: CommitResult | None = None
    owned_snapshot: dict[str, str | None] = field(default_factory=dict)
    carried_over: tuple[str, ...] = ()


class TickOrchestrator:
    """Coordinates one tick end to end; every collaborator is injectable."""

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        repo_root: Path,
        git: TickGit,
        agent_runner: AgentRunner,
        store: StateStore | None = None,
        lock: TickLock | None = None,
        budgets: BudgetTracker | None = None,
        schema_cache: SchemaCache | None = None,
        renderer: PromptRenderer | None = None,
        history: HistoryWriter | None = None,
        run_id_factory: Callable[[], str] = generate_run_id,
        clock: Callable[[], str] = utc_now_iso,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._repo_root = repo_root
        self._git = git
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        if store is None:
            store = StateStore(WorkspacePaths.from_config(repo_root, config))
        self._store = store
        paths = self._store.paths
        self._lock = lock if lock is not None else TickLock(paths.lock, logger=self._logger)
        self._budgets = budgets or BudgetTracker(config.get("budgets", {}), logger=self._logger)
        self._history = history or HistoryWriter(
            paths.history_dir,
            enabled=bool(config.get("history", {}).get("enabled", True)),
            logger=self._logger,
        )
        self._run_id_factory = run_id_factory
        self._clock = clock

        cache = schema_cache if schema_cache is not None else SchemaCache()
        prompts = renderer if renderer is not None else PromptRenderer()
        agent_kwargs: dict[str, Any] = {
            "runner": agent_runner,
            "schema_cache": cache,
            "renderer": prompts,
            "repo_root": repo_root,
            "logger": self._logger,
        }
        self._planner = PlanningInvoker(config, **agent_kwargs)
        self._builder = BuilderInvoker(config, **agent_kwargs)
        self._reviewer = ReviewerInvoker(config, **agent_kwargs)
        self._verifier = VerificationRunner(
            config.get("verification", {}), repo_root=repo_root, logger=self._logger
        )

    @property
    def paths(self) -> WorkspacePaths:
        return self._store.paths

    async def run(self, cancel_token: CancellationToken | None = None) -> TickResult:
        token = cancel_token if cancel_token is not None else CancellationToken()
        tick = TickState(
            run_id=self._run_id_factory(),
            started_at=self._clock(),
            config_snapshot=redact_config(self._config),
        )
        self._logger.info("tick_phase_entered", run_id=tick.run_id, phase=tick.phase.name)

        max_seconds = float(self._config.get("runner", {}).get("max_tick_seconds", 0) or 0)
        deadline: asyncio.TimerHandle | None = None
        if max_seconds > 0:
            deadline = asyncio.get_running_loop().call_later(
                max_seconds, token.cancel, f"max_tick_seconds ({max_seconds:g}s) exceeded"
            )
        try:
            return await self._run(tick, token)
        finally:
            if deadline is not None:
                deadline.cancel()

    async def _run(self, tick: TickState, token: CancellationToken) -> TickResult:
        try:
            return await self._run_locked(tick, token)
        finally:
            self._lock.release()

    async def _run_locked(self, tick: TickState, token: CancellationToken) -> TickResult:
        self._enter(tick, TickPhase.PREFLIGHT, persist=False)
        preflight = PreflightChecker(
            self._config,
            git=self._git,
            lock=self._lock,
            store=self._store,
            budgets=self._budgets,
            logger=self._logger,
        ).run()
        tick.warnings.extend(preflight.warnings)
        if not preflight.ok or preflight.outcome is not None:
            outcome = preflight.outcome or PreflightOutcome(
                code=ReportCode.BLOCKED_MISSING_CONFIG, reason="preflight failed"
            )
            return self._conclude_preflight(
                tick,
                outcome,
                lock_acquired=preflight.lock_acquired,
                lock_attempted=preflight.lock_attempted,
                state=preflight.workspace_state,
            )

        state = preflight.workspace_state or WorkspaceState()
        try:
            guardrails = self._store.load_guardrails()
        except StateCorruptError as exc:
            outcome = PreflightOutcome(
                code=ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED,
                reason=str(exc),
                diagnostics={"path": exc.path, "detail": exc.detail},
            )
            return self._conclude_preflight(
                tick, outcome, lock_acquired=True, lock_attempted=True, state=None
            )

        ctx = _TickContext(
            tick=tick,
            state=state,
            guardrails=guardrails,
            budget_warning=preflight.budget_warning,
        )
        tick.base_commit = preflight.base_commit

        if ctx.guardrails.branch is None:
            ctx.guardrails = replace(ctx.guardrails, branch=self._git.current_branch())
        tick.count("ticks")
        exclude_entry = self._exclude_entry()
        if exclude_entry is not None:
            self._git.ensure_info_exclude(exclude_entry)
        self._store.write_tick(tick)

        try:
            outcome = await self._execute(ctx, token)
        except TickInterrupted as exc:
            outcome = TickOutcome(code=ReportCode.STOP_INTERRUPTED, reason=str(exc))
        except GitTimeoutError as exc:
            stall = transport_stall(tick.phase.name, f"{exc}\n{exc.stderr}".strip())
            outcome = TickOutcome(
                code=ReportCode.BLOCKED_TRANSPORT_STALLED,
                reason=f"git stalled during {tick.phase.name}",
                details=stall.to_diagnostics(),
            )
        return self._conclude(ctx, outcome)

    async def _execute(self, ctx: _TickContext, token: CancellationToken) -> TickOutcome:
        tick = ctx.tick
        token.raise_if_cancelled()
        self._enter(tick, TickPhase.ORCHESTRATE)
        ctx.owned_snapshot = self._snapshot_runner_owned()
        planning = await self._planner.plan(self._planner_variables(ctx), cancel_token=token)
        ctx.planning = planning
        tick.count("orchestrator_calls")
        if not planning.success or planning.task is None:
            if planning.failure is not None:
                return TickOutcome.from_failure(planning.failure)
            return TickOutcome(
                code=ReportCode.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID,
                reason=planning.error or "planner produced no task",
            )
        task = planning.task
        tick.task = task
        self._store.write_tick(tick)
        token.raise_if_cancelled()

        if self._reviewer.enabled:
            triggers = pre_build_triggers(
                task,
                ctx.guardrails,
                budget_warning=ctx.budget_warning,
                trigger_config=self._reviewer.trigger_config,
            )
            if triggers:
                self._enter(tick, TickPhase.REVIEW)
                review = await self._reviewer.review(
                    ReviewStage.PRE_BUILD, task, triggers, cancel_token=token
                )
                ctx.reviews.append(review)
                demanded = review.outcome()
                if demanded is not None:
                    return TickOutcome.from_judge(demanded)

        token.raise_if_cancelled()
        self._enter(tick, TickPhase.BUILD)
        if task.task_kind is TaskKind.EXECUTE:
            tick.count("builder_calls")
            build = await self._builder.build(task, cancel_token=token)
            ctx.build = build
            if not build.success or build.builder_result is None:
                if build.failure is not None:
                    return TickOutcome.from_failure(build.failure)
                return TickOutcome(
                    code=ReportCode.STOP_BUILDER_OUTPUT_INVALID,
                    reason="builder returned no result",
                )
            tick.builder_result = build.builder_result
            self._store.write_tick(tick)

        token.raise_if_cancelled()
        self._enter(tick, TickPhase.JUDGE)
        return await self._judge(ctx, token)

    async def _judge(self, ctx: _TickContext, token: CancellationToken) -> TickOutcome:
        tick = ctx.tick
        task = tick.task
        if task is None:
            raise RuntimeError("JUDGE entered without a task")

        fingerprint = task_fingerprint(task)
        redispatch = check_redispatch(task, ctx.guardrails.last_failed_fingerprint)
        if not redispatch.ok:
            return TickOutcome.from_judge(redispatch)

        ctx.head_commit = self._git.head_commit()
        head = check_head_unchanged(tick.base_commit, ctx.head_commit)
        if not head.ok:
            return TickOutcome.from_judge(head)

        ctx.carried_over = tuple(
            path
            for path, digest in sorted(ctx.owned_snapshot.items())
            if sha256_file(self._repo_root / path) == digest
        )
        diff = self._git.diff_summary(
            exclude_globs=tuple(glob.escape(path) for path in ctx.carried_over)
        )
        ctx.diff = diff
        side_effects = check_side_effects(task.task_kind, diff)
        if not side_effects.ok:
            return TickOutcome.from_judge(side_effects)

        runner = self._config.get("runner", {})
        scope_config = self._config.get("scope", {})
        scope = check_scope(
            diff.modified_paths,
            diff.new_paths,
            task.scope,
            lockfiles=tuple(scope_config.get("lockfiles", ())),
            runner_owned_globs=tuple(runner.get("runner_owned_globs", ())),
            precedence=scope_config.get("precedence", "forbidden"),
        )
        ctx.scope = scope
        if not scope.ok:
            return TickOutcome.from_judge(scope.outcome())

        limits = check_diff_limits(diff, task.diff_limits)
        if not limits.ok:
            return TickOutcome.from_judge(limits)

        if task.task_kind is TaskKind.QUESTION:
            details: dict[str, Any] = {"fingerprint": fingerprint}
            if task.question is not None:
                details["question"] = task.question.to_dict()
            return TickOutcome(
                code=ReportCode.SUCCESS,
                reason="question recorded for the operator",
                details=details,
            )

        token.raise_if_cancelled()
        verifier = self._verifier.with_log_path(self._history.verify_log_path(tick.run_id))
        report = await verifier.run(task, cancel_token=token)
        ctx.verification = report
        tick.count("verify_runs", report.runs_executed)
        verdict = TickOutcome.from_judge(report.outcome)
        if not report.outcome.ok and not report.failed:
            return verdict

        if self._reviewer.enabled:
            triggers = post_judge_triggers(
                task,
                diff,
                verify_failed=report.failed,
                trigger_config=self._reviewer.trigger_config,
            )
            if triggers and (report.outcome.ok or "verify_failed" in triggers):
                review = await self._reviewer.review(
                    ReviewStage.POST_JUDGE, task, triggers, cancel_token=token, diff=diff
                )
                ctx.reviews.append(review)
                demanded = review.outcome()
                if demanded is not None:
                    return TickOutcome.from_judge(demanded)

        if not report.outcome.ok:
            return verdict
        return self._commit_success(ctx, fingerprint)

    def _commit_success(self, ctx: _TickContext, fingerprint: str) -> TickOutcome:
        tick = ctx.tick
        task = tick.task
        diff = ctx.diff
        details: dict[str, Any] = {"fingerprint": fingerprint}
        commit_enabled = bool(self._config.get("runner", {}).get("commit_on_success", True))
        if task is None or diff is None or diff.is_empty or not commit_enabled:
            return TickOutcome(code=ReportCode.SUCCESS, reason="all checks passed", details=details)

        title = task.intent.strip().splitlines()[0] if task.intent.strip() else task.task_id
        try:
            ctx.commit = self._git.commit_all(
                f"relais: {title}",
                trailers=(f"{TASK_TRAILER}: {task.task_id}", f"{RUN_TRAILER}: {tick.run_id}"),
                exclude_paths=ctx.carried_over,
            )
        except GitTimeoutError:
            raise
        except GitEngineError as exc:
            tick.add_error(f"commit failed: {exc}")
            return TickOutcome(
                code=ReportCode.STOP_EVIDENCE_INCOMPLETE,
                reason=f"checks passed but the commit failed: {exc}",
                details=details,
            )
        ctx.head_commit = ctx.commit.commit
        details["commit"] = ctx.commit.commit
        self._logger.info(
            "tick_committed", run_id=tick.run_id, commit=ctx.commit.commit, branch=ctx.commit.branch
        )
        return TickOutcome(code=ReportCode.SUCCESS, reason="all checks passed", details=details)

    def _conclude(self, ctx: _TickContext, outcome: TickOutcome) -> TickResult:
        tick = ctx.tick
        paths = self._store.paths
        self._enter(tick, TickPhase.REPORT)
        ended_at = self._clock()

        task = tick.task
        if outcome.code is ReportCode.SUCCESS:
            ctx.guardrails = ctx.guardrails.record_success()
        elif outcome.code.is_stop:
            fingerprint = (
                task_fingerprint(task)
                if task is not None and outcome.code is not ReportCode.STOP_INTERRUPTED
                else None
            )
            ctx.guardrails = ctx.guardrails.record_failure(
                fingerprint,
                StopHistoryEntry(run_id=tick.run_id, code=outcome.code.value, at=ended_at),
            )

        state = ctx.state
        if task is not None:
            state, changed = state.ensure_milestone(task.milestone_id)
            if changed:
                self._logger.info(
                    "milestone_changed", run_id=tick.run_id, milestone_id=task.milestone_id
                )
        state = state.apply_deltas(tick.deltas)
        verification = ctx.verification
        if task is not None and verification is not None and verification.runs:
            if outcome.code is ReportCode.SUCCESS:
                result: VerifyResult | None = VerifyResult.PASS
            elif verification.failed:
                result = VerifyResult.FAIL
            else:
                result = None
            if result is not None:
                state = state.record_verify(
                    VerifyHistoryEntry(
                        run_id=tick.run_id, task_id=task.task_id, result=result, at=ended_at
                    )
                )
        state = replace(
            state,
            budget_warning=self._budgets.warning_for(state.budgets),
            last_run_id=tick.run_id,
            last_verdict=outcome.code.value,
        )
        ctx.state = state
        self._store.save_workspace_state(state)
        self._store.save_guardrails(ctx.guardrails)

        if ctx.head_commit is None and not outcome.code.is_blocked:
            try:
                ctx.head_commit = self._git.head_commit()
            except GitEngineError as exc:
                tick.add_error(f"could not read HEAD: {exc}")

        artifacts: dict[str, Mapping[str, Any] | str]
        if outcome.code.is_blocked:
            blocked = build_blocked_data(
                outcome.code, outcome.reason, diagnostics=outcome.details, blocked_at=ended_at
            )
            remove_if_exists(paths.report_json)
            remove_if_exists(paths.report_md)
            write_blocked(blocked, paths.blocked)
            artifact_path = paths.blocked
            artifacts = {paths.blocked.name: blocked.to_dict()}
        else:
            clear_blocked(paths.blocked)
            report = build_report(
                tick,
                code=outcome.code,
                reason=outcome.reason,
                ended_at=ended_at,
                head_commit=ctx.head_commit,
                budgets={
                    "milestone_id": state.milestone_id,
                    "counters": state.budgets.to_dict(),
                    "deltas": tick.deltas.to_dict(),
                    "warning": state.budget_warning,
                },
                diff=ctx.diff,
                scope=ctx.scope,
                verification=verification,
                evidence=self._evidence(tick.run_id),
                details=self._report_details(ctx, outcome),
            )
            write_report(report, json_path=paths.report_json, markdown_path=paths.report_md)
            artifact_path = paths.report_json
            artifacts = {
                paths.report_json.name: report.to_dict(),
                paths.report_md.name: render_report_markdown(report),
            }

        self._enter(tick, TickPhase.END)
        self._history.write_run(
            tick.run_id,
            task=task.to_dict() if task is not None else None,
            builder_result=(
                tick.builder_result.to_dict() if tick.builder_result is not None else None
            ),
            artifacts=artifacts,
            transcripts=self._transcripts(ctx),
        )
        self._store.clear_tick()
        self._logger.info(
            "tick_completed",
            run_id=tick.run_id,
            code=outcome.code.value,
            verdict=outcome.code.verdict.value,
            deltas=tick.deltas.to_dict(),
        )
        return TickResult(
            run_id=tick.run_id,
            code=outcome.code,
            reason=outcome.reason,
            artifact_path=artifact_path,
            task_id=task.task_id if task is not None else None,
            commit=ctx.commit.commit if ctx.commit is not None else None,
            warnings=tuple(tick.warnings),
        )

    def _conclude_preflight(
        self,
        tick: TickState,
        outcome: PreflightOutcome,
        *,
        lock_acquired: bool,
        lock_attempted: bool,
        state: WorkspaceState | None,
    ) -> TickResult:
        paths = self._store.paths
        blocked = blocked_from_outcome(outcome)
        if not lock_attempted:
            # Config failed before the lock stage; take it briefly to own the workspace files.
            lock_acquired = self._lock.acquire().acquired
        crash = outcome.code is ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED
        artifact_path: Path | None = None
        if lock_acquired:
            remove_if_exists(paths.report_json)
            remove_if_exists(paths.report_md)
        # Crash residue has no live owner; a live holder's files are never touched.
        if lock_acquired or crash:
            write_blocked(blocked, paths.blocked)
            artifact_path = paths.blocked
            if lock_acquired and not crash:
                if state is not None:
                    self._store.save_workspace_state(
                        replace(state, last_run_id=tick.run_id, last_verdict=outcome.code.value)
                    )
                self._history.write_run(
                    tick.run_id, artifacts={paths.blocked.name: blocked.to_dict()}
                )
        self._logger.warning(
            "tick_blocked",
            run_id=tick.run_id,
            code=outcome.code.value,
            reason=outcome.reason,
            artifacts_written=artifact_path is not None,
        )
        return TickResult(
            run_id=tick.run_id,
            code=outcome.code,
            reason=outcome.reason,
            artifact_path=artifact_path,
            warnings=tuple(tick.warnings),
        )

    def _enter(self, tick: TickState, phase: TickPhase, *, persist: bool = True) -> None:
        tick.advance(phase)
        self._logger.info("tick_phase_entered", run_id=tick.run_id, phase=phase.name)
        if persist and phase is not TickPhase.END:
            self._store.write_tick(tick)

    def _planner_variables(self, ctx: _TickContext) -> dict[str, object]:
        goal = self._config.get("goal", {})
        goal_text = str(goal.get("text", "")).strip()
        goal_file = goal.get("file")
        if not goal_text and isinstance(goal_file, str) and goal_file:
            path = Path(goal_file)
            if not path.is_absolute():
                path = self._repo_root / path
            goal_text = path.read_text(encoding="utf-8").strip()
        window = int(self._reviewer.trigger_config.get("stop_window_ticks", 5))
        recent = ctx.guardrails.stop_history[-window:] if window > 0 else ()
        return {
            "goal": goal_text,
            "roadmap": str(goal.get("roadmap", "") or ""),
            "milestone_id": ctx.state.milestone_id,
            "last_verdict": ctx.state.last_verdict,
            "recent_stops": [entry.code for entry in recent],
            "template_ids": list(self._verifier.template_ids),
        }

    def _snapshot_runner_owned(self) -> dict[str, str | None]:
        owned = tuple(self._config.get("runner", {}).get("runner_owned_globs", ()))
        return {
            path: sha256_file(self._repo_root / path)
            for path in self._git.dirty_paths()
            if matches_glob(path, owned)
        }

    def _exclude_entry(self) -> str | None:
        workspace = self._store.paths.workspace_dir
        try:
            relative = workspace.resolve().relative_to(self._repo_root.resolve())
        except ValueError:
            return None
        return f"/{relative.as_posix()}/"

    def _evidence(self, run_id: str) -> dict[str, str]:
        paths = self._store.paths
        evidence = {
            "report_json": str(paths.report_json),
            "report_md": str(paths.report_md),
            "state": str(paths.state),
        }
        if self._history.enabled:
            evidence["history_dir"] = str(self._history.run_dir(run_id))
        return evidence

    def _report_details(self, ctx: _TickContext, outcome: TickOutcome) -> dict[str, Any]:
        details = dict(outcome.details)
        if ctx.planning is not None:
            details["planning"] = {
                "attempts": ctx.planning.attempts,
                "retry_reason": ctx.planning.retry_reason,
                "extract_method": ctx.planning.extract_method,
            }
        if ctx.reviews:
            details["reviews"] = [review.to_dict() for review in ctx.reviews]
        if ctx.carried_over:
            details["runner_owned_carried_over"] = list(ctx.carried_over)
        if ctx.verification is not None and ctx.verification.violations:
            details["param_violations"] = [item.to_dict() for item in ctx.verification.violations]
        return details

    def _transcripts(self, ctx: _TickContext) -> dict[str, str]:
        transcripts: dict[str, str] = {}
        if ctx.planning is not None:
            transcripts["planner.stdout"] = ctx.planning.raw_response
            transcripts["planner.stderr"] = ctx.planning.raw_stderr
        if ctx.build is not None:
            transcripts["builder.stdout"] = ctx.build.raw_response
            transcripts["builder.stderr"] = ctx.build.raw_stderr
        return transcripts


__all__ = [
    "RUN_TRAILER",
    "TASK_TRAILER",
    "TickGit",
    "TickOrchestrator",
    "TickOutcome",
    "TickResult",
]
