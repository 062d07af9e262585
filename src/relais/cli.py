"""Command-line interface router for relais."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from relais.agents.process import SubprocessAgentRunner
from relais.config import (
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    ConfigValidationError,
    load_config,
)
from relais.config.loader import dump_effective_config
from relais.control_plane.cancellation import CancellationToken
from relais.control_plane.lock import TickLock
from relais.control_plane.merge import merge_tick_branch
from relais.control_plane.state_store import StateStore, WorkspacePaths
from relais.control_plane.tick import TickOrchestrator, TickResult
from relais.domain.ids import generate_run_id
from relais.errors import MergeError, StateCorruptError
from relais.integration_plane.git_engine import GitEngine, GitEngineError
from relais.main import ExitCode, exit_code_for
from relais.observability.logging import setup_logging
from relais.reporting.report import NO_TASK_ID
from relais.utils.fs import atomic_write, read_json_object

INIT_CONFIG_TEMPLATE: Final[str] = """\
# relais configuration. Every key is optional; see the defaults in relais.config.schema.

[goal]
file = ".relais/GOAL.md"
roadmap = ""

[scope]
default_forbidden_globs = [".git/*", ".env", ".env.*"]

[budgets.per_milestone]
max_ticks = 50
max_orchestrator_calls = 100
max_builder_calls = 50
max_verify_runs = 200

# [[verification.templates]]
# id = "tests"
# cmd = "pytest"
# args = ["-q", "{{target}}"]
# params = ["target"]
"""
INIT_GOAL_TEMPLATE: Final[str] = "# Goal\n\nDescribe what the build loop should deliver.\n"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.INTERNAL_ERROR)

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="relais",
        description=(
            "relais - run one bounded build-loop tick against a git repository.\n\n"
            "Common workflows:\n"
            "  relais init                 Write relais.toml and the workspace directory\n"
            "  relais tick                 Plan, build, judge and report one task\n"
            "  relais status               Show workspace state and the last verdict\n"
            "  relais merge --into main    Fast-forward the tick branch after a PASS\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help=f"Path to the TOML config (default: ./{DEFAULT_CONFIG_FILE} if present).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    tick_parser = subparsers.add_parser("tick", parents=[common], help="Run exactly one tick")
    tick_parser.set_defaults(handler=_cmd_tick)

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show workspace state, guardrails and the last artifact"
    )
    status_parser.set_defaults(handler=_cmd_status)

    merge_parser = subparsers.add_parser(
        "merge",
        parents=[common],
        help="Fast-forward the tick branch into an integration branch",
    )
    merge_parser.add_argument("--into", required=True, help="Integration branch to advance")
    merge_parser.add_argument(
        "--from",
        dest="source_branch",
        default=None,
        help="Tick branch to merge (default: the branch recorded in GUARDRAILS.json)",
    )
    merge_parser.set_defaults(handler=_cmd_merge)

    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Create relais.toml, the goal file and the workspace"
    )
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing relais.toml"
    )
    init_parser.set_defaults(handler=_cmd_init)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def _cmd_tick(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    run_id = generate_run_id()
    handle = setup_logging(config.get("observability", {}), run_id=run_id)
    try:
        git = GitEngine(
            repo_root,
            timeout_seconds=float(config.get("runner", {}).get("git_timeout_seconds", 60)),
        )
        orchestrator = TickOrchestrator(
            config,
            repo_root=repo_root,
            git=git,
            agent_runner=SubprocessAgentRunner(),
            run_id_factory=lambda: run_id,
        )
        result = asyncio.run(_run_tick(orchestrator))
    finally:
        handle.close()

    payload = _tick_payload(result, repo_root)
    if args.json:
        _emit_json(payload)
    else:
        print(f"{result.verdict.value.upper()}: {result.code.value}")
        if result.reason:
            print(f"  reason: {result.reason}")
        if result.task_id:
            print(f"  task: {result.task_id}")
        if result.commit:
            print(f"  commit: {result.commit}")
        if result.artifact_path is not None:
            print(f"  artifact: {_display_path(result.artifact_path, repo_root)}")
        for warning in result.warnings:
            print(f"  warning: {warning}")
    return int(exit_code_for(result.code))


async def _run_tick(orchestrator: TickOrchestrator) -> TickResult:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, token.cancel, f"received {signum.name}")
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        return await orchestrator.run(token)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _cmd_status(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    paths = WorkspacePaths.from_config(repo_root, config)
    store = StateStore(paths)

    try:
        state: dict[str, Any] | None = store.load_workspace_state().to_dict()
        guardrails: dict[str, Any] | None = store.load_guardrails().to_dict()
    except StateCorruptError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.BLOCKED)) from exc

    lock_detail: str | None = None
    if paths.lock.exists():
        lock_detail = TickLock(paths.lock).inspect().detail
    blocked = read_json_object(paths.blocked)
    report = read_json_object(paths.report_json)

    payload: dict[str, object] = {
        "command": "status",
        "workspace": _display_path(paths.workspace_dir, repo_root),
        "state": state,
        "guardrails": guardrails,
        "lock": lock_detail,
        "tick_in_flight": store.tick_in_flight(),
        "blocked": blocked,
        "report": (
            {key: report.get(key) for key in ("run_id", "verdict", "code", "reason", "task")}
            if report is not None
            else None
        ),
    }
    if args.json:
        _emit_json(payload)
        return 0

    print(f"Workspace: {payload['workspace']}")
    if state is not None:
        print(f"Milestone: {state.get('milestone_id') or '-'}")
        print(f"Last run: {state.get('last_run_id') or '-'} ({state.get('last_verdict') or '-'})")
        counters: Mapping[str, int] = state.get("budgets", {})
        print("Budgets: " + ", ".join(f"{k}={v}" for k, v in sorted(counters.items())))
        if state.get("budget_warning"):
            print("Budget warning: usage crossed the warning threshold")
    if guardrails is not None:
        print(f"Tick branch: {guardrails.get('branch') or '-'}")
        print(f"Failure streak: {guardrails.get('failure_streak', 0)}")
    if lock_detail is not None:
        print(f"Lock: {lock_detail}")
    if store.tick_in_flight():
        print(f"Crash residue: {_display_path(paths.tick, repo_root)} exists")
    if blocked is not None:
        print(f"BLOCKED: {blocked.get('code')} - {blocked.get('reason')}")
        print(f"  remediation: {blocked.get('remediation')}")
    elif report is not None:
        print(f"Last report: {report.get('code')} - {report.get('reason')}")
    return 0


def _cmd_merge(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    paths = WorkspacePaths.from_config(repo_root, config)
    store = StateStore(paths)
    try:
        state = store.load_workspace_state()
        guardrails = store.load_guardrails()
    except StateCorruptError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.BLOCKED)) from exc

    runner = config.get("runner", {})
    git = GitEngine(repo_root, timeout_seconds=float(runner.get("git_timeout_seconds", 60)))
    source = args.source_branch or guardrails.branch
    if not source:
        try:
            source = git.current_branch()
        except GitEngineError as exc:
            raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc

    try:
        outcome = merge_tick_branch(
            git,
            source_branch=source,
            target_branch=args.into,
            guardrails=guardrails,
            state=state,
            task_id=_last_task_id(paths),
            runner_owned_globs=tuple(runner.get("runner_owned_globs", ())),
        )
    except MergeError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.STOPPED)) from exc

    if args.json:
        _emit_json({"command": "merge", "source": source, "target": args.into, **outcome.to_dict()})
    else:
        label = "MERGED" if outcome.ok else "REFUSED"
        print(f"{label}: {outcome.code.value}")
        for reason in outcome.reasons:
            print(f"  - {reason}")
        if outcome.merged_head:
            print(f"  {args.into} -> {outcome.merged_head}")
    return int(exit_code_for(outcome.code))


def _cmd_init(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config_path = Path(args.config_path) if args.config_path else repo_root / DEFAULT_CONFIG_FILE
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    if config_path.exists() and not args.force:
        raise CLIError(
            f"{config_path} already exists; pass --force to overwrite",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )
    atomic_write(config_path, INIT_CONFIG_TEMPLATE)

    config = _load_effective_config(args, repo_root)
    paths = WorkspacePaths.from_config(repo_root, config)
    paths.workspace_dir.mkdir(parents=True, exist_ok=True)
    goal_file = config.get("goal", {}).get("file")
    created_goal = False
    if isinstance(goal_file, str) and goal_file and not Path(goal_file).exists():
        atomic_write(Path(goal_file), INIT_GOAL_TEMPLATE)
        created_goal = True

    exclude_note: str | None = None
    try:
        relative = paths.workspace_dir.resolve().relative_to(repo_root)
        GitEngine(repo_root).ensure_info_exclude(f"/{relative.as_posix()}/")
    except ValueError:
        exclude_note = "workspace is outside the repository; nothing added to .git/info/exclude"
    except GitEngineError as exc:
        exclude_note = f"could not update .git/info/exclude: {exc}"

    payload = {
        "command": "init",
        "config": _display_path(config_path, repo_root),
        "workspace": _display_path(paths.workspace_dir, repo_root),
        "goal_file": goal_file if created_goal else None,
        "note": exclude_note,
    }
    if args.json:
        _emit_json(payload)
    else:
        print(f"Wrote {payload['config']}")
        print(f"Workspace: {payload['workspace']}")
        if created_goal:
            print(f"Goal file: {goal_file} (edit it before the first tick)")
        if exclude_note:
            print(f"Note: {exclude_note}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    if args.json:
        print(dump_effective_config(config))
    else:
        print(json.dumps(json.loads(dump_effective_config(config)), indent=2, sort_keys=True))
    return 0


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _tick_payload(result: TickResult, repo_root: Path) -> dict[str, object]:
    return {
        "command": "tick",
        "run_id": result.run_id,
        "verdict": result.verdict.value,
        "code": result.code.value,
        "reason": result.reason,
        "task_id": result.task_id,
        "commit": result.commit,
        "artifact": (
            _display_path(result.artifact_path, repo_root)
            if result.artifact_path is not None
            else None
        ),
        "warnings": list(result.warnings),
    }


def _last_task_id(paths: WorkspacePaths) -> str | None:
    report = read_json_object(paths.report_json)
    if report is None:
        return None
    task = report.get("task")
    if not isinstance(task, dict):
        return None
    task_id = task.get("task_id")
    if not isinstance(task_id, str) or task_id == NO_TASK_ID:
        return None
    return task_id


def _repo_root(args: argparse.Namespace) -> Path:
    candidate = Path(str(args.repo_root)).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(
            f"repo root is not a directory: {candidate}", exit_code=int(ExitCode.CONFIG_ERROR)
        )
    return candidate


def _load_effective_config(args: argparse.Namespace, repo_root: Path) -> dict[str, Any]:
    try:
        return load_config(args.config_path, repo_root=repo_root)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _display_path(path: Path, repo_root: Path) -> str:
    try:
        return path.resolve().relative_to(repo_root).as_posix()
    except ValueError:
        return str(path)


__all__ = ["CLIError", "build_parser", "run_cli"]
