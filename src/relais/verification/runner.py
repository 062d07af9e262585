"""
relais — verification runner

File: src/relais/verification/runner.py
Last updated: 2026-10-18

Purpose
- Execute the verification templates a task names, as argv only, and classify the result.

What should be included in this file
- Template resolution from ``verification.templates`` and ``{{param}}`` interpolation.
- Parameter safety checks (length, whitespace, ``..`` segments, metacharacters).
- Fast-then-slow execution under separate timeouts with an append-only verify.log.

Functional requirements
- Nothing executes until every named template resolves and every param is safe.
- Unknown template, undeclared or missing param, unsafe param -> STOP_VERIFY_TAINTED.
- First failing fast template -> STOP_VERIFY_FAILED_FAST; slow -> STOP_VERIFY_FAILED_SLOW.
- Any timeout -> STOP_VERIFY_FLAKY_OR_TIMEOUT; slow templates never run after a fast failure.
- An execute task without fast verification -> STOP_EVIDENCE_INCOMPLETE.
- Each executed template counts as one verify run.

Non-functional requirements
- Never spawn through a shell.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog

from relais.domain.codes import JudgeOutcome, ReportCode
from relais.domain.models import TaskKind
from relais.errors import VerificationTemplateError
from relais.utils.process import ProcessOutcome, ProcessSpec, run_process

if TYPE_CHECKING:
    from relais.control_plane.cancellation import CancellationToken
    from relais.domain.models import Task

EXEC_MODE: Final[str] = "argv_no_shell"
VERIFY_LOG_NAME: Final[str] = "verify.log"

_PLACEHOLDER: Final[re.Pattern[str]] = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s")


class VerificationTier(StrEnum):
    FAST = "fast"
    SLOW = "slow"


class ParamRejection(StrEnum):
    TOO_LONG = "too_long"
    WHITESPACE = "whitespace"
    DOTDOT = "dotdot"
    METACHAR = "metachar"


@dataclass(frozen=True, slots=True)
class VerificationTemplate:
    template_id: str
    cmd: str
    args: tuple[str, ...] = ()
    params: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> VerificationTemplate:
        return cls(
            template_id=str(raw["id"]),
            cmd=str(raw["cmd"]),
            args=tuple(str(item) for item in raw.get("args", ())),
            params=tuple(str(item) for item in raw.get("params", ())),
        )

    def render(self, values: Mapping[str, str]) -> tuple[str, ...]:
        """Interpolate ``{{name}}`` placeholders into the argv."""

        undeclared = sorted(set(values) - set(self.params))
        if undeclared:
            raise VerificationTemplateError(
                f"template {self.template_id!r} does not declare params: {', '.join(undeclared)}"
            )

        def substitute(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in values:
                raise VerificationTemplateError(
                    f"template {self.template_id!r} is missing param {name!r}"
                )
            return values[name]

        return (self.cmd, *(_PLACEHOLDER.sub(substitute, arg) for arg in self.args))


@dataclass(frozen=True, slots=True)
class ParamViolation:
    template_id: str
    param: str
    reason: ParamRejection

    def to_dict(self) -> dict[str, str]:
        return {"template_id": self.template_id, "param": self.param, "reason": self.reason.value}


@dataclass(frozen=True, slots=True)
class VerificationRun:
    template_id: str
    tier: VerificationTier
    argv: tuple[str, ...]
    exit_code: int | None
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    def to_dict(self) -> dict[str, object]:
        return {
            "template_id": self.template_id,
            "tier": self.tier.value,
            "argv": list(self.argv),
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "passed": self.passed,
        }


@dataclass(frozen=True, slots=True)
class VerificationReport:
    outcome: JudgeOutcome
    runs: tuple[VerificationRun, ...] = ()
    violations: tuple[ParamViolation, ...] = ()
    log_path: Path | None = None
    interrupted: bool = False
    planned: tuple[str, ...] = field(default_factory=tuple)

    @property
    def runs_executed(self) -> int:
        return len(self.runs)

    @property
    def failed(self) -> bool:
        return self.outcome.code in {
            ReportCode.STOP_VERIFY_FAILED_FAST,
            ReportCode.STOP_VERIFY_FAILED_SLOW,
            ReportCode.STOP_VERIFY_FLAKY_OR_TIMEOUT,
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "exec_mode": EXEC_MODE,
            "runs": [run.to_dict() for run in self.runs],
            "verify_log_path": str(self.log_path) if self.log_path is not None else "",
        }


def check_param(value: str, verification_config: Mapping[str, Any]) -> ParamRejection | None:
    """First safety rule ``value`` breaks, or ``None`` when it is safe to interpolate."""

    if len(value) > int(verification_config.get("max_param_len", 128)):
        return ParamRejection.TOO_LONG
    if verification_config.get("reject_whitespace_in_params", True) and _WHITESPACE.search(value):
        return ParamRejection.WHITESPACE
    if verification_config.get("reject_dotdot", True) and ".." in PurePosixPath(
        value.replace("\\", "/")
    ).parts:
        return ParamRejection.DOTDOT
    pattern = verification_config.get("reject_metachars_regex")
    if pattern and re.search(pattern, value):
        return ParamRejection.METACHAR
    return None


def load_templates(verification_config: Mapping[str, Any]) -> dict[str, VerificationTemplate]:
    templates: dict[str, VerificationTemplate] = {}
    for raw in verification_config.get("templates", ()):
        template = VerificationTemplate.from_config(raw)
        templates[template.template_id] = template
    return templates


class VerificationRunner:
    def __init__(
        self,
        verification_config: Mapping[str, Any],
        *,
        repo_root: Path,
        log_path: Path | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = verification_config
        self._templates = load_templates(verification_config)
        self._repo_root = repo_root
        self._log_path = log_path
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def template_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._templates))

    def with_log_path(self, log_path: Path | None) -> VerificationRunner:
        return VerificationRunner(
            self._config, repo_root=self._repo_root, log_path=log_path, logger=self._logger
        )

    async def run(self, task: Task, *, cancel_token: CancellationToken) -> VerificationReport:
        plan = task.verification
        if task.task_kind is TaskKind.EXECUTE and not plan.fast:
            return VerificationReport(
                outcome=JudgeOutcome(
                    code=ReportCode.STOP_EVIDENCE_INCOMPLETE,
                    reason="execute task declares no fast verification",
                ),
                log_path=self._log_path,
            )

        tiers: list[tuple[VerificationTier, str]] = [
            *((VerificationTier.FAST, tid) for tid in plan.fast),
            *((VerificationTier.SLOW, tid) for tid in plan.slow),
        ]
        planned = tuple(tid for _tier, tid in tiers)

        prepared, tainted = self._prepare(tiers, plan.params)
        if tainted is not None:
            self._logger.warning("verification_tainted", reason=tainted.outcome.reason)
            return tainted

        runs: list[VerificationRun] = []
        for tier, template_id, argv in prepared:
            if cancel_token.cancelled:
                return self._interrupted(runs, planned)
            timeout = float(self._config.get(f"timeout_{tier.value}_seconds", 120))
            outcome = await run_process(
                ProcessSpec(argv=argv, cwd=self._repo_root, timeout_seconds=timeout),
                cancel_token=cancel_token,
            )
            if outcome.cancelled:
                self._append_log(template_id, tier, outcome)
                return self._interrupted(runs, planned)

            run = VerificationRun(
                template_id=template_id,
                tier=tier,
                argv=argv,
                exit_code=outcome.exit_code,
                duration_ms=outcome.duration_ms,
                timed_out=outcome.timed_out,
                error=outcome.error,
            )
            runs.append(run)
            self._append_log(template_id, tier, outcome)
            self._logger.info("verification_run", **run.to_dict())

            if run.timed_out:
                return self._finish(
                    ReportCode.STOP_VERIFY_FLAKY_OR_TIMEOUT,
                    f"verification {template_id!r} timed out after {timeout:g}s",
                    runs,
                    planned,
                )
            if not run.passed:
                code = (
                    ReportCode.STOP_VERIFY_FAILED_FAST
                    if tier is VerificationTier.FAST
                    else ReportCode.STOP_VERIFY_FAILED_SLOW
                )
                detail = run.error or f"exit status {run.exit_code}"
                reason = f"{tier.value} verification {template_id!r} failed: {detail}"
                return self._finish(code, reason, runs, planned)

        return self._finish(
            ReportCode.SUCCESS, f"{len(runs)} verification run(s) passed", runs, planned
        )

    def _prepare(
        self,
        tiers: Sequence[tuple[VerificationTier, str]],
        params: Mapping[str, Mapping[str, str]],
    ) -> tuple[list[tuple[VerificationTier, str, tuple[str, ...]]], VerificationReport | None]:
        prepared: list[tuple[VerificationTier, str, tuple[str, ...]]] = []
        violations: list[ParamViolation] = []
        for template_id, values in sorted(params.items()):
            for name, value in sorted(values.items()):
                rejection = check_param(value, self._config)
                if rejection is not None:
                    violations.append(ParamViolation(template_id, name, rejection))
        if violations:
            first = violations[0]
            return [], VerificationReport(
                outcome=JudgeOutcome(
                    code=ReportCode.STOP_VERIFY_TAINTED,
                    reason=f"unsafe verification param {first.template_id}.{first.param} "
                    f"({first.reason.value})",
                    details={"violations": [item.to_dict() for item in violations]},
                ),
                violations=tuple(violations),
                log_path=self._log_path,
            )

        for tier, template_id in tiers:
            template = self._templates.get(template_id)
            if template is None:
                return [], self._tainted(f"unknown verification template {template_id!r}")
            try:
                argv = template.render(params.get(template_id, {}))
            except VerificationTemplateError as exc:
                return [], self._tainted(str(exc))
            prepared.append((tier, template_id, argv))
        return prepared, None

    def _tainted(self, reason: str) -> VerificationReport:
        return VerificationReport(
            outcome=JudgeOutcome(code=ReportCode.STOP_VERIFY_TAINTED, reason=reason),
            log_path=self._log_path,
        )

    def _interrupted(
        self, runs: Sequence[VerificationRun], planned: tuple[str, ...]
    ) -> VerificationReport:
        return VerificationReport(
            outcome=JudgeOutcome(
                code=ReportCode.STOP_INTERRUPTED, reason="interrupted during verification"
            ),
            runs=tuple(runs),
            log_path=self._log_path,
            interrupted=True,
            planned=planned,
        )

    def _finish(
        self,
        code: ReportCode,
        reason: str,
        runs: Sequence[VerificationRun],
        planned: tuple[str, ...],
    ) -> VerificationReport:
        return VerificationReport(
            outcome=JudgeOutcome(code=code, reason=reason),
            runs=tuple(runs),
            log_path=self._log_path,
            planned=planned,
        )

    def _append_log(
        self, template_id: str, tier: VerificationTier, outcome: ProcessOutcome
    ) -> None:
        if self._log_path is None:
            return
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        status = "timeout" if outcome.timed_out else f"exit={outcome.exit_code}"
        if outcome.cancelled:
            status = "cancelled"
        lines = [
            f"=== {tier.value} {template_id}: {' '.join(outcome.argv)} ({status}, "
            f"{outcome.duration_ms}ms) ===",
            "--- stdout ---",
            outcome.stdout.rstrip("\n"),
            "--- stderr ---",
            outcome.stderr.rstrip("\n"),
        ]
        if outcome.error:
            lines.append(f"--- error ---\n{outcome.error}")
        with self._log_path.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")


__all__ = [
    "EXEC_MODE",
    "ParamRejection",
    "ParamViolation",
    "VerificationReport",
    "VerificationRun",
    "VerificationRunner",
    "VerificationTemplate",
    "VerificationTier",
    "check_param",
    "load_templates",
]
