"""
relais — optional reviewer gate

File: src/relais/agents/reviewer.py
Last updated: 2026-10-18

Purpose
- Decide when the reviewer agent must be consulted (pure trigger evaluation).
- Invoke it and map its decision onto the tick.

What should be included in this file
- Pre-build triggers: repeated stops within the window, budget warning, high-risk scope.
- Post-judge triggers: diff fraction, high-risk touched paths, verification failure.
- Decision mapping: proceed, ask_question, force_patch.

Functional requirements
- A missing question on ask_question degrades to force_patch.
- Any invocation, parse or schema failure degrades to force_patch.
- Cancellation is reported as STOP_INTERRUPTED, never as a reviewer decision.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from relais.agents.parsing import extract_json_object
from relais.agents.process import AgentInvocation
from relais.agents.prompts import REVIEWER_ROLE
from relais.agents.schema_cache import format_validation_errors
from relais.agents.schemas import ReviewerOutput
from relais.domain.codes import JudgeOutcome, ReportCode
from relais.errors import AgentCancelledError, AgentProcessError
from relais.guardrails.scope import matches_glob

if TYPE_CHECKING:
    from relais.agents.process import AgentRunner
    from relais.agents.prompts import PromptRenderer
    from relais.agents.schema_cache import SchemaCache
    from relais.control_plane.cancellation import CancellationToken
    from relais.domain.models import Task
    from relais.domain.state import GuardrailState
    from relais.integration_plane.git_engine import DiffSummary


class ReviewStage(StrEnum):
    PRE_BUILD = "pre_build"
    POST_JUDGE = "post_judge"


class ReviewDecision(StrEnum):
    PROCEED = "proceed"
    ASK_QUESTION = "ask_question"
    FORCE_PATCH = "force_patch"


@dataclass(frozen=True, slots=True)
class ReviewResult:
    stage: ReviewStage
    decision: ReviewDecision
    triggers: tuple[str, ...]
    reason: str = ""
    question: str | None = None
    patch_instructions: str | None = None
    degraded: bool = False
    interrupted: bool = False

    def outcome(self) -> JudgeOutcome | None:
        """Terminal outcome demanded by the reviewer, or ``None`` to proceed."""

        if self.interrupted:
            return JudgeOutcome(code=ReportCode.STOP_INTERRUPTED, reason=self.reason)
        if self.decision is ReviewDecision.PROCEED:
            return None
        if self.decision is ReviewDecision.ASK_QUESTION:
            return JudgeOutcome(
                code=ReportCode.STOP_REVIEWER_ASK_QUESTION,
                reason=self.reason or "reviewer needs an answer before continuing",
                details={"question": self.question, "triggers": list(self.triggers)},
            )
        return JudgeOutcome(
            code=ReportCode.STOP_REVIEWER_FORCED_PATCH,
            reason=self.reason or "reviewer forced a patch",
            details={
                "patch_instructions": self.patch_instructions,
                "triggers": list(self.triggers),
                "degraded": self.degraded,
            },
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "decision": self.decision.value,
            "triggers": list(self.triggers),
            "reason": self.reason,
            "question": self.question,
            "patch_instructions": self.patch_instructions,
            "degraded": self.degraded,
        }


def pre_build_triggers(
    task: Task,
    guardrails: GuardrailState,
    *,
    budget_warning: bool,
    trigger_config: Mapping[str, Any],
) -> tuple[str, ...]:
    triggers: list[str] = []
    if trigger_config.get("on_repeated_stop", True):
        window = int(trigger_config.get("stop_window_ticks", 5))
        limit = int(trigger_config.get("max_stops_in_window", 3))
        recent = guardrails.stop_history[-window:] if window > 0 else ()
        if limit > 0 and len(recent) >= limit:
            triggers.append(f"repeated_stops:{len(recent)}/{window}")
    if trigger_config.get("on_budget_warning", False) and budget_warning:
        triggers.append("budget_warning")
    if trigger_config.get("on_high_risk_paths", True):
        risky = _risky_scope(task.scope.allowed_globs, trigger_config.get("high_risk_globs", ()))
        if risky:
            triggers.append("high_risk_scope:" + ",".join(risky))
    return tuple(triggers)


def post_judge_triggers(
    task: Task,
    diff: DiffSummary,
    *,
    verify_failed: bool,
    trigger_config: Mapping[str, Any],
) -> tuple[str, ...]:
    triggers: list[str] = []
    threshold = float(trigger_config.get("diff_fraction_threshold", 0.8))
    fraction = diff_fraction(diff, task)
    if threshold > 0 and fraction >= threshold:
        triggers.append(f"diff_fraction:{fraction:.2f}")
    if trigger_config.get("on_high_risk_paths", True):
        globs = tuple(trigger_config.get("high_risk_globs", ()))
        risky = sorted(path for path in diff.paths if matches_glob(path, globs))
        if risky:
            triggers.append("high_risk_paths:" + ",".join(risky))
    if trigger_config.get("on_verify_fail", True) and verify_failed:
        triggers.append("verify_failed")
    return tuple(triggers)


def diff_fraction(diff: DiffSummary, task: Task) -> float:
    """Largest ratio of actual diff size to the task's declared limits."""

    limits = task.diff_limits
    ratios = [0.0]
    if limits.max_files_touched > 0:
        ratios.append(diff.files_touched / limits.max_files_touched)
    if limits.max_lines_changed > 0:
        ratios.append((diff.lines_added + diff.lines_deleted) / limits.max_lines_changed)
    return max(ratios)


def _risky_scope(allowed: Sequence[str], high_risk: Sequence[str]) -> list[str]:
    risky: list[str] = []
    for pattern in allowed:
        for risk in high_risk:
            if matches_glob(pattern, (risk,)) or matches_glob(risk, (pattern,)):
                risky.append(pattern)
                break
    return risky


class ReviewerInvoker:
    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        runner: AgentRunner,
        schema_cache: SchemaCache,
        renderer: PromptRenderer,
        repo_root: Path,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._schema_cache = schema_cache
        self._renderer = renderer
        self._repo_root = repo_root
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self._config.get("reviewer", {}).get("enabled", False))

    @property
    def trigger_config(self) -> Mapping[str, Any]:
        return self._config.get("reviewer", {}).get("trigger", {})

    async def review(
        self,
        stage: ReviewStage,
        task: Task,
        triggers: Sequence[str],
        *,
        cancel_token: CancellationToken,
        diff: DiffSummary | None = None,
    ) -> ReviewResult:
        trigger_tuple = tuple(triggers)
        prompt = self._renderer.render(
            REVIEWER_ROLE,
            {
                "stage": stage.value,
                "triggers": list(trigger_tuple),
                "task": task.to_dict(),
                "diff_summary": diff.blast_radius() if diff is not None else None,
            },
        ).prompt
        invocation = AgentInvocation.from_config(
            REVIEWER_ROLE, self._config.get("reviewer", {}), prompt=prompt, cwd=self._repo_root
        )
        self._logger.info("reviewer_invoked", stage=stage.value, triggers=list(trigger_tuple))

        try:
            response = await self._runner.run(invocation, cancel_token=cancel_token)
        except AgentCancelledError as exc:
            return ReviewResult(
                stage=stage,
                decision=ReviewDecision.FORCE_PATCH,
                triggers=trigger_tuple,
                reason=str(exc),
                interrupted=True,
            )
        except AgentProcessError as exc:
            return self._degraded(stage, trigger_tuple, f"reviewer invocation failed: {exc}")

        if not response.ok:
            return self._degraded(
                stage, trigger_tuple, f"reviewer exited with status {response.exit_code}"
            )
        extraction = extract_json_object(response.stdout)
        if not extraction.ok or extraction.payload is None:
            return self._degraded(
                stage, trigger_tuple, f"reviewer output unparseable: {extraction.error}"
            )
        try:
            output = self._schema_cache.validate(ReviewerOutput, extraction.payload)
        except ValidationError as exc:
            errors = "; ".join(format_validation_errors(exc, limit=5))
            return self._degraded(stage, trigger_tuple, f"reviewer output invalid: {errors}")

        decision = ReviewDecision(output.decision)
        if decision is ReviewDecision.ASK_QUESTION and not (output.question or "").strip():
            return self._degraded(
                stage, trigger_tuple, "reviewer asked a question without providing one"
            )

        result = ReviewResult(
            stage=stage,
            decision=decision,
            triggers=trigger_tuple,
            reason=output.reason,
            question=output.question,
            patch_instructions=output.patch_instructions,
        )
        self._logger.info("reviewer_decision", **result.to_dict())
        return result

    def _degraded(self, stage: ReviewStage, triggers: tuple[str, ...], reason: str) -> ReviewResult:
        self._logger.warning("reviewer_degraded", stage=stage.value, reason=reason)
        return ReviewResult(
            stage=stage,
            decision=ReviewDecision.FORCE_PATCH,
            triggers=triggers,
            reason=reason,
            degraded=True,
        )


__all__ = [
    "ReviewDecision",
    "ReviewResult",
    "ReviewStage",
    "ReviewerInvoker",
    "diff_fraction",
    "post_judge_triggers",
    "pre_build_triggers",
]
