"""
relais — test suite for the reviewer gate.

File: tests/unit/agents/test_reviewer.py
Last updated: 2026-10-18

Purpose
- Cover trigger evaluation and the mapping of reviewer decisions onto tick outcomes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from relais.agents.process import AgentInvocation, AgentResponse
from relais.agents.prompts import PromptRenderer
from relais.agents.reviewer import (
    ReviewDecision,
    ReviewerInvoker,
    ReviewStage,
    diff_fraction,
    post_judge_triggers,
    pre_build_triggers,
)
from relais.agents.schema_cache import SchemaCache
from relais.control_plane.cancellation import CancellationToken
from relais.domain.codes import ReportCode
from relais.domain.models import DiffLimits, Task, TaskKind, TaskScope
from relais.domain.state import GuardrailState, StopHistoryEntry
from relais.errors import AgentCancelledError
from relais.integration_plane.git_engine import ChangedFileEntry, DiffSummary

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit

TRIGGERS: dict[str, object] = {
    "on_verify_fail": True,
    "on_repeated_stop": True,
    "stop_window_ticks": 5,
    "max_stops_in_window": 3,
    "on_high_risk_paths": True,
    "high_risk_globs": ["migrations/*", ".github/*"],
    "diff_fraction_threshold": 0.8,
    "on_budget_warning": True,
}

CONFIG: dict[str, object] = {
    "reviewer": {"enabled": True, "command": ["reviewer-cli"], "trigger": TRIGGERS}
}

TASK = Task(
    task_id="T-1",
    milestone_id="M1",
    task_kind=TaskKind.EXECUTE,
    intent="Tidy the loader",
    scope=TaskScope(allowed_globs=("src/*",)),
    diff_limits=DiffLimits(max_files_touched=10, max_lines_changed=100),
)


@dataclass(slots=True)
class ScriptedRunner:
    script: list[AgentResponse | Exception]
    calls: list[AgentInvocation] = field(default_factory=list)

    async def run(
        self, invocation: AgentInvocation, *, cancel_token: CancellationToken
    ) -> AgentResponse:
        self.calls.append(invocation)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def diff(*paths: str, added: int = 0, deleted: int = 0) -> DiffSummary:
    return DiffSummary(
        entries=tuple(ChangedFileEntry(status="M", path=path) for path in paths),
        untracked=(),
        lines_added=added,
        lines_deleted=deleted,
    )


def stops(count: int) -> GuardrailState:
    return GuardrailState(
        stop_history=tuple(
            StopHistoryEntry(run_id=f"r{index}", code="STOP_DIFF_TOO_LARGE", at="t")
            for index in range(count)
        )
    )


def reviewer(runner: ScriptedRunner, tmp_path: Path) -> ReviewerInvoker:
    return ReviewerInvoker(
        CONFIG,
        runner=runner,
        schema_cache=SchemaCache(),
        renderer=PromptRenderer(),
        repo_root=tmp_path,
    )


def test_pre_build_triggers_fire_on_repeated_stops() -> None:
    assert pre_build_triggers(TASK, stops(2), budget_warning=False, trigger_config=TRIGGERS) == ()
    triggers = pre_build_triggers(TASK, stops(3), budget_warning=False, trigger_config=TRIGGERS)
    assert triggers == ("repeated_stops:3/5",)


def test_pre_build_triggers_fire_on_budget_warning_and_risky_scope() -> None:
    risky = Task(
        task_id="T-2",
        milestone_id="M1",
        task_kind=TaskKind.EXECUTE,
        intent="Add a migration",
        scope=TaskScope(allowed_globs=("migrations/*", "src/*")),
        diff_limits=DiffLimits(max_files_touched=10, max_lines_changed=100),
    )
    triggers = pre_build_triggers(
        risky, GuardrailState(), budget_warning=True, trigger_config=TRIGGERS
    )
    assert triggers == ("budget_warning", "high_risk_scope:migrations/*")


def test_diff_fraction_takes_the_larger_ratio() -> None:
    assert diff_fraction(diff("a", "b", added=90, deleted=0), TASK) == pytest.approx(0.9)
    assert diff_fraction(diff(*[f"f{i}" for i in range(5)], added=1), TASK) == pytest.approx(0.5)


def test_post_judge_triggers() -> None:
    big = diff("src/a.py", ".github/workflows/ci.yml", added=85)
    triggers = post_judge_triggers(TASK, big, verify_failed=True, trigger_config=TRIGGERS)
    assert triggers == (
        "diff_fraction:0.85",
        "high_risk_paths:.github/workflows/ci.yml",
        "verify_failed",
    )
    quiet = post_judge_triggers(
        TASK, diff("src/a.py", added=1), verify_failed=False, trigger_config=TRIGGERS
    )
    assert quiet == ()


@pytest.mark.asyncio
async def test_proceed_decision_has_no_outcome(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        [AgentResponse(0, json.dumps({"decision": "proceed", "reason": "fine"}), "", 1)]
    )
    result = await reviewer(runner, tmp_path).review(
        ReviewStage.POST_JUDGE,
        TASK,
        ("verify_failed",),
        cancel_token=CancellationToken(),
        diff=diff("src/a.py", added=3),
    )
    assert result.decision is ReviewDecision.PROCEED
    assert result.outcome() is None
    assert '"verify_failed"' in runner.calls[0].prompt
    assert '"files_touched": 1' in runner.calls[0].prompt


@pytest.mark.asyncio
async def test_ask_question_maps_to_stop(tmp_path: Path) -> None:
    payload = {"decision": "ask_question", "reason": "unclear", "question": "Keep v1 API?"}
    runner = ScriptedRunner([AgentResponse(0, json.dumps(payload), "", 1)])
    result = await reviewer(runner, tmp_path).review(
        ReviewStage.PRE_BUILD, TASK, ("budget_warning",), cancel_token=CancellationToken()
    )
    outcome = result.outcome()
    assert outcome is not None
    assert outcome.code is ReportCode.STOP_REVIEWER_ASK_QUESTION
    assert outcome.details["question"] == "Keep v1 API?"


@pytest.mark.asyncio
async def test_question_without_text_degrades_to_forced_patch(tmp_path: Path) -> None:
    payload = {"decision": "ask_question", "question": "   "}
    runner = ScriptedRunner([AgentResponse(0, json.dumps(payload), "", 1)])
    result = await reviewer(runner, tmp_path).review(
        ReviewStage.PRE_BUILD, TASK, (), cancel_token=CancellationToken()
    )
    assert result.degraded
    outcome = result.outcome()
    assert outcome is not None
    assert outcome.code is ReportCode.STOP_REVIEWER_FORCED_PATCH


@pytest.mark.parametrize(
    "response",
    [
        AgentResponse(1, "", "crashed", 1),
        AgentResponse(0, "looks good to me", "", 1),
        AgentResponse(0, json.dumps({"decision": "approve"}), "", 1),
    ],
)
@pytest.mark.asyncio
async def test_reviewer_failures_degrade_to_forced_patch(
    tmp_path: Path, response: AgentResponse
) -> None:
    result = await reviewer(ScriptedRunner([response]), tmp_path).review(
        ReviewStage.POST_JUDGE, TASK, (), cancel_token=CancellationToken()
    )
    assert result.decision is ReviewDecision.FORCE_PATCH
    assert result.degraded
    outcome = result.outcome()
    assert outcome is not None
    assert outcome.details["degraded"] is True


@pytest.mark.asyncio
async def test_cancelled_review_is_an_interruption(tmp_path: Path) -> None:
    runner = ScriptedRunner([AgentCancelledError("reviewer agent cancelled")])
    result = await reviewer(runner, tmp_path).review(
        ReviewStage.PRE_BUILD, TASK, (), cancel_token=CancellationToken()
    )
    outcome = result.outcome()
    assert outcome is not None
    assert outcome.code is ReportCode.STOP_INTERRUPTED


def test_reviewer_enabled_flag_reads_config(tmp_path: Path) -> None:
    enabled = reviewer(ScriptedRunner([]), tmp_path)
    assert enabled.enabled
    assert enabled.trigger_config["max_stops_in_window"] == 3
    disabled = ReviewerInvoker(
        {"reviewer": {"enabled": False}},
        runner=ScriptedRunner([]),
        schema_cache=SchemaCache(),
        renderer=PromptRenderer(),
        repo_root=tmp_path,
    )
    assert not disabled.enabled
