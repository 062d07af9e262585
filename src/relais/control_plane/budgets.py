"""
Per-milestone budget accounting and preflight cap decisions.

Four counters (ticks, orchestrator_calls, builder_calls, verify_runs) only grow
within a milestone. Before a tick does any work, the counters are compared with:
- the hard ceiling ``budgets.per_milestone.max_*`` -> ``BLOCKED_BUDGET_CAP``
- the optional soft cap ``budgets.soft_per_milestone.max_*`` -> ``BLOCKED_BUDGET_EXHAUSTED``

The hard ceiling is evaluated first. Every decision is logged through ``structlog``
as a ``budget_decision`` event.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

import structlog

from relais.domain.codes import PreflightOutcome, ReportCode
from relais.domain.state import BUDGET_COUNTERS, BudgetCounters

DEFAULT_WARN_AT_FRACTION: Final[float] = 0.8


class BudgetAction(StrEnum):
    """Deterministic control action for the pending tick."""

    CONTINUE = "continue"
    BLOCK = "block"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    """Budget verdict for a pending tick."""

    action: BudgetAction
    code: ReportCode | None
    reason: str
    exhausted: tuple[str, ...]
    warning: bool
    warning_counters: tuple[str, ...]
    usage: BudgetCounters

    @property
    def should_block(self) -> bool:
        return self.action is BudgetAction.BLOCK

    def to_outcome(self) -> PreflightOutcome | None:
        if self.code is None:
            return None
        return PreflightOutcome(
            code=self.code,
            reason=self.reason,
            diagnostics={"exhausted": list(self.exhausted), "usage": self.usage.to_dict()},
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "code": self.code.value if self.code is not None else None,
            "reason": self.reason,
            "exhausted": list(self.exhausted),
            "warning": self.warning,
            "warning_counters": list(self.warning_counters),
            "usage": self.usage.to_dict(),
        }


class BudgetTracker:
    """Compare milestone counters against configured caps."""

    def __init__(self, budgets_config: Mapping[str, Any], *, logger: Any | None = None) -> None:
        self._hard = _caps_from(budgets_config.get("per_milestone"))
        self._soft = _caps_from(budgets_config.get("soft_per_milestone"))
        fraction = budgets_config.get("warn_at_fraction", DEFAULT_WARN_AT_FRACTION)
        if isinstance(fraction, bool) or not isinstance(fraction, (int, float)):
            raise ValueError("budgets.warn_at_fraction must be a number")
        if not 0 < fraction <= 1:
            raise ValueError("budgets.warn_at_fraction must be in (0, 1]")
        self._warn_at_fraction = float(fraction)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def hard_caps(self) -> dict[str, int]:
        return dict(self._hard)

    @property
    def soft_caps(self) -> dict[str, int]:
        return dict(self._soft)

    def evaluate(self, usage: BudgetCounters) -> BudgetDecision:
        """Decide whether a new tick may start with ``usage`` already spent."""

        values = usage.to_dict()
        hard_hits = _reached(values, self._hard)
        soft_hits = _reached(values, self._soft)
        warning_counters = self._warning_counters(values)

        if hard_hits:
            decision = BudgetDecision(
                action=BudgetAction.BLOCK,
                code=ReportCode.BLOCKED_BUDGET_CAP,
                reason=_describe(hard_hits, values, self._hard, "hard ceiling"),
                exhausted=hard_hits,
                warning=True,
                warning_counters=warning_counters,
                usage=usage,
            )
        elif soft_hits:
            decision = BudgetDecision(
                action=BudgetAction.BLOCK,
                code=ReportCode.BLOCKED_BUDGET_EXHAUSTED,
                reason=_describe(soft_hits, values, self._soft, "soft cap"),
                exhausted=soft_hits,
                warning=True,
                warning_counters=warning_counters,
                usage=usage,
            )
        else:
            decision = BudgetDecision(
                action=BudgetAction.CONTINUE,
                code=None,
                reason="within budget",
                exhausted=(),
                warning=bool(warning_counters),
                warning_counters=warning_counters,
                usage=usage,
            )

        self._logger.info("budget_decision", **decision.to_dict())
        return decision

    def warning_for(self, usage: BudgetCounters) -> bool:
        return bool(self._warning_counters(usage.to_dict()))

    def _warning_counters(self, values: Mapping[str, int]) -> tuple[str, ...]:
        hits: list[str] = []
        for counter in BUDGET_COUNTERS:
            cap = self._effective_cap(counter)
            if cap is None:
                continue
            if values[counter] >= cap * self._warn_at_fraction:
                hits.append(counter)
        return tuple(hits)

    def _effective_cap(self, counter: str) -> int | None:
        caps = [c for c in (self._hard.get(counter), self._soft.get(counter)) if c is not None]
        return min(caps) if caps else None


def _caps_from(raw: object) -> dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValueError("budget caps must be a table")
    caps: dict[str, int] = {}
    for counter in BUDGET_COUNTERS:
        value = raw.get(f"max_{counter}")
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"max_{counter} must be a non-negative integer")
        caps[counter] = value
    return caps


def _reached(values: Mapping[str, int], caps: Mapping[str, int]) -> tuple[str, ...]:
    return tuple(c for c in BUDGET_COUNTERS if c in caps and values[c] >= caps[c])


def _describe(
    counters: tuple[str, ...],
    values: Mapping[str, int],
    caps: Mapping[str, int],
    label: str,
) -> str:
    parts = [f"{name} {values[name]}/{caps[name]}" for name in counters]
    return f"milestone budget {label} reached: " + ", ".join(parts)


__all__ = [
    "BudgetAction",
    "BudgetDecision",
    "BudgetTracker",
    "DEFAULT_WARN_AT_FRACTION",
]
