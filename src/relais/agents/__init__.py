"""Agent invokers: planner, builder and reviewer, plus their subprocess transport."""

from __future__ import annotations

from relais.agents.builder import BuilderInvoker, BuildResult
from relais.agents.planner import PlanningInvoker, PlanningResult
from relais.agents.process import (
    AgentFailure,
    AgentInvocation,
    AgentResponse,
    AgentRunner,
    SubprocessAgentRunner,
)
from relais.agents.prompts import PromptRenderer
from relais.agents.reviewer import ReviewDecision, ReviewerInvoker, ReviewResult, ReviewStage
from relais.agents.schema_cache import SchemaCache

__all__ = [
    "AgentFailure",
    "AgentInvocation",
    "AgentResponse",
    "AgentRunner",
    "BuildResult",
    "BuilderInvoker",
    "PlanningInvoker",
    "PlanningResult",
    "PromptRenderer",
    "ReviewDecision",
    "ReviewResult",
    "ReviewStage",
    "ReviewerInvoker",
    "SchemaCache",
    "SubprocessAgentRunner",
]
