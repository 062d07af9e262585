"""
relais — role prompt rendering

File: src/relais/agents/prompts.py
Last updated: 2026-10-18

Purpose
- Render planner, builder and reviewer prompts from packaged jinja2 templates.

Functional requirements
- Rendering is deterministic for identical inputs; the prompt hash is recorded as evidence.
- Missing variables fail loudly (``StrictUndefined``).
- Untrusted values (goal text, task fields, agent output) are embedded JSON-encoded only.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError

from relais.utils.hashing import sha256_text

PLANNER_ROLE: Final[str] = "planner"
BUILDER_ROLE: Final[str] = "builder"
REVIEWER_ROLE: Final[str] = "reviewer"

RETRY_MARKER: Final[str] = "=== RETRY ==="

_PLANNER_TEMPLATE: Final[str] = """\
You are the planning agent for an automated build loop. Choose exactly ONE next task.

Goal (JSON string):
{{ goal | json }}
{% if roadmap %}
Roadmap (JSON string):
{{ roadmap | json }}
{% endif %}
Current milestone: {{ milestone_id | json }}
Last verdict: {{ last_verdict | json }}
Recent stop codes: {{ recent_stops | json }}

Available verification templates (ids): {{ template_ids | json }}

Respond with a single JSON object and nothing else:
{
  "task_id": "<short id>",
  "milestone_id": "<milestone id>",
  "task_kind": "execute" | "verify_only" | "question",
  "intent": "<what to change and why>",
  "scope": {"allowed_globs": [...], "forbidden_globs": [...],
            "allow_new_files": bool, "allow_lockfile_changes": bool},
  "diff_limits": {"max_files_touched": int, "max_lines_changed": int},
  "verification": {"fast": [template ids], "slow": [template ids],
                   "params": {"<template id>": {"<param>": "<value>"}}},
  "builder": {"mode": "edit", "instructions": "<builder guidance>"},
  "question": {"prompt": "<only for question tasks>", "choices": []}
}
Execute tasks must list at least one fast verification template.
"""

_BUILDER_TEMPLATE: Final[str] = """\
You are the builder agent. Apply the task below to the working tree.
Do not commit. Do not touch files outside the allowed scope.
Stop after at most {{ max_turns }} turns.

Task (JSON):
{{ task | json }}

When finished, print a single JSON object and nothing else:
{
  "subtasks_completed": ["..."],
  "touched_files": {"added": [], "modified": [], "deleted": [], "renamed": []},
  "verification_commands_run": [],
  "notes": "",
  "blockers": []
}
"""

_REVIEWER_TEMPLATE: Final[str] = """\
You are the reviewer gate for an automated build loop.
Review stage: {{ stage | json }}
Triggers: {{ triggers | json }}

Task (JSON):
{{ task | json }}
{% if diff_summary %}
Diff summary (JSON):
{{ diff_summary | json }}
{% endif %}
Decide whether the loop may proceed. Respond with a single JSON object and nothing else:
{
  "decision": "proceed" | "ask_question" | "force_patch",
  "reason": "<why>",
  "question": "<required for ask_question>",
  "patch_instructions": "<guidance for the operator when forcing a patch>"
}
"""

_TEMPLATES: Final[Mapping[str, str]] = {
    PLANNER_ROLE: _PLANNER_TEMPLATE,
    BUILDER_ROLE: _BUILDER_TEMPLATE,
    REVIEWER_ROLE: _REVIEWER_TEMPLATE,
}


class PromptRenderError(ValueError):
    """Raised when a role template cannot be rendered with the given variables."""


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    role: str
    prompt: str
    prompt_hash: str


class PromptRenderer:
    """Deterministic renderer over the packaged role templates."""

    def __init__(self, templates: Mapping[str, str] | None = None) -> None:
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )
        self._environment.filters["json"] = _json_filter
        self._sources = dict(templates if templates is not None else _TEMPLATES)
        self._compiled = {
            role: self._environment.from_string(source) for role, source in self._sources.items()
        }

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(sorted(self._compiled))

    def render(self, role: str, variables: Mapping[str, object]) -> RenderedPrompt:
        template = self._compiled.get(role)
        if template is None:
            raise PromptRenderError(f"unknown prompt role {role!r}")
        try:
            text = template.render(**dict(variables))
        except TemplateError as exc:
            raise PromptRenderError(f"failed to render {role} prompt: {exc}") from exc
        return RenderedPrompt(role=role, prompt=text, prompt_hash=sha256_text(text))


def with_retry_notice(prompt: str, parse_error: str) -> str:
    """Append the previous parse failure so the planner can correct its output."""

    return (
        f"{prompt.rstrip()}\n\n{RETRY_MARKER}\n"
        "Your previous response could not be parsed as a JSON object.\n"
        f"Parse error: {parse_error}\n"
        "Respond again with ONLY the JSON object.\n"
    )


def _json_filter(value: object) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


__all__ = [
    "BUILDER_ROLE",
    "PLANNER_ROLE",
    "PromptRenderError",
    "PromptRenderer",
    "REVIEWER_ROLE",
    "RETRY_MARKER",
    "RenderedPrompt",
    "with_retry_notice",
]
