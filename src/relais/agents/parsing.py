"""
relais — structured output extraction from agent stdout

File: src/relais/agents/parsing.py
Last updated: 2026-10-18

Purpose
- Turn raw agent stdout into one JSON object, tolerating the usual LLM noise.

Functional requirements
- Strategies in order: direct parse, ```json fence, first balanced ``{...}`` object.
- A CLI envelope ``{"result": "<json text>"}`` is unwrapped once and re-extracted.
- The extraction method is reported so diagnostics can say how the payload was found.
- Failure is a value, never an exception: callers classify it.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

_FENCE_RE: Final[re.Pattern[str]] = re.compile(
    r"```(?P<lang>[A-Za-z0-9_-]*)[ \t]*\n?(?P<body>.*?)\n?```", re.DOTALL
)
_ENVELOPE_KEY: Final[str] = "result"


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    ok: bool
    payload: dict[str, Any] | None
    method: str | None
    error: str | None = None


def extract_json_object(text: str) -> ExtractionResult:
    """Extract the first JSON object from agent output, unwrapping a result envelope."""

    first = _extract(text)
    if not first.ok or first.payload is None:
        return first
    inner = first.payload.get(_ENVELOPE_KEY)
    if isinstance(inner, str) and _looks_like_envelope(first.payload):
        unwrapped = _extract(inner)
        if unwrapped.ok:
            return ExtractionResult(
                ok=True,
                payload=unwrapped.payload,
                method=f"envelope+{unwrapped.method}",
            )
        return ExtractionResult(
            ok=False,
            payload=None,
            method="envelope",
            error=f"result envelope did not contain JSON: {unwrapped.error}",
        )
    if isinstance(inner, Mapping) and _looks_like_envelope(first.payload):
        return ExtractionResult(ok=True, payload=dict(inner), method=f"envelope+{first.method}")
    return first


def _looks_like_envelope(payload: Mapping[str, Any]) -> bool:
    # CLI wrappers carry bookkeeping keys next to "result"; a bare {"result": ...} also counts.
    return _ENVELOPE_KEY in payload and (
        len(payload) == 1 or "type" in payload or "session_id" in payload or "is_error" in payload
    )


def _extract(text: str) -> ExtractionResult:
    stripped = text.strip()
    if not stripped:
        return ExtractionResult(ok=False, payload=None, method=None, error="empty output")

    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(parsed, dict):
            return ExtractionResult(ok=True, payload=parsed, method="direct")

    for match in _FENCE_RE.finditer(stripped):
        if match.group("lang").strip().lower() not in {"", "json"}:
            continue
        body = match.group("body").strip()
        if not body:
            continue
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return ExtractionResult(ok=True, payload=parsed, method="fence")

    decoder = json.JSONDecoder()
    for index, character in enumerate(stripped):
        if character != "{":
            continue
        try:
            parsed, _consumed = decoder.raw_decode(stripped[index:])
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return ExtractionResult(ok=True, payload=parsed, method="search")

    return ExtractionResult(
        ok=False,
        payload=None,
        method=None,
        error="no JSON object found (tried direct parse, fenced block, brace search)",
    )


def excerpt(text: str, limit: int = 2000) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


__all__ = ["ExtractionResult", "excerpt", "extract_json_object"]
