"""
relais — task fingerprinting

File: src/relais/guardrails/fingerprint.py
Last updated: 2026-10-18

Purpose
- Detect re-dispatch of semantically identical work under a new task id.

Functional requirements
- Identifier fields (task_id, milestone_id) never contribute to the digest.
- Strings are trimmed and keys sorted so serialization order cannot change the hash.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Final

from relais.utils.hashing import canonical_json, sha256_text

if TYPE_CHECKING:
    from relais.domain.models import Task

FINGERPRINT_FIELDS: Final[tuple[str, ...]] = (
    "intent",
    "task_kind",
    "verification",
    "question",
)
SCOPE_FIELDS: Final[tuple[str, ...]] = (
    "allowed_globs",
    "forbidden_globs",
    "allow_new_files",
    "allow_lockfile_changes",
)
EXCLUDED_FIELDS: Final[frozenset[str]] = frozenset({"task_id", "milestone_id", "id", "v"})

__all__ = ["EXCLUDED_FIELDS", "compute_fingerprint", "fingerprint_payload", "task_fingerprint"]


def fingerprint_payload(task: Mapping[str, object]) -> dict[str, object]:
    """Extract the canonical, identifier-free subset of a serialized task."""

    payload: dict[str, object] = {}
    for name in FINGERPRINT_FIELDS:
        if name in task and name not in EXCLUDED_FIELDS and task[name] is not None:
            payload[name] = _canonicalize(task[name])

    scope = task.get("scope")
    if isinstance(scope, Mapping):
        payload["scope"] = {
            name: _canonicalize(scope[name]) for name in SCOPE_FIELDS if name in scope
        }

    builder = task.get("builder")
    if isinstance(builder, Mapping) and "instructions" in builder:
        payload["builder_instructions"] = _canonicalize(builder["instructions"])

    return payload


def compute_fingerprint(task: Mapping[str, object]) -> str:
    """SHA-256 over the canonical JSON of :func:`fingerprint_payload`."""

    return sha256_text(canonical_json(fingerprint_payload(task)))


def task_fingerprint(task: Task) -> str:
    return compute_fingerprint(task.to_dict())


def _canonicalize(value: object) -> object:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, Mapping):
        return {str(key): _canonicalize(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonicalize(item) for item in value]
    return value
