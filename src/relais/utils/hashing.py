"""
relais — hashing utilities

File: src/relais/utils/hashing.py
Last updated: 2026-10-18

Purpose
- Provide deterministic SHA-256 helpers and canonical JSON encoding.

Functional requirements
- Canonical JSON sorts keys at every depth and uses compact separators, so field
  order never changes a digest.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

__all__ = [
    "canonical_json",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str | None:
    """SHA-256 of a regular file's bytes, or None when it is missing or not a file."""

    try:
        return sha256_bytes(path.read_bytes())
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def canonical_json(value: object) -> str:
    """Deterministic JSON text: sorted keys, compact separators, UTF-8 preserved."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
