"""
relais — per-run history archive

File: src/relais/reporting/history.py
Last updated: 2026-10-18

Purpose
- Keep an inspectable copy of every tick's evidence under ``history/<run_id>/``.

What should be included in this file
- Task and builder result JSON, the terminal artifact copy, agent transcripts.
- A deterministic ``manifest.json`` with sha256 and size for every file in the run directory.

Functional requirements
- Disabled history writes nothing.
- Transcripts are redacted before they touch disk.
- Artifact names are plain relative paths; traversal is rejected.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Final

import structlog

from relais.observability.logging import redact_text
from relais.utils.fs import atomic_write, atomic_write_json
from relais.utils.hashing import sha256_bytes

MANIFEST_FILE: Final[str] = "manifest.json"
TASK_FILE: Final[str] = "task.json"
BUILDER_FILE: Final[str] = "builder.json"
TRANSCRIPTS_DIR: Final[str] = "transcripts"


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    path: str
    sha256: str
    size_bytes: int


@dataclass(frozen=True, slots=True)
class HistoryWriteResult:
    run_dir: Path
    manifest_path: Path
    entries: tuple[ManifestEntry, ...]


class HistoryWriter:
    """Writes one run directory per tick; later writes for the same run add files."""

    def __init__(
        self,
        history_root: Path,
        *,
        enabled: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._root = history_root
        self._enabled = enabled
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def run_dir(self, run_id: str) -> Path:
        return self._root / _safe_segment(run_id)

    def verify_log_path(self, run_id: str) -> Path | None:
        if not self._enabled:
            return None
        return self.run_dir(run_id) / "verify.log"

    def write_run(
        self,
        run_id: str,
        *,
        task: Mapping[str, Any] | None = None,
        builder_result: Mapping[str, Any] | None = None,
        artifacts: Mapping[str, Mapping[str, Any] | str] | None = None,
        transcripts: Mapping[str, str] | None = None,
    ) -> HistoryWriteResult | None:
        if not self._enabled:
            return None

        run_dir = self.run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        if task is not None:
            atomic_write_json(run_dir / TASK_FILE, dict(task))
        if builder_result is not None:
            atomic_write_json(run_dir / BUILDER_FILE, dict(builder_result))
        for name, value in sorted((artifacts or {}).items()):
            destination = run_dir / _safe_relative(name)
            if isinstance(value, str):
                atomic_write(destination, value)
            else:
                atomic_write_json(destination, dict(value))
        for name, text in sorted((transcripts or {}).items()):
            if not text:
                continue
            destination = run_dir / TRANSCRIPTS_DIR / _safe_relative(f"{name}.txt")
            atomic_write(destination, redact_text(text))

        entries = _build_manifest(run_dir)
        manifest_path = run_dir / MANIFEST_FILE
        atomic_write_json(
            manifest_path,
            {
                "run_id": run_id,
                "entries": [
                    {"path": item.path, "sha256": item.sha256, "size_bytes": item.size_bytes}
                    for item in entries
                ],
            },
        )
        self._logger.info("history_written", run_id=run_id, files=len(entries))
        return HistoryWriteResult(run_dir=run_dir, manifest_path=manifest_path, entries=entries)


def _build_manifest(run_dir: Path) -> tuple[ManifestEntry, ...]:
    entries: list[ManifestEntry] = []
    for path in sorted(run_dir.rglob("*")):
        if not path.is_file() or path.name == MANIFEST_FILE:
            continue
        payload = path.read_bytes()
        entries.append(
            ManifestEntry(
                path=path.relative_to(run_dir).as_posix(),
                sha256=sha256_bytes(payload),
                size_bytes=len(payload),
            )
        )
    return tuple(entries)


def _safe_segment(value: str) -> str:
    if not value or "/" in value or "\\" in value or value in {".", ".."}:
        raise ValueError(f"invalid history path segment: {value!r}")
    return value


def _safe_relative(name: str) -> Path:
    candidate = PurePosixPath(name)
    if not name or candidate.is_absolute() or ".." in candidate.parts:
        raise ValueError(f"invalid history artifact name: {name!r}")
    return Path(*candidate.parts)


__all__ = ["HistoryWriteResult", "HistoryWriter", "ManifestEntry"]
