"""
relais — workspace artifact paths and persisted state I/O

File: src/relais/control_plane/state_store.py
Last updated: 2026-10-18

Purpose
- Resolve every artifact path under the workspace directory (``.relais`` by default).
- Load and save STATE.json, GUARDRAILS.json and TICK.json atomically.

Functional requirements
- Missing files load as fresh defaults.
- A file that exists but cannot be decoded raises ``StateCorruptError``.
- Writes always go through ``atomic_write_json``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from relais.domain.state import GuardrailState, TickState, WorkspaceState
from relais.errors import StateCorruptError
from relais.utils.fs import atomic_write_json, read_json_object, remove_if_exists

STATE_FILE: Final[str] = "STATE.json"
GUARDRAILS_FILE: Final[str] = "GUARDRAILS.json"
TICK_FILE: Final[str] = "TICK.json"
REPORT_JSON_FILE: Final[str] = "REPORT.json"
REPORT_MD_FILE: Final[str] = "REPORT.md"
BLOCKED_FILE: Final[str] = "BLOCKED.json"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Absolute locations of every runner-owned artifact."""

    repo_root: Path
    workspace_dir: Path
    lock_name: str = "tick.lock"
    history_root: Path | None = None

    @classmethod
    def from_config(cls, repo_root: Path, config: Mapping[str, Any]) -> WorkspacePaths:
        runner = config.get("runner", {})
        history = config.get("history", {})
        workspace = Path(str(runner.get("workspace_dir", ".relais")))
        if not workspace.is_absolute():
            workspace = repo_root / workspace
        history_dir = history.get("dir")
        history_root = None
        if isinstance(history_dir, str) and history_dir:
            history_root = Path(history_dir)
            if not history_root.is_absolute():
                history_root = repo_root / history_root
        return cls(
            repo_root=repo_root,
            workspace_dir=workspace,
            lock_name=str(runner.get("lockfile", "tick.lock")),
            history_root=history_root,
        )

    @property
    def state(self) -> Path:
        return self.workspace_dir / STATE_FILE

    @property
    def guardrails(self) -> Path:
        return self.workspace_dir / GUARDRAILS_FILE

    @property
    def tick(self) -> Path:
        return self.workspace_dir / TICK_FILE

    @property
    def report_json(self) -> Path:
        return self.workspace_dir / REPORT_JSON_FILE

    @property
    def report_md(self) -> Path:
        return self.workspace_dir / REPORT_MD_FILE

    @property
    def blocked(self) -> Path:
        return self.workspace_dir / BLOCKED_FILE

    @property
    def lock(self) -> Path:
        return self.workspace_dir / self.lock_name

    @property
    def history_dir(self) -> Path:
        if self.history_root is not None:
            return self.history_root
        return self.workspace_dir / "history"

    def run_dir(self, run_id: str) -> Path:
        return self.history_dir / run_id


class StateStore:
    """Typed load/save for the JSON state files of one workspace."""

    def __init__(self, paths: WorkspacePaths) -> None:
        self._paths = paths

    @property
    def paths(self) -> WorkspacePaths:
        return self._paths

    def load_workspace_state(self) -> WorkspaceState:
        payload = read_json_object(self._paths.state)
        if payload is None:
            return WorkspaceState()
        try:
            return WorkspaceState.from_dict(payload)
        except (KeyError, ValueError) as exc:
            raise StateCorruptError(str(self._paths.state), str(exc)) from exc

    def save_workspace_state(self, state: WorkspaceState) -> None:
        atomic_write_json(self._paths.state, state.to_dict())

    def load_guardrails(self) -> GuardrailState:
        payload = read_json_object(self._paths.guardrails)
        if payload is None:
            return GuardrailState()
        try:
            return GuardrailState.from_dict(payload)
        except (KeyError, ValueError) as exc:
            raise StateCorruptError(str(self._paths.guardrails), str(exc)) from exc

    def save_guardrails(self, guardrails: GuardrailState) -> None:
        atomic_write_json(self._paths.guardrails, guardrails.to_dict())

    def tick_in_flight(self) -> bool:
        """A leftover TICK.json means an earlier tick never reached END."""
        return self._paths.tick.exists()

    def write_tick(self, tick: TickState) -> None:
        atomic_write_json(self._paths.tick, tick.to_dict())

    def read_tick(self) -> dict[str, Any] | None:
        return read_json_object(self._paths.tick)

    def clear_tick(self) -> None:
        remove_if_exists(self._paths.tick)


__all__ = [
    "BLOCKED_FILE",
    "GUARDRAILS_FILE",
    "REPORT_JSON_FILE",
    "REPORT_MD_FILE",
    "STATE_FILE",
    "StateStore",
    "TICK_FILE",
    "WorkspacePaths",
]
