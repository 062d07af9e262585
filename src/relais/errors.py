"""Exception hierarchy shared across relais planes."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class RelaisError(RuntimeError):
    """Base error for relais runtime failures."""


class LockError(RelaisError):
    """Raised when the tick lock cannot be created or inspected."""


class StateCorruptError(RelaisError):
    """Raised when a persisted state file exists but cannot be decoded."""

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"corrupt state file {path}: {detail}")


class PhaseTransitionError(RelaisError):
    """Raised when the tick state machine is asked to move backwards."""


class AgentProcessError(RelaisError):
    """Raised when an agent subprocess cannot be spawned or completed."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = tuple(command)
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class AgentTimeoutError(AgentProcessError):
    """Raised when an agent subprocess exceeds its wall-clock timeout."""


class AgentCancelledError(AgentProcessError):
    """Raised when the cancellation token fires while an agent is running."""


class VerificationTemplateError(RelaisError):
    """Raised when a verification template cannot be rendered safely."""


class MergeError(RelaisError):
    """Raised when a tick branch cannot be merged."""


__all__ = [
    "AgentCancelledError",
    "AgentProcessError",
    "AgentTimeoutError",
    "LockError",
    "MergeError",
    "PhaseTransitionError",
    "RelaisError",
    "StateCorruptError",
    "VerificationTemplateError",
]
