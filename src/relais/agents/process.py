"""Agent subprocess runner: prompt on stdin, argv command, bounded timeout, cancellable."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from relais.domain.codes import ReportCode
from relais.errors import AgentCancelledError, AgentProcessError, AgentTimeoutError
from relais.utils.process import ProcessSpec, argv_of, run_process

if TYPE_CHECKING:
    from collections.abc import Sequence

    from relais.control_plane.cancellation import CancellationToken


@dataclass(frozen=True, slots=True)
class AgentInvocation:
    """One call into an external agent."""

    role: str
    command: tuple[str, ...]
    prompt: str
    cwd: Path
    timeout_seconds: float
    env: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(
        cls,
        role: str,
        agent_config: Mapping[str, Any],
        *,
        prompt: str,
        cwd: Path,
    ) -> AgentInvocation:
        command: Sequence[str] = agent_config.get("command", ())
        env = agent_config.get("env", {})
        return cls(
            role=role,
            command=argv_of(command),
            prompt=prompt,
            cwd=cwd,
            timeout_seconds=float(agent_config.get("timeout_seconds", 300)),
            env={str(k): str(v) for k, v in env.items()},
        )


@dataclass(frozen=True, slots=True)
class AgentResponse:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True, slots=True)
class AgentFailure:
    """Classified failure of an agent phase; the tick turns it into a terminal outcome."""

    code: ReportCode
    reason: str
    diagnostics: dict[str, Any] = field(default_factory=dict)


class AgentRunner(Protocol):
    """Anything that can execute an ``AgentInvocation``; tests supply scripted fakes."""

    async def run(
        self, invocation: AgentInvocation, *, cancel_token: CancellationToken
    ) -> AgentResponse: ...


class SubprocessAgentRunner:
    """Production runner spawning the configured agent CLI."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self, invocation: AgentInvocation, *, cancel_token: CancellationToken
    ) -> AgentResponse:
        self._logger.info(
            "agent_process_started",
            role=invocation.role,
            command=list(invocation.command),
            timeout_seconds=invocation.timeout_seconds,
        )
        outcome = await run_process(
            ProcessSpec(
                argv=invocation.command,
                cwd=invocation.cwd,
                stdin_text=invocation.prompt,
                timeout_seconds=invocation.timeout_seconds,
                env=invocation.env,
            ),
            cancel_token=cancel_token,
        )
        self._logger.info(
            "agent_process_finished",
            role=invocation.role,
            exit_code=outcome.exit_code,
            duration_ms=outcome.duration_ms,
            timed_out=outcome.timed_out,
            cancelled=outcome.cancelled,
        )

        if outcome.cancelled:
            raise AgentCancelledError(
                f"{invocation.role} agent cancelled",
                command=invocation.command,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        if outcome.timed_out:
            raise AgentTimeoutError(
                f"{invocation.role} agent timed out after {invocation.timeout_seconds:g}s",
                command=invocation.command,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        if outcome.exit_code is None:
            raise AgentProcessError(
                f"unable to start {invocation.role} agent: {outcome.error}",
                command=invocation.command,
            )
        return AgentResponse(
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            duration_ms=outcome.duration_ms,
        )


__all__ = [
    "AgentFailure",
    "AgentInvocation",
    "AgentResponse",
    "AgentRunner",
    "SubprocessAgentRunner",
]
