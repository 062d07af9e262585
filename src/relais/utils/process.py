"""
relais — async subprocess execution with timeout and cancellation

File: src/relais/utils/process.py
Last updated: 2026-10-18

Purpose
- Run one argv command as an asyncio child with optional stdin text.
- Bound every run by a wall-clock timeout and an external cancellation token.

Functional requirements
- Never spawn through a shell.
- On timeout or cancellation the child is killed and reaped before returning.
- Captured output is decoded leniently and truncated to a configurable size.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from relais.control_plane.cancellation import CancellationToken

DEFAULT_MAX_OUTPUT_CHARS: Final[int] = 200_000


@dataclass(frozen=True, slots=True)
class ProcessSpec:
    """Immutable description of one child process."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    inherit_env: bool = True

    def __post_init__(self) -> None:
        if not self.argv or not all(isinstance(part, str) and part for part in self.argv):
            raise ValueError("argv must be a non-empty sequence of non-empty strings")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    def build_env(self) -> dict[str, str]:
        base = dict(os.environ) if self.inherit_env else {}
        base.update(self.env)
        return base


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


async def run_process(
    spec: ProcessSpec,
    *,
    cancel_token: CancellationToken | None = None,
    max_output_chars: int | None = DEFAULT_MAX_OUTPUT_CHARS,
) -> ProcessOutcome:
    """Run ``spec`` to completion, timeout or cancellation; never raises for child failures."""

    started_ns = time.monotonic_ns()
    try:
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            cwd=str(spec.cwd) if spec.cwd is not None else None,
            env=spec.build_env(),
            stdin=(
                asyncio.subprocess.PIPE
                if spec.stdin_text is not None
                else asyncio.subprocess.DEVNULL
            ),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return ProcessOutcome(
            argv=spec.argv,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started_ns),
            error=str(exc),
        )

    stdin_bytes = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None
    communicate = asyncio.ensure_future(process.communicate(stdin_bytes))
    waiters: set[asyncio.Future[object]] = {communicate}
    cancel_wait: asyncio.Future[object] | None = None
    if cancel_token is not None:
        cancel_wait = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_wait)

    try:
        done, _pending = await asyncio.wait(
            waiters,
            timeout=spec.timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        await _terminate(process, communicate)
        raise
    finally:
        if cancel_wait is not None and not cancel_wait.done():
            cancel_wait.cancel()

    if communicate in done:
        stdout_bytes, stderr_bytes = communicate.result()
        return ProcessOutcome(
            argv=spec.argv,
            exit_code=process.returncode,
            stdout=_truncate(_decode(stdout_bytes), max_output_chars),
            stderr=_truncate(_decode(stderr_bytes), max_output_chars),
            duration_ms=_elapsed_ms(started_ns),
        )

    cancelled = cancel_wait is not None and cancel_wait in done
    stdout_bytes, stderr_bytes = await _terminate(process, communicate)
    if cancelled:
        error = "cancelled"
    else:
        error = f"command timed out after {spec.timeout_seconds:g}s"
    return ProcessOutcome(
        argv=spec.argv,
        exit_code=None,
        stdout=_truncate(_decode(stdout_bytes), max_output_chars),
        stderr=_truncate(_decode(stderr_bytes), max_output_chars),
        duration_ms=_elapsed_ms(started_ns),
        timed_out=not cancelled,
        cancelled=cancelled,
        error=error,
    )


async def _terminate(
    process: asyncio.subprocess.Process,
    communicate: asyncio.Future[tuple[bytes, bytes]],
) -> tuple[bytes, bytes]:
    """Kill the child, then reap it so no zombie outlives the tick."""

    with contextlib.suppress(ProcessLookupError):
        process.kill()
    try:
        return await asyncio.shield(communicate)
    except (asyncio.CancelledError, OSError):
        with contextlib.suppress(ProcessLookupError):
            await process.wait()
        return b"", b""


def _decode(payload: bytes | None) -> str:
    if not payload:
        return ""
    return payload.decode("utf-8", errors="replace")


def _truncate(text: str, limit: int | None) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[:limit] + "\n...[truncated]"


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    return max(delta_ns // 1_000_000, 0)


def argv_of(command: Sequence[str]) -> tuple[str, ...]:
    return tuple(str(part) for part in command)


__all__ = [
    "DEFAULT_MAX_OUTPUT_CHARS",
    "ProcessOutcome",
    "ProcessSpec",
    "argv_of",
    "run_process",
]
