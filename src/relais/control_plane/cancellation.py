"""Explicit cancellation token threaded through every tick phase and child process."""

from __future__ import annotations

import asyncio

from relais.errors import RelaisError


class TickInterrupted(RelaisError):
    """Raised at a phase boundary once the cancellation token has fired."""


class CancellationToken:
    """One-shot cancellation signal backed by an ``asyncio.Event``.

    ``cancel`` is safe to call from a signal handler registered with
    ``loop.add_signal_handler``; it only flips the event.
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "interrupted") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TickInterrupted(self._reason or "interrupted")


__all__ = ["CancellationToken", "TickInterrupted"]
