"""Transport stall classification shared by agent invokers and preflight git probes."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

MAX_RAW_ERROR_LENGTH: Final[int] = 500

STALL_PATTERNS: Final[tuple[str, ...]] = (
    "Connection stalled",
    "streamFromAgentBackend",
    "ECONNRESET",
    "ETIMEDOUT",
    "socket hang up",
)

_REQUEST_ID_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"[Rr]equest[_\s]?[Ii][Dd][:\s]+([a-zA-Z0-9_-]+)"
)


@dataclass(frozen=True, slots=True)
class StallDetection:
    stalled: bool
    request_id: str | None
    matched_pattern: str | None


@dataclass(frozen=True, slots=True)
class TransportStall:
    """Structured description of a stalled transport, stored as BLOCKED diagnostics."""

    stage: str
    raw_error: str
    request_id: str | None = None

    def to_diagnostics(self) -> dict[str, object]:
        return {
            "kind": "transport_stalled",
            "stage": self.stage,
            "request_id": self.request_id,
            "raw_error": self.raw_error,
        }


def detect_stall(text: str) -> StallDetection:
    """Scan agent or subprocess output for known stall signatures and a request id."""

    if not text:
        return StallDetection(stalled=False, request_id=None, matched_pattern=None)
    matched = next((pattern for pattern in STALL_PATTERNS if pattern in text), None)
    found = _REQUEST_ID_PATTERN.search(text)
    return StallDetection(
        stalled=matched is not None,
        request_id=found.group(1) if found else None,
        matched_pattern=matched,
    )


def truncate_raw_error(raw_error: str) -> str:
    if len(raw_error) > MAX_RAW_ERROR_LENGTH:
        return raw_error[:MAX_RAW_ERROR_LENGTH] + "..."
    return raw_error


def transport_stall(stage: str, raw_error: str, request_id: str | None = None) -> TransportStall:
    if request_id is None:
        request_id = detect_stall(raw_error).request_id
    return TransportStall(
        stage=stage, raw_error=truncate_raw_error(raw_error), request_id=request_id
    )


__all__ = [
    "MAX_RAW_ERROR_LENGTH",
    "STALL_PATTERNS",
    "StallDetection",
    "TransportStall",
    "detect_stall",
    "transport_stall",
    "truncate_raw_error",
]
