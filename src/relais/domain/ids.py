"""Run identifier generation: UTC timestamp plus a random hex suffix."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Final

RUN_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\d{8}T\d{6}Z-[0-9a-f]{8}$")
_RUN_ID_RANDOM_BYTES: Final[int] = 4

_RandBytes = Callable[[int], bytes]


def generate_run_id(*, now: datetime | None = None, randbytes: _RandBytes | None = None) -> str:
    """Return a sortable run id such as ``20261018T101500Z-1a2b3c4d``."""

    moment = (now or datetime.now(UTC)).astimezone(UTC)
    source = randbytes if randbytes is not None else secrets.token_bytes
    suffix = source(_RUN_ID_RANDOM_BYTES)
    if len(suffix) != _RUN_ID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return {_RUN_ID_RANDOM_BYTES} bytes")
    return f"{moment.strftime('%Y%m%dT%H%M%SZ')}-{suffix.hex()}"


def validate_run_id(value: str) -> str:
    if not RUN_ID_PATTERN.fullmatch(value):
        raise ValueError(f"invalid run id: {value!r}")
    return value


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""

    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = ["RUN_ID_PATTERN", "generate_run_id", "utc_now_iso", "validate_run_id"]
