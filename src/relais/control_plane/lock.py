"""
relais — crash-safe tick lock

File: src/relais/control_plane/lock.py
Last updated: 2026-10-18

Purpose
- Grant exclusive tick execution rights per workspace through an ``O_CREAT | O_EXCL`` file.
- Classify contention as a live holder or as crash residue.

Functional requirements
- The lock file records {pid, started_at, boot_id}.
- Live owner on the current boot -> BLOCKED_LOCK_HELD.
- Dead owner, different boot, or unreadable lock file -> BLOCKED_CRASH_RECOVERY_REQUIRED.
- Crash residue is never cleared automatically.
- A lock file that vanishes between create and read is a holder releasing; acquisition
  retries once before reporting contention.
- Release is best-effort and tolerates a missing file.
"""

from __future__ import annotations

import functools
import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

import psutil
import structlog

from relais.domain.codes import PreflightOutcome, ReportCode
from relais.domain.ids import utc_now_iso
from relais.domain.state import LockInfo
from relais.errors import LockError

BOOT_ID_PATH: Final[Path] = Path("/proc/sys/kernel/random/boot_id")
ACQUIRE_ATTEMPTS: Final[int] = 2


class LockStatus(StrEnum):
    ACQUIRED = "acquired"
    HELD = "held"
    CRASH_RESIDUE = "crash_residue"
    VACANT = "vacant"


@dataclass(frozen=True, slots=True)
class LockAcquisition:
    """Result of one acquisition attempt."""

    status: LockStatus
    path: Path
    holder: LockInfo | None = None
    detail: str = ""

    @property
    def acquired(self) -> bool:
        return self.status is LockStatus.ACQUIRED

    def to_outcome(self) -> PreflightOutcome | None:
        if self.acquired:
            return None
        diagnostics: dict[str, Any] = {"lock_path": str(self.path)}
        if self.holder is not None:
            diagnostics["holder"] = self.holder.to_dict()
        if self.status in (LockStatus.HELD, LockStatus.VACANT):
            return PreflightOutcome(
                code=ReportCode.BLOCKED_LOCK_HELD,
                reason=self.detail or "another tick holds the workspace lock",
                diagnostics=diagnostics,
            )
        return PreflightOutcome(
            code=ReportCode.BLOCKED_CRASH_RECOVERY_REQUIRED,
            reason=self.detail or "stale tick lock left behind by a crashed run",
            diagnostics=diagnostics,
        )


@functools.cache
def read_boot_id() -> str:
    """Identifier of the current host boot session."""

    try:
        value = BOOT_ID_PATH.read_text(encoding="utf-8").strip()
    except OSError:
        value = ""
    if value:
        return value
    return f"boot-{int(psutil.boot_time())}"


def is_pid_alive(pid: int) -> bool:
    return psutil.pid_exists(pid)


class TickLock:
    """Exclusive per-workspace lock file."""

    def __init__(
        self,
        path: Path,
        *,
        pid: int | None = None,
        boot_id_provider: Callable[[], str] = read_boot_id,
        pid_alive: Callable[[int], bool] = is_pid_alive,
        clock: Callable[[], str] = utc_now_iso,
        logger: Any | None = None,
    ) -> None:
        self._path = path
        self._pid = pid if pid is not None else os.getpid()
        self._boot_id_provider = boot_id_provider
        self._pid_alive = pid_alive
        self._clock = clock
        self._owned: LockInfo | None = None
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._owned is not None

    def acquire(self) -> LockAcquisition:
        if self._owned is not None:
            raise LockError(f"lock already held by this process: {self._path}")

        info = LockInfo(pid=self._pid, started_at=self._clock(), boot_id=self._boot_id_provider())
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd: int | None = None
        for attempt in range(1, ACQUIRE_ATTEMPTS + 1):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                break
            except FileExistsError:
                result = self.inspect()
            except OSError as exc:
                raise LockError(f"unable to create lock file {self._path}: {exc}") from exc
            if result.status is LockStatus.VACANT and attempt < ACQUIRE_ATTEMPTS:
                self._logger.info("lock_vacated", lock_path=str(self._path), attempt=attempt)
                continue
            self._logger.warning(
                "lock_contention",
                lock_path=str(self._path),
                status=result.status.value,
                detail=result.detail,
            )
            return result
        if fd is None:
            raise LockError(f"unable to create lock file {self._path}")

        payload = json.dumps(info.to_dict(), sort_keys=True) + "\n"
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())

        self._owned = info
        self._logger.info("lock_acquired", lock_path=str(self._path), pid=info.pid)
        return LockAcquisition(status=LockStatus.ACQUIRED, path=self._path, holder=info)

    def inspect(self) -> LockAcquisition:
        """Classify an existing lock file without modifying it."""

        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LockAcquisition(
                status=LockStatus.VACANT,
                path=self._path,
                detail="lock changed hands during acquisition; retry the tick",
            )
        try:
            holder = LockInfo.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, AttributeError, ValueError) as exc:
            return LockAcquisition(
                status=LockStatus.CRASH_RESIDUE,
                path=self._path,
                detail=f"lock file is corrupt ({exc}); inspect and remove {self._path}",
            )

        current_boot = self._boot_id_provider()
        if holder.boot_id != current_boot:
            return LockAcquisition(
                status=LockStatus.CRASH_RESIDUE,
                path=self._path,
                holder=holder,
                detail=f"lock from a previous boot (pid {holder.pid}, started {holder.started_at})",
            )
        if not self._pid_alive(holder.pid):
            return LockAcquisition(
                status=LockStatus.CRASH_RESIDUE,
                path=self._path,
                holder=holder,
                detail=f"lock owner pid {holder.pid} is no longer running",
            )
        return LockAcquisition(
            status=LockStatus.HELD,
            path=self._path,
            holder=holder,
            detail=f"tick already running as pid {holder.pid} since {holder.started_at}",
        )

    def release(self) -> bool:
        """Remove the lock file if this instance created it."""

        if self._owned is None:
            return False
        self._owned = None
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            self._logger.warning("lock_release_failed", lock_path=str(self._path), error=str(exc))
            return False
        self._logger.info("lock_released", lock_path=str(self._path))
        return True


__all__ = [
    "ACQUIRE_ATTEMPTS",
    "BOOT_ID_PATH",
    "LockAcquisition",
    "LockStatus",
    "TickLock",
    "is_pid_alive",
    "read_boot_id",
]
