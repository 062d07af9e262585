"""
relais — filesystem utilities

File: src/relais/utils/fs.py
Last updated: 2026-10-18

Purpose
- Provide atomic writes for every persisted artifact (state, lock-adjacent files, reports).
- Provide the history size helper used by preflight.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- A crash mid-write leaves either the old file or the new file, never a partial one.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from relais.errors import StateCorruptError

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "atomic_write_json",
    "directory_size_bytes",
    "read_json_object",
    "remove_if_exists",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, payload: Any) -> None:
    """Atomically write pretty-printed JSON with a trailing newline."""

    text = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    atomic_write(path, text + "\n")


def read_json_object(path: PathLike) -> dict[str, Any] | None:
    """
    Read a JSON object from ``path``.

    Returns ``None`` when the file does not exist. A file that exists but does not
    decode to an object raises ``StateCorruptError``; callers treat that as crash residue.
    """

    target = Path(path)
    try:
        raw = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateCorruptError(str(target), f"invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise StateCorruptError(str(target), "JSON root must be an object")
    return parsed


def remove_if_exists(path: PathLike) -> bool:
    """Unlink ``path``; a missing file is not an error. Returns whether a file was removed."""

    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    return True


def directory_size_bytes(path: PathLike) -> int:
    """Total size of regular files below ``path``; symlinks are not followed."""

    root = Path(path)
    if not root.is_dir():
        return 0
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            candidate = Path(dirpath) / name
            with contextlib.suppress(OSError):
                if not candidate.is_symlink():
                    total += candidate.stat().st_size
    return total


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
