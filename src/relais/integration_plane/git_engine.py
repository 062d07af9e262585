"""Deterministic Git queries and mutations used by the tick engine."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

_SYMLINK_MODE: Final[str] = "120000"
_DEFAULT_TIMEOUT_SECONDS: Final[float] = 60.0
_FALLBACK_IDENTITY: Final[tuple[tuple[str, str], ...]] = (
    ("user.name", "relais"),
    ("user.email", "relais@example.invalid"),
)


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class GitTimeoutError(GitEngineError):
    """Raised when a git subprocess does not finish within its timeout."""

    def __init__(self, *, command: Sequence[str], timeout_seconds: float, stderr: str) -> None:
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds
        self.stderr = stderr
        super().__init__(
            f"git command timed out after {timeout_seconds:g}s: {' '.join(command)}"
        )


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class ChangedFileEntry:
    """Diff entry with normalized single-letter status (A/M/D/R/T/U/?)."""

    status: str
    path: str
    previous_path: str | None = None


@dataclass(frozen=True, slots=True)
class SymlinkEntry:
    path: str
    target: str
    resolved: Path
    escapes_root: bool


@dataclass(frozen=True, slots=True)
class DiffSummary:
    """Blast radius of the uncommitted working tree relative to HEAD."""

    entries: tuple[ChangedFileEntry, ...]
    untracked: tuple[str, ...]
    lines_added: int
    lines_deleted: int

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(sorted({entry.path for entry in self.entries} | set(self.untracked)))

    @property
    def modified_paths(self) -> tuple[str, ...]:
        return tuple(sorted(entry.path for entry in self.entries if entry.status != "A"))

    @property
    def new_paths(self) -> tuple[str, ...]:
        added = {entry.path for entry in self.entries if entry.status in {"A", "R"}}
        return tuple(sorted(added | set(self.untracked)))

    @property
    def files_touched(self) -> int:
        return len(self.paths)

    @property
    def is_empty(self) -> bool:
        return not self.entries and not self.untracked

    def blast_radius(self) -> dict[str, int]:
        return {
            "files_touched": self.files_touched,
            "lines_added": self.lines_added,
            "lines_deleted": self.lines_deleted,
            "new_files": len(self.new_paths),
        }


@dataclass(frozen=True, slots=True)
class CommitResult:
    branch: str
    commit: str
    trailers: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Result for ff-only merge."""

    source: str
    target: str
    target_head: str


class GitEngine:
    """Deterministic wrapper around the git CLI for a single repository."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.timeout_seconds = timeout_seconds
        self._env_overrides = dict(env_overrides or {})

    def top_level(self) -> Path:
        return Path(self._run_git(["rev-parse", "--show-toplevel"]).stdout.strip()).resolve()

    def current_branch(self) -> str:
        branch = self._run_git(["branch", "--show-current"]).stdout.strip()
        if not branch:
            raise GitEngineError("Detached HEAD is not supported for this operation.")
        return branch

    def head_commit(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def status_paths(self) -> tuple[ChangedFileEntry, ...]:
        """Porcelain status for tracked changes and untracked files."""
        output = self._run_git(["status", "--porcelain=v1", "-z", "--untracked-files=all"]).stdout
        records = output.split("\0")
        entries: list[ChangedFileEntry] = []
        index = 0
        while index < len(records):
            record = records[index]
            index += 1
            if len(record) < 4:
                continue
            code, path = record[:2], record[3:]
            if "R" in code or "C" in code:
                previous = records[index] if index < len(records) else None
                index += 1
                entries.append(ChangedFileEntry(status="R", path=path, previous_path=previous))
            elif code == "??":
                entries.append(ChangedFileEntry(status="?", path=path))
            else:
                status = code.strip()[:1] or "M"
                entries.append(ChangedFileEntry(status=status, path=path))
        return tuple(entries)

    def dirty_paths(self, *, exclude_globs: Sequence[str] = ()) -> tuple[str, ...]:
        paths: set[str] = set()
        for entry in self.status_paths():
            for candidate in (entry.path, entry.previous_path):
                if candidate is None:
                    continue
                if _excluded(candidate, exclude_globs):
                    continue
                paths.add(candidate)
        return tuple(sorted(paths))

    def is_worktree_clean(self, *, exclude_globs: Sequence[str] = ()) -> bool:
        return not self.dirty_paths(exclude_globs=exclude_globs)

    def untracked_files(self) -> tuple[str, ...]:
        output = self._run_git(["ls-files", "--others", "--exclude-standard", "-z"]).stdout
        return tuple(sorted(item for item in output.split("\0") if item))

    def tracked_symlinks(self) -> tuple[SymlinkEntry, ...]:
        """Tracked symlinks (mode 120000) with their resolved targets."""
        root = self.top_level()
        output = self._run_git(["ls-files", "-s", "-z"]).stdout
        entries: list[SymlinkEntry] = []
        for record in output.split("\0"):
            if not record:
                continue
            meta, _, path = record.partition("\t")
            if meta.split(" ", 1)[0] != _SYMLINK_MODE:
                continue
            link = root / path
            try:
                target = os.readlink(link)
            except OSError:
                target = ""
            resolved = (link.parent / target).resolve(strict=False) if target else link
            escapes = not resolved.is_relative_to(root)
            entries.append(
                SymlinkEntry(path=path, target=target, resolved=resolved, escapes_root=escapes)
            )
        return tuple(entries)

    def changed_files(self, base_ref: str = "HEAD") -> tuple[ChangedFileEntry, ...]:
        """Working tree changes relative to ``base_ref`` with A/M/D/R statuses."""
        output = self._run_git(["diff", "--name-status", "-M", "-z", base_ref]).stdout
        records = output.split("\0")
        entries: list[ChangedFileEntry] = []
        index = 0
        while index < len(records):
            status = records[index]
            index += 1
            if not status:
                continue
            letter = status[:1]
            if letter in {"R", "C"}:
                previous = records[index]
                path = records[index + 1]
                index += 2
                entries.append(ChangedFileEntry(status="R", path=path, previous_path=previous))
                continue
            path = records[index]
            index += 1
            entries.append(ChangedFileEntry(status=letter, path=path))
        return tuple(entries)

    def numstat(
        self, base_ref: str = "HEAD", *, exclude_globs: Sequence[str] = ()
    ) -> tuple[int, int]:
        """Total (added, deleted) line counts for tracked changes; binary files count as 0."""
        output = self._run_git(["diff", "--numstat", "-M", "-z", base_ref]).stdout
        records = output.split("\0")
        added = deleted = 0
        index = 0
        while index < len(records):
            parts = records[index].split("\t", 2)
            index += 1
            if len(parts) < 3:
                continue
            path = parts[2]
            if not path:
                # Renames carry the old and new paths as the next two records.
                path = records[index + 1] if index + 1 < len(records) else ""
                index += 2
            if _excluded(path, exclude_globs):
                continue
            if parts[0].isdigit():
                added += int(parts[0])
            if parts[1].isdigit():
                deleted += int(parts[1])
        return added, deleted

    def diff_summary(
        self, base_ref: str = "HEAD", *, exclude_globs: Sequence[str] = ()
    ) -> DiffSummary:
        entries = tuple(
            entry
            for entry in self.changed_files(base_ref)
            if not _excluded(entry.path, exclude_globs)
        )
        untracked = tuple(
            path for path in self.untracked_files() if not _excluded(path, exclude_globs)
        )
        added, deleted = self.numstat(base_ref, exclude_globs=exclude_globs)
        added += sum(self._count_lines(path) for path in untracked)
        return DiffSummary(
            entries=entries, untracked=untracked, lines_added=added, lines_deleted=deleted
        )

    def ensure_info_exclude(self, entry: str) -> bool:
        """Append ``entry`` to ``.git/info/exclude`` if absent. Returns whether it was added."""
        git_dir = Path(self._run_git(["rev-parse", "--git-common-dir"]).stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.repo_path / git_dir
        exclude_path = git_dir / "info" / "exclude"
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if entry in existing.splitlines():
            return False
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{entry}\n")
        return True

    def commit_all(
        self,
        message: str,
        *,
        trailers: Sequence[str] = (),
        exclude_paths: Sequence[str] = (),
    ) -> CommitResult:
        """Stage everything except ``exclude_paths`` and commit with ``trailers`` appended.

        When no identity is configured the commit runs with a one-off relais identity
        passed on the command line; the repository config is never written.
        """
        title = message.strip()
        if not title:
            raise GitEngineError("Commit message cannot be empty.")
        branch = self.current_branch()
        add_args = ["add", "--all"]
        if exclude_paths:
            add_args.extend(["--", ".", *(f":(exclude,literal){path}" for path in exclude_paths)])
        self._run_git(add_args)
        has_staged_changes = bool(
            self._run_git(["diff", "--cached", "--name-only"]).stdout.strip()
        )
        if not has_staged_changes:
            raise GitEngineError("No staged changes to commit.")
        args = [*self._identity_overrides(), "commit", "--no-gpg-sign", "-m", title]
        if trailers:
            args.extend(["-m", "\n".join(trailers)])
        self._run_git(args)
        return CommitResult(branch=branch, commit=self.head_commit(), trailers=tuple(trailers))

    def merge_ff_only(self, source_branch: str, target_branch: str) -> MergeResult:
        """Fast-forward ``target_branch`` to ``source_branch``."""
        self._require_branch(source_branch)
        self._require_branch(target_branch)

        with self._temporary_worktree(target_branch) as temp_worktree:
            self._run_git(["merge", "--ff-only", source_branch], cwd=temp_worktree)

        return MergeResult(
            source=source_branch,
            target=target_branch,
            target_head=self._rev_parse(target_branch),
        )

    def _count_lines(self, path: str) -> int:
        candidate = self.repo_path / path
        try:
            with candidate.open("rb") as handle:
                return sum(1 for _ in handle)
        except OSError:
            return 0

    def _identity_overrides(self) -> list[str]:
        overrides: list[str] = []
        for key, fallback in _FALLBACK_IDENTITY:
            if self._run_git(["config", "--get", key], check=False).returncode != 0:
                overrides.extend(["-c", f"{key}={fallback}"])
        return overrides

    def _require_branch(self, branch: str) -> None:
        ref = f"refs/heads/{branch}"
        if self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode != 0:
            raise GitEngineError(f"Branch does not exist: {branch}")

    def _rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    @contextmanager
    def _temporary_worktree(self, branch: str) -> Iterator[Path]:
        existing = self._existing_worktree_for_branch(branch)
        if existing is not None:
            yield existing
            return

        temp_path = Path(tempfile.mkdtemp(prefix="relais-git-engine-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", str(temp_path), branch])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        output = self._run_git(["worktree", "list", "--porcelain"], check=False).stdout
        branch_ref = f"refs/heads/{branch}"
        current_worktree: Path | None = None
        for line in [*output.splitlines(), ""]:
            if not line:
                current_worktree = None
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current_worktree = Path(value.strip()).resolve(strict=False)
            elif key == "branch" and value.strip() == branch_ref:
                return current_worktree
        return None

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=run_cwd,
                env=env,
                text=True,
                capture_output=True,
                input=input_text,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr.decode("utf-8", "replace") if isinstance(exc.stderr, bytes) else ""
            raise GitTimeoutError(
                command=command, timeout_seconds=self.timeout_seconds, stderr=stderr
            ) from exc
        except FileNotFoundError as exc:
            raise GitEngineError("git executable not found on PATH") from exc

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


def _excluded(path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatchcase(path, pattern) for pattern in patterns)


__all__ = [
    "ChangedFileEntry",
    "CommandResult",
    "CommitResult",
    "DiffSummary",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "GitTimeoutError",
    "MergeResult",
    "SymlinkEntry",
]
